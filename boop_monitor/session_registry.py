"""Session registry for the boop session monitor.

This module owns the list of known sessions and applies lifecycle events to
it. It is mutated only from the socket server's delivery task (and the sweep
timer on the same event loop), so no lock is needed.

State Machine:
    (none) → WORKING (on START)
    WORKING → WORKING | AWAITING_APPROVAL | COMPLETED | ERROR | IDLE (on STATE)
    Any → COMPLETED (END, exit code 0) / ERROR (END, non-zero)
    Any → removed (explicit removal, clear completed, or idle > 24h)
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from .config import SettingsStore
from .models import (
    ACTIVE_STATES,
    FINISHED_STATES,
    EndEvent,
    LifecycleEvent,
    OverallState,
    Session,
    SessionState,
    StartEvent,
    StateChangeEvent,
    UnknownEvent,
    utcnow,
)

if TYPE_CHECKING:
    from .dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SEC = 60.0
RECENT_WINDOW = timedelta(hours=1)


class SessionRegistry:
    """Tracks sessions and turns lifecycle events into state transitions.

    Sessions are kept most-recent-first. Every transition into a new state
    (and every END) is reported to the notifier, which applies the
    notification policy.
    """

    def __init__(
        self,
        settings_store: SettingsStore,
        notifier: Optional["NotificationDispatcher"] = None,
        clock: Callable[[], datetime] = utcnow,
        sweep_interval_sec: float = SWEEP_INTERVAL_SEC,
    ) -> None:
        """Initialize the registry.

        Args:
            settings_store: Live settings (tool enablement, pause flag)
            notifier: Receives on_transition() calls; optional for read-only use
            clock: Returns the current aware datetime
            sweep_interval_sec: Seconds between staleness sweeps
        """
        self.settings_store = settings_store
        self.notifier = notifier
        self._clock = clock
        self.sweep_interval_sec = sweep_interval_sec

        self._sessions: list[Session] = []
        self._connected = False
        self._listeners: list[Callable[[], None]] = []
        self._sweep_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the periodic staleness sweep."""
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Session registry started")

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Session registry stopped")

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback run after every change to sessions or connection."""
        self._listeners.append(callback)

    # -------------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------------

    async def handle_event(self, event: LifecycleEvent) -> None:
        """Socket server observer entry point."""
        self.apply(event)

    def apply(self, event: LifecycleEvent) -> None:
        """Route a decoded event to the matching operation."""
        if isinstance(event, StartEvent):
            self.on_start(event.session_id, event.tool, event.project_name, event.pid)
        elif isinstance(event, StateChangeEvent):
            self.on_state_change(
                event.session_id, event.state, event.details, event.working_duration_secs
            )
        elif isinstance(event, EndEvent):
            self.on_end(event.session_id, event.exit_code)
        elif isinstance(event, UnknownEvent):
            logger.debug(f"Ignoring unknown message: {event.raw[:200]!r}")

    def on_start(self, session_id: str, tool: str, project_name: str, pid: int) -> None:
        if not self.settings_store.settings.tools.is_enabled(tool):
            logger.debug(f"Ignoring session {session_id}: tool {tool} is disabled")
            return

        now = self._clock()
        session = Session(
            id=session_id,
            tool=tool,
            project_name=project_name,
            pid=pid,
            state=SessionState.WORKING,
            start_time=now,
            last_update_time=now,
        )

        replaced = self._remove(session_id)
        self._sessions.insert(0, session)
        logger.info(
            f"{'Replaced' if replaced else 'Created'} session {session_id} "
            f"for {tool} (project={project_name}, pid={pid})"
        )
        self._notify_listeners()

    def on_state_change(
        self,
        session_id: str,
        state: SessionState,
        details: str = "",
        working_duration_secs: Optional[int] = None,
    ) -> None:
        session = self.get(session_id)
        if session is None:
            logger.debug(f"Dropping state {state.value} for unknown session {session_id}")
            return

        previous = session.state
        session.update_state(state, details, now=self._clock())
        if state != previous:
            logger.info(f"Session {session_id}: {previous.value} → {state.value}")
        self._notify_listeners()

        if state != previous and self.notifier is not None:
            self.notifier.on_transition(session, previous, state, working_duration_secs)

    def on_end(self, session_id: str, exit_code: int) -> None:
        session = self.get(session_id)
        if session is None:
            logger.debug(f"Dropping end for unknown session {session_id}")
            return

        previous = session.state
        new_state = SessionState.COMPLETED if exit_code == 0 else SessionState.ERROR
        session.update_state(new_state, f"Exit code: {exit_code}", now=self._clock())
        logger.info(f"Session {session_id} ended with exit code {exit_code}: {previous.value} → {new_state.value}")
        self._notify_listeners()

        # END is evaluated even without a state change
        if self.notifier is not None:
            self.notifier.on_transition(session, previous, new_state, None)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def sessions(self) -> list[Session]:
        """All sessions, most recent first."""
        return list(self._sessions)

    @property
    def is_connected(self) -> bool:
        return self._connected

    def get(self, session_id: str) -> Optional[Session]:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def active_sessions(self) -> list[Session]:
        return [s for s in self._sessions if s.state in ACTIVE_STATES]

    def recently_completed(self) -> list[Session]:
        cutoff = self._clock() - RECENT_WINDOW
        return [
            s for s in self._sessions
            if s.state in FINISHED_STATES and s.last_update_time > cutoff
        ]

    @property
    def has_attention_needed(self) -> bool:
        return any(s.state.needs_attention for s in self._sessions)

    def overall_summary(self) -> OverallState:
        if not self._connected:
            return OverallState.DISCONNECTED
        if self.settings_store.settings.is_paused:
            return OverallState.PAUSED
        if any(s.state == SessionState.AWAITING_APPROVAL for s in self._sessions):
            return OverallState.ATTENTION
        if any(s.state == SessionState.WORKING for s in self._sessions):
            return OverallState.WORKING
        return OverallState.IDLE

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def set_connected(self, connected: bool) -> None:
        """Socket server listening-state observer."""
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Socket server {'listening' if connected else 'not listening'}")
        self._notify_listeners()

    def clear_completed(self) -> int:
        """Remove every COMPLETED, ERROR and IDLE session.

        Returns:
            Number of sessions removed
        """
        before = len(self._sessions)
        self._sessions = [s for s in self._sessions if s.state not in FINISHED_STATES]
        removed = before - len(self._sessions)
        if removed:
            logger.info(f"Cleared {removed} finished session(s)")
            self._notify_listeners()
        return removed

    def remove_session(self, session_id: str) -> bool:
        removed = self._remove(session_id)
        if removed:
            logger.info(f"Removed session {session_id}")
            self._notify_listeners()
        return removed

    def sweep_stale(self) -> list[str]:
        """Remove sessions not updated for more than 24 hours, in any state.

        Returns:
            IDs of the removed sessions
        """
        now = self._clock()
        stale = [s.id for s in self._sessions if s.is_stale(now)]
        if stale:
            self._sessions = [s for s in self._sessions if s.id not in stale]
            for session_id in stale:
                logger.info(f"Session {session_id} expired (no update for 24h)")
            self._notify_listeners()
        return stale

    def _remove(self, session_id: str) -> bool:
        before = len(self._sessions)
        self._sessions = [s for s in self._sessions if s.id != session_id]
        return len(self._sessions) != before

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval_sec)
                self.sweep_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Staleness sweep error: {e}", exc_info=True)

    def _notify_listeners(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Session listener failed: {e}", exc_info=True)
