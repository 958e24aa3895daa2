"""Notification policy and push delivery.

Decides whether a session state transition deserves a phone notification and
delivers it to an ntfy-compatible server over HTTP.

Policy (first match wins):
    paused                      → nothing
    → AWAITING_APPROVAL         → approval notification
    → COMPLETED                 → completed notification, unless the session
                                  was awaiting approval (user already knows)
    → ERROR                     → error notification
    WORKING → IDLE              → completed notification, if the emitter
                                  reported at least 30s of work (or no duration)
    → WORKING                   → nothing

A firing transition is then suppressed by, in order: the 30s per-session
debounce, active quiet hours, and desktop DND when respectDND is set.

Delivery is best-effort: one POST per notification, no retries. Failures are
recorded in last_error for the front end; a periodic HEAD probe maintains
connection_healthy independently of sends.
"""

import asyncio
import logging
import re
from datetime import datetime
from typing import Callable, Coroutine, Optional
from urllib.parse import urlparse

import aiohttp
from pydantic import BaseModel, Field

from .config import AppSettings, NotificationCategory, NotificationPriority, SettingsStore
from .dnd import DNDChecker
from .models import Session, SessionState, utcnow

logger = logging.getLogger(__name__)

DEBOUNCE_INTERVAL_SEC = 30.0
MIN_WORKING_DURATION_SEC = 30
SEND_TIMEOUT_SEC = 10.0
HEALTH_CHECK_INTERVAL_SEC = 60.0
HEALTH_CHECK_TIMEOUT_SEC = 5.0

_HEADER_BREAKS = re.compile(r"[\r\n\x00]+")

TEST_TITLE = "Boop Test"
TEST_BODY = "If you see this, notifications are working!"

# category -> (body template, ntfy tag)
_TEMPLATES: dict[NotificationCategory, tuple[str, str]] = {
    NotificationCategory.APPROVAL: ("{tool} is waiting for approval", "warning"),
    NotificationCategory.COMPLETED: ("{tool} finished", "white_check_mark"),
    NotificationCategory.ERROR: ("{tool} encountered an error", "x"),
}


class PushMessage(BaseModel):
    """A notification as sent to the push server."""

    title: str
    body: str
    priority: int = Field(ge=1, le=5)
    tags: list[str] = Field(default_factory=list)

    def headers(self) -> dict[str, str]:
        """HTTP headers for ntfy; line breaks in values are folded to spaces."""
        return {
            "Title": _header_value(self.title),
            "Priority": str(self.priority),
            "Tags": _header_value(",".join(self.tags)),
        }


def _header_value(value: str) -> str:
    return _HEADER_BREAKS.sub(" ", value).strip()


def decide(
    previous: SessionState,
    new: SessionState,
    settings: AppSettings,
    working_duration_secs: Optional[int] = None,
) -> Optional[NotificationCategory]:
    """Return the notification category a transition warrants, if any."""
    if settings.is_paused:
        return None

    prefs = settings.notifications

    if new == SessionState.AWAITING_APPROVAL:
        return NotificationCategory.APPROVAL if prefs.approval.enabled else None

    if new == SessionState.COMPLETED:
        if prefs.completed.enabled and previous != SessionState.AWAITING_APPROVAL:
            return NotificationCategory.COMPLETED
        return None

    if new == SessionState.ERROR:
        return NotificationCategory.ERROR if prefs.error.enabled else None

    if new == SessionState.IDLE:
        if not prefs.completed.enabled or previous != SessionState.WORKING:
            return None
        if working_duration_secs is not None and working_duration_secs < MIN_WORKING_DURATION_SEC:
            return None
        return NotificationCategory.COMPLETED

    return None


def build_message(
    session: Session, category: NotificationCategory, settings: AppSettings
) -> PushMessage:
    template, tag = _TEMPLATES[category]
    priority = settings.notifications.for_category(category).priority
    return PushMessage(
        title=session.project_name,
        body=template.format(tool=session.tool.title()),
        priority=priority.level,
        tags=[tag],
    )


def _valid_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class NotificationDispatcher:
    """Applies the notification policy and talks to the push server.

    Example:
        >>> dispatcher = NotificationDispatcher(store)
        >>> await dispatcher.start()
        >>> dispatcher.on_transition(session, SessionState.WORKING, SessionState.ERROR)
    """

    def __init__(
        self,
        settings_store: SettingsStore,
        dnd_checker: Optional[DNDChecker] = None,
        clock: Callable[[], datetime] = utcnow,
        http_session: Optional[aiohttp.ClientSession] = None,
        health_check_interval_sec: float = HEALTH_CHECK_INTERVAL_SEC,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            settings_store: Live settings (categories, sink, quiet hours, pause)
            dnd_checker: Cached do-not-disturb state; defaults to SwayNC
            clock: Returns the current aware datetime (debounce, quiet hours)
            http_session: Shared aiohttp session; one is created when omitted
            health_check_interval_sec: Seconds between reachability probes
        """
        self.settings_store = settings_store
        self.dnd_checker = dnd_checker or DNDChecker()
        self._clock = clock
        self._http = http_session
        self._owns_http = http_session is None
        self.health_check_interval_sec = health_check_interval_sec

        # Debounce ledger: session_id -> last notification time
        self._last_notification: dict[str, datetime] = {}

        self.last_error: Optional[str] = None
        self.last_successful_send: Optional[datetime] = None
        self.connection_healthy = False
        self.is_testing_connection = False

        self._pending: set[asyncio.Task] = set()
        self._health_task: Optional[asyncio.Task] = None
        self._listeners: list[Callable[[], None]] = []

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the health probe (one immediate check, then periodic) and DND polling."""
        await self.dnd_checker.start()
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info("Notification dispatcher started")

    async def stop(self, drain_timeout_sec: float = 5.0) -> None:
        """Stop probing, give in-flight sends a moment, close the HTTP session."""
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        await self.dnd_checker.stop()

        if self._pending:
            _, pending = await asyncio.wait(set(self._pending), timeout=drain_timeout_sec)
            for task in pending:
                task.cancel()

        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

        logger.info("Notification dispatcher stopped")

    async def drain(self) -> None:
        """Wait for every scheduled send to finish."""
        while self._pending:
            await asyncio.gather(*set(self._pending), return_exceptions=True)

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback run whenever the delivery status changes."""
        self._listeners.append(callback)

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def on_transition(
        self,
        session: Session,
        previous: SessionState,
        new: SessionState,
        working_duration_secs: Optional[int] = None,
    ) -> bool:
        """Decide on and schedule a notification for a state transition.

        Must be called from the event loop; the send runs as a background task.

        Returns:
            True if a send was scheduled
        """
        settings = self.settings_store.settings
        category = decide(previous, new, settings, working_duration_secs)
        if category is None:
            logger.debug(f"Session {session.id}: no notification for {previous.value} → {new.value}")
            return False

        reason = self._suppression_reason(session.id, settings)
        if reason:
            logger.info(f"Session {session.id}: {category.value} notification suppressed ({reason})")
            return False

        # Recorded before the send is scheduled
        self._last_notification[session.id] = self._clock()

        message = build_message(session, category, settings)
        logger.info(f"Session {session.id}: sending {category.value} notification")
        self._schedule(self._deliver(message))
        return True

    def _suppression_reason(self, session_id: str, settings: AppSettings) -> Optional[str]:
        now = self._clock()

        last_sent = self._last_notification.get(session_id)
        if last_sent is not None:
            elapsed = (now - last_sent).total_seconds()
            if elapsed < DEBOUNCE_INTERVAL_SEC:
                return f"debounced, {elapsed:.1f}s < {DEBOUNCE_INTERVAL_SEC}s"

        if settings.quiet_hours.is_currently_active(now):
            return "quiet hours"

        if settings.respect_dnd and self.dnd_checker.is_enabled():
            return "do not disturb"

        return None

    def clear_debounce(self, session_id: str) -> None:
        self._last_notification.pop(session_id, None)

    def clear_all_debounce(self) -> None:
        self._last_notification.clear()

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def send_test_notification(self) -> bool:
        """Send a test push, bypassing pause, debounce, quiet hours and DND."""
        self.is_testing_connection = True
        self.last_error = None
        self._notify_listeners()
        try:
            message = PushMessage(
                title=TEST_TITLE,
                body=TEST_BODY,
                priority=NotificationPriority.DEFAULT.level,
                tags=["tada"],
            )
            return await self._deliver(message)
        finally:
            self.is_testing_connection = False
            self._notify_listeners()

    async def check_health(self) -> bool:
        """Probe the push server with HEAD; only updates connection_healthy."""
        server = self.settings_store.settings.ntfy.server
        healthy = False
        if _valid_http_url(server):
            try:
                status = await self._head(server)
                healthy = status == 200
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.debug(f"Health check against {server} failed: {e!r}")
        else:
            logger.debug(f"Health check skipped, invalid server URL: {server!r}")

        if healthy != self.connection_healthy:
            logger.info(f"Push server {'reachable' if healthy else 'unreachable'}: {server}")
            self.connection_healthy = healthy
            self._notify_listeners()
        return healthy

    async def _deliver(self, message: PushMessage) -> bool:
        ntfy = self.settings_store.settings.ntfy
        url = f"{ntfy.server.rstrip('/')}/{ntfy.topic}"
        if not ntfy.topic or not _valid_http_url(url):
            self._record_failure("Invalid ntfy URL")
            return False

        try:
            status = await self._post(url, message)
        except asyncio.TimeoutError:
            self._record_failure("Request timed out")
            return False
        except aiohttp.ClientError as e:
            self._record_failure(str(e) or type(e).__name__)
            return False
        except ValueError as e:
            # aiohttp rejects malformed URLs and header values before sending
            self._record_failure(f"Invalid request: {e}")
            return False

        if status != 200:
            self._record_failure(f"HTTP {status}")
            return False

        self.last_error = None
        self.last_successful_send = self._clock()
        self.connection_healthy = True
        logger.debug(f"Notification delivered: {message.title}")
        self._notify_listeners()
        return True

    async def _post(self, url: str, message: PushMessage) -> int:
        async with self._get_http().post(
            url,
            data=message.body.encode("utf-8"),
            headers=message.headers(),
            timeout=aiohttp.ClientTimeout(total=SEND_TIMEOUT_SEC),
        ) as response:
            return response.status

    async def _head(self, url: str) -> int:
        async with self._get_http().head(
            url, timeout=aiohttp.ClientTimeout(total=HEALTH_CHECK_TIMEOUT_SEC)
        ) as response:
            return response.status

    def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    def _record_failure(self, error: str) -> None:
        logger.warning(f"Notification failed: {error}")
        self.last_error = error
        self._notify_listeners()

    def _schedule(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _health_loop(self) -> None:
        while True:
            try:
                await self.check_health()
                await asyncio.sleep(self.health_check_interval_sec)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health check error: {e}", exc_info=True)
                await asyncio.sleep(self.health_check_interval_sec)

    def _notify_listeners(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Status listener failed: {e}", exc_info=True)
