"""Pydantic models for the boop session monitor.

This module defines the session model tracked by the registry, the lifecycle
events decoded from the local socket, and the status snapshot published for
panel widgets.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Sessions untouched for this long are removed by the staleness sweep
STALE_THRESHOLD = timedelta(hours=24)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    """Session state machine states.

    State Transitions:
        (none) → WORKING: START event
        WORKING ↔ AWAITING_APPROVAL / IDLE / COMPLETED / ERROR: STATE events
        Any → COMPLETED: END with exit code 0
        Any → ERROR: END with non-zero exit code
    """

    WORKING = "WORKING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    IDLE = "IDLE"

    @property
    def needs_attention(self) -> bool:
        """True for states the user should look at."""
        return self in (
            SessionState.AWAITING_APPROVAL,
            SessionState.COMPLETED,
            SessionState.ERROR,
        )

    @property
    def display_name(self) -> str:
        return {
            SessionState.WORKING: "Working",
            SessionState.AWAITING_APPROVAL: "Waiting for approval",
            SessionState.COMPLETED: "Completed",
            SessionState.ERROR: "Error",
            SessionState.IDLE: "Idle",
        }[self]


# IDLE belongs to both groups: an idle session is still alive but its
# work is finished.
ACTIVE_STATES = frozenset(
    {SessionState.WORKING, SessionState.AWAITING_APPROVAL, SessionState.IDLE}
)
FINISHED_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.ERROR, SessionState.IDLE}
)


class OverallState(str, Enum):
    """Aggregate state shown by the menu/panel indicator."""

    DISCONNECTED = "disconnected"
    PAUSED = "paused"
    ATTENTION = "attention"
    WORKING = "working"
    IDLE = "idle"


class Session(BaseModel):
    """One monitored CLI invocation."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(description="Session identifier generated by the shell hook")
    tool: str = Field(description="Tool identifier, e.g. claude or codex")
    project_name: str = Field(description="Display name of the project directory")
    pid: int = Field(default=0, description="Process ID of the wrapped CLI (informational)")
    state: SessionState = Field(default=SessionState.WORKING)
    details: str = Field(default="", description="Last status message")
    start_time: datetime = Field(default_factory=utcnow, frozen=True)
    last_update_time: datetime = Field(default_factory=utcnow)

    def update_state(
        self, new_state: SessionState, details: str = "", now: Optional[datetime] = None
    ) -> None:
        """Apply a transition, keeping last_update_time monotonic."""
        now = now or utcnow()
        self.state = new_state
        self.details = details
        self.last_update_time = max(now, self.last_update_time, self.start_time)

    def duration(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.start_time

    def formatted_duration(self, now: Optional[datetime] = None) -> str:
        total = int(self.duration(now).total_seconds())
        minutes, seconds = divmod(total, 60)
        if minutes > 0:
            return f"{minutes}m"
        return f"{seconds}s"

    def time_since_update(self, now: Optional[datetime] = None) -> str:
        minutes = int(((now or utcnow()) - self.last_update_time).total_seconds()) // 60
        if minutes < 1:
            return "just now"
        return f"{minutes}m ago"

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) - self.last_update_time > STALE_THRESHOLD


# =============================================================================
# Lifecycle events (wire level)
# =============================================================================


class StartEvent(BaseModel):
    """A CLI session was launched."""

    session_id: str
    tool: str
    project_name: str
    pid: int


class StateChangeEvent(BaseModel):
    """A running session reported a new state."""

    session_id: str
    state: SessionState
    details: str = ""
    working_duration_secs: Optional[int] = Field(
        default=None,
        ge=0,
        description="Seconds spent working before this change, when the emitter knows it",
    )


class EndEvent(BaseModel):
    """A CLI session exited."""

    session_id: str
    exit_code: int


class UnknownEvent(BaseModel):
    """A line that could not be decoded, kept for diagnostics."""

    raw: str


LifecycleEvent = Union[StartEvent, StateChangeEvent, EndEvent, UnknownEvent]


# =============================================================================
# Status output
# =============================================================================


class SessionListItem(BaseModel):
    """Session entry in the published status snapshot."""

    id: str
    tool: str
    project_name: str
    pid: int
    state: SessionState
    state_label: str
    details: str
    needs_attention: bool
    duration: str
    updated: str
    start_time: datetime
    last_update_time: datetime

    @classmethod
    def from_session(cls, session: Session, now: Optional[datetime] = None) -> "SessionListItem":
        now = now or utcnow()
        return cls(
            id=session.id,
            tool=session.tool,
            project_name=session.project_name,
            pid=session.pid,
            state=session.state,
            state_label=session.state.display_name,
            details=session.details,
            needs_attention=session.state.needs_attention,
            duration=session.formatted_duration(now),
            updated=session.time_since_update(now),
            start_time=session.start_time,
            last_update_time=session.last_update_time,
        )


class StatusSnapshot(BaseModel):
    """Everything the presentation layer reads from the monitor."""

    sessions: list[SessionListItem] = Field(default_factory=list)
    is_listening: bool = False
    overall_state: OverallState = OverallState.DISCONNECTED
    has_attention_needed: bool = False
    is_paused: bool = False
    last_error: Optional[str] = None
    last_successful_send: Optional[datetime] = None
    connection_healthy: bool = False
    timestamp: int = Field(description="Unix timestamp when the snapshot was built")
