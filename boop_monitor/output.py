"""Status snapshot output for panel widgets.

The monitor has no UI of its own. Whenever sessions or delivery status change,
a StatusSnapshot is written as JSON to a file (default
$XDG_RUNTIME_DIR/boop-status.json) that bars and widgets can poll.

Writes are atomic (temp file + rename) so readers never see a partial file,
and bursts of changes collapse into one write.
"""

import asyncio
import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from .config import get_default_status_path
from .models import SessionListItem, StatusSnapshot, utcnow

if TYPE_CHECKING:
    from .dispatcher import NotificationDispatcher
    from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)


def build_snapshot(
    registry: "SessionRegistry",
    dispatcher: Optional["NotificationDispatcher"] = None,
    now: Optional[datetime] = None,
) -> StatusSnapshot:
    """Collect the registry and dispatcher state into one snapshot."""
    now = now or utcnow()
    return StatusSnapshot(
        sessions=[SessionListItem.from_session(s, now) for s in registry.sessions],
        is_listening=registry.is_connected,
        overall_state=registry.overall_summary(),
        has_attention_needed=registry.has_attention_needed,
        is_paused=registry.settings_store.settings.is_paused,
        last_error=dispatcher.last_error if dispatcher else None,
        last_successful_send=dispatcher.last_successful_send if dispatcher else None,
        connection_healthy=dispatcher.connection_healthy if dispatcher else False,
        timestamp=int(now.timestamp()),
    )


class StatusWriter:
    """Writes status snapshots to a JSON file for multiple readers."""

    def __init__(
        self,
        snapshot_factory: Callable[[], StatusSnapshot],
        path: Optional[Path] = None,
    ) -> None:
        """Initialize the status writer.

        Args:
            snapshot_factory: Builds the current snapshot at write time
            path: Output file. Defaults to $XDG_RUNTIME_DIR/boop-status.json
        """
        self.snapshot_factory = snapshot_factory
        self.path = path or get_default_status_path()
        self._dirty = False
        self._flush_task: Optional[asyncio.Task] = None
        self.write_count = 0

    def request_write(self) -> None:
        """Mark the status as changed and schedule a write.

        Safe to call from synchronous listener callbacks on the event loop.
        """
        self._dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self.flush())

    async def flush(self) -> None:
        """Write until no change is pending."""
        while self._dirty:
            self._dirty = False
            await self.write(self.snapshot_factory())

    async def stop(self) -> None:
        """Wait for a pending write to finish."""
        if self._flush_task is not None:
            await self._flush_task
            self._flush_task = None

    async def write(self, snapshot: StatusSnapshot) -> bool:
        """Write one snapshot atomically.

        Returns:
            True if the file was written
        """
        start = time.perf_counter()
        try:
            content = json.dumps(snapshot.model_dump(mode="json"), separators=(",", ":"))
            await asyncio.to_thread(self._sync_write_file, content)
        except OSError as e:
            logger.error(f"Error writing status file {self.path}: {e}")
            return False

        self.write_count += 1
        logger.debug(
            f"Wrote status ({len(snapshot.sessions)} sessions, {snapshot.overall_state.value}) "
            f"in {(time.perf_counter() - start) * 1000:.1f}ms"
        )
        return True

    def _sync_write_file(self, content: str) -> None:
        """Write to a temp file in the same directory, then rename over the target."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        try:
            temp_path.write_text(content)
            temp_path.rename(self.path)
        except OSError:
            # Clean up temp file on error
            temp_path.unlink(missing_ok=True)
            raise
