"""Do-not-disturb detection via SwayNC.

Queries the notification daemon with `swaync-client --get-dnd`, which prints
"true" or "false". Any failure (client missing, timeout, unexpected output)
is treated as DND off.

The probe is a blocking subprocess call, so the running daemon never calls it
from the event loop: a background task refreshes a cached value in a worker
thread and is_enabled() only reads that cache.
"""

import asyncio
import logging
import shutil
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)

POLL_INTERVAL_SEC = 5.0


class DNDChecker:
    """Reports whether the desktop is in do-not-disturb mode."""

    def __init__(
        self,
        client: str = "swaync-client",
        timeout_sec: float = 1.0,
        poll_interval_sec: float = POLL_INTERVAL_SEC,
    ) -> None:
        self.client = client
        self.timeout_sec = timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self._enabled = False
        self._poll_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Refresh once, then keep the cached value current in the background."""
        await self.refresh()
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

    def is_enabled(self) -> bool:
        """Last probed DND state; never blocks."""
        return self._enabled

    async def refresh(self) -> bool:
        return await asyncio.to_thread(self.probe)

    def probe(self) -> bool:
        """Run the client synchronously and update the cached state."""
        self._enabled = self._query()
        return self._enabled

    def _query(self) -> bool:
        client_path = shutil.which(self.client)
        if not client_path:
            logger.debug(f"{self.client} not found (SwayNC not installed?)")
            return False

        try:
            result = subprocess.run(
                [client_path, "--get-dnd"],
                capture_output=True,
                text=True,
                timeout=self.timeout_sec,
                check=True,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"{self.client} timed out")
            return False
        except (subprocess.CalledProcessError, OSError) as e:
            logger.error(f"{self.client} failed: {e}")
            return False

        return result.stdout.strip().lower() == "true"

    def check_and_warn(self) -> bool:
        """Log a warning when DND would silence notifications on this machine."""
        if self.probe():
            logger.warning("Do Not Disturb is enabled - desktop notifications may be silenced")
            return True
        return False

    async def _poll_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.poll_interval_sec)
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"DND poll error: {e}", exc_info=True)
