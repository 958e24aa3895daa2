"""Component wiring for the boop monitor daemon.

    SocketServer ──on_event──▶ SessionRegistry ──on_transition──▶ NotificationDispatcher
         │                          │                                   │
         └─on_listening_changed─────┘                                   │
                                    └──listeners──▶ StatusWriter ◀──────┘

Signals:
    SIGTERM, SIGINT  shut down
    SIGHUP           reload the settings file
    SIGUSR1          toggle pause
"""

import asyncio
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from . import __version__
from .config import SettingsStore
from .dispatcher import NotificationDispatcher
from .dnd import DNDChecker
from .models import utcnow
from .output import StatusWriter, build_snapshot
from .session_registry import SessionRegistry
from .socket_server import SocketServer

logger = logging.getLogger(__name__)


class BoopDaemon:
    """Owns the running components and their lifecycle."""

    def __init__(
        self,
        settings_store: SettingsStore,
        socket_path: Path,
        status_path: Optional[Path] = None,
        dnd_checker: Optional[DNDChecker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings_store = settings_store
        self.dispatcher = NotificationDispatcher(
            settings_store, dnd_checker=dnd_checker, clock=clock
        )
        self.registry = SessionRegistry(settings_store, notifier=self.dispatcher, clock=clock)
        self.server = SocketServer(
            socket_path,
            on_event=self.registry.handle_event,
            on_listening_changed=self.registry.set_connected,
        )
        self.status_writer = StatusWriter(
            lambda: build_snapshot(self.registry, self.dispatcher, clock()),
            path=status_path,
        )

        self.registry.add_listener(self.status_writer.request_write)
        self.dispatcher.add_listener(self.status_writer.request_write)

        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        logger.info(f"Starting boop monitor v{__version__}")

        await self.registry.start()
        await self.dispatcher.start()
        await self.server.start_supervised()

        if self.settings_store.settings.respect_dnd:
            await asyncio.to_thread(self.dispatcher.dnd_checker.check_and_warn)

        self.status_writer.request_write()
        logger.info(f"Status file: {self.status_writer.path}")

    async def stop(self) -> None:
        logger.info("Shutting down...")
        await self.server.stop()
        await self.registry.stop()
        await self.dispatcher.stop()
        await self.status_writer.stop()

    async def run(self) -> int:
        """Start, wait for a shutdown signal, stop."""
        self.install_signal_handlers()
        try:
            await self.start()
            logger.info("Service started successfully")
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Service error: {e}", exc_info=True)
            return 1
        finally:
            await self.stop()
        return 0

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def reload_settings(self) -> bool:
        reloaded = self.settings_store.reload()
        self.status_writer.request_write()
        return reloaded

    def toggle_pause(self) -> bool:
        paused = self.settings_store.toggle_paused()
        self.status_writer.request_write()
        return paused

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def handle_shutdown(signum: int) -> None:
            logger.info(f"Received signal {signum}, shutting down...")
            self.request_shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))
        loop.add_signal_handler(signal.SIGHUP, self.reload_settings)
        loop.add_signal_handler(signal.SIGUSR1, self.toggle_pause)
