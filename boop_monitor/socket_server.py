"""Unix socket server for session lifecycle messages.

Shell hooks connect to the socket and write one message per line. Each
connection gets its own read buffer; complete lines are decoded and put on a
single queue, and one delivery task hands them to the observer in order. That
task is the only place the registry is mutated from.

A supervised server also runs a watchdog that notices a deleted socket file or
a dead listener and rebinds after a fixed delay.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .errors import BindError
from .models import LifecycleEvent
from .protocol import parse

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
MAX_LINE_BYTES = 64 * 1024
RESTART_DELAY_SEC = 2.0
WATCH_INTERVAL_SEC = 5.0


class SocketServer:
    """Listens on a Unix socket and delivers decoded lifecycle events."""

    def __init__(
        self,
        socket_path: Path,
        on_event: Callable[[LifecycleEvent], Awaitable[None]],
        on_listening_changed: Optional[Callable[[bool], None]] = None,
        restart_delay_sec: float = RESTART_DELAY_SEC,
        watch_interval_sec: float = WATCH_INTERVAL_SEC,
    ) -> None:
        """Initialize the socket server.

        Args:
            socket_path: Filesystem path of the Unix socket
            on_event: Awaited once per decoded event, from the delivery task
            on_listening_changed: Called with True/False when listening starts or stops
            restart_delay_sec: Fixed delay before a bind retry or self-heal restart
            watch_interval_sec: Seconds between watchdog health checks
        """
        self._socket_path = Path(socket_path)
        self.on_event = on_event
        self.on_listening_changed = on_listening_changed
        self.restart_delay_sec = restart_delay_sec
        self.watch_interval_sec = watch_interval_sec

        self._server: Optional[asyncio.Server] = None
        self._queue: Optional[asyncio.Queue] = None
        self._delivery_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._connections: set[asyncio.Task] = set()
        self._listening = False

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        """Bind the socket and start delivering events.

        Raises:
            BindError: If the directory, stale socket or bind is unusable
        """
        if self._server is not None:
            return

        parent = self._socket_path.parent
        if not parent.exists():
            try:
                parent.mkdir(parents=True, exist_ok=True)
                parent.chmod(0o700)
            except OSError as e:
                raise BindError(self._socket_path, f"cannot create directory {parent}", e) from e

        # Remove old socket if it exists
        if self._socket_path.exists() or self._socket_path.is_symlink():
            try:
                self._socket_path.unlink()
            except OSError as e:
                raise BindError(self._socket_path, "cannot remove stale socket", e) from e

        try:
            self._server = await asyncio.start_unix_server(
                self._handle_client, path=str(self._socket_path)
            )
        except OSError as e:
            raise BindError(self._socket_path, str(e), e) from e

        try:
            self._socket_path.chmod(0o600)
        except OSError as e:
            logger.warning(f"Could not set permissions on {self._socket_path}: {e}")

        self._queue = asyncio.Queue()
        self._delivery_task = asyncio.create_task(self._delivery_loop(self._queue))

        logger.info(f"Socket server listening on {self._socket_path} (permissions: 0600)")
        self._set_listening(True)

    async def start_supervised(self) -> bool:
        """Start the server and keep it running.

        A failed bind is logged and retried by the watchdog after
        restart_delay_sec. The watchdog also restarts a server whose socket
        file disappeared or that stopped serving.

        Returns:
            True if the first bind attempt succeeded
        """
        try:
            await self.start()
        except BindError as e:
            logger.error(f"{e}; retrying in {self.restart_delay_sec}s")

        if self._watchdog_task is None:
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        return self.is_listening

    async def stop(self) -> None:
        """Stop the watchdog, drop all connections and remove the socket."""
        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        await self._shutdown()

    async def restart(self) -> None:
        await self.stop()
        await self.start_supervised()

    async def _shutdown(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()

        # Partial lines die with their connection
        connections = list(self._connections)
        for task in connections:
            task.cancel()
        if connections:
            await asyncio.gather(*connections, return_exceptions=True)
        self._connections.clear()

        if self._delivery_task:
            self._delivery_task.cancel()
            try:
                await self._delivery_task
            except asyncio.CancelledError:
                pass
            self._delivery_task = None
        self._queue = None

        if server is not None:
            await server.wait_closed()
            try:
                self._socket_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove socket {self._socket_path}: {e}")
            logger.info("Socket server stopped")

        self._set_listening(False)

    def _is_healthy(self) -> bool:
        return (
            self._server is not None
            and self._server.is_serving()
            and self._socket_path.exists()
        )

    async def _watchdog_loop(self) -> None:
        while True:
            try:
                if self._server is not None:
                    await asyncio.sleep(self.watch_interval_sec)
                    if self._is_healthy():
                        continue
                    logger.warning(
                        f"Socket {self._socket_path} is gone or not serving; "
                        f"restarting in {self.restart_delay_sec}s"
                    )
                    await self._shutdown()

                await asyncio.sleep(self.restart_delay_sec)
                await self.start()
            except asyncio.CancelledError:
                break
            except BindError as e:
                logger.error(f"{e}; retrying in {self.restart_delay_sec}s")
            except Exception as e:
                logger.error(f"Socket watchdog error: {e}", exc_info=True)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Read newline-delimited messages from one connection.

        Args:
            reader: Stream reader for the hook's messages
            writer: Stream writer (only used to close the connection)
        """
        task = asyncio.current_task()
        self._connections.add(task)
        queue = self._queue
        buffer = bytearray()
        logger.debug(f"Client connected ({len(self._connections)} open)")

        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                buffer.extend(chunk)

                while True:
                    newline = buffer.find(b"\n")
                    if newline < 0:
                        break
                    line = bytes(buffer[:newline]).decode("utf-8", errors="replace")
                    del buffer[: newline + 1]

                    event = parse(line)
                    if event is not None and queue is not None:
                        queue.put_nowait(event)

                if len(buffer) > MAX_LINE_BYTES:
                    logger.warning(
                        f"Dropping client: {len(buffer)} bytes without a newline "
                        f"(limit {MAX_LINE_BYTES})"
                    )
                    buffer.clear()
                    break
        except (ConnectionError, OSError) as e:
            logger.debug(f"Client connection error: {e}")
        finally:
            if buffer:
                logger.debug(f"Discarding {len(buffer)} bytes of unterminated input")
            self._connections.discard(task)
            writer.close()

    async def _delivery_loop(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                await self.on_event(event)
            except Exception as e:
                logger.error(f"Event observer failed on {type(event).__name__}: {e}", exc_info=True)

    def _set_listening(self, listening: bool) -> None:
        if listening == self._listening:
            return
        self._listening = listening
        if self.on_listening_changed is None:
            return
        try:
            self.on_listening_changed(listening)
        except Exception as e:
            logger.error(f"Listening observer failed: {e}", exc_info=True)
