"""Pytest configuration and fixtures for boop monitor tests."""

import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

# Add the repository root so boop_monitor imports without an install
package_root = Path(__file__).parent.parent
if str(package_root) not in sys.path:
    sys.path.insert(0, str(package_root))

from boop_monitor.config import AppSettings, NtfySettings, SettingsStore
from boop_monitor.models import Session, SessionState

TEST_TOPIC = "boop-abcdefghijklmnopqrstuvwx"


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class RecordingNotifier:
    """Stands in for NotificationDispatcher and records every transition."""

    def __init__(self) -> None:
        self.transitions: list[tuple[str, SessionState, SessionState, Optional[int]]] = []

    def on_transition(
        self,
        session: Session,
        previous: SessionState,
        new: SessionState,
        working_duration_secs: Optional[int] = None,
    ) -> bool:
        self.transitions.append((session.id, previous, new, working_duration_secs))
        return False


class FakeDNDChecker:
    def __init__(self, enabled: bool = False) -> None:
        self.enabled = enabled
        self.calls = 0
        self.running = False

    async def start(self) -> None:
        self.running = True

    async def stop(self) -> None:
        self.running = False

    def is_enabled(self) -> bool:
        self.calls += 1
        return self.enabled

    def check_and_warn(self) -> bool:
        return self.enabled


class FakeNtfyServer:
    """In-process ntfy stand-in that records published messages.

    Usage:
        async with FakeNtfyServer() as sink:
            ... POST to f"{sink.url}/{topic}" ...
            assert sink.messages[0]["title"] == "demo"
    """

    def __init__(self, status: int = 200, head_status: int = 200) -> None:
        self.status = status
        self.head_status = head_status
        self.messages: list[dict] = []
        self.head_requests = 0

        app = web.Application()
        app.router.add_get("/", self._handle_root)
        app.router.add_post("/{topic}", self._handle_publish)
        self._server = TestServer(app)

    @property
    def url(self) -> str:
        return f"http://{self._server.host}:{self._server.port}"

    async def __aenter__(self) -> "FakeNtfyServer":
        await self._server.start_server()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self._server.close()

    async def _handle_root(self, request: web.Request) -> web.Response:
        if request.method == "HEAD":
            self.head_requests += 1
        return web.Response(status=self.head_status)

    async def _handle_publish(self, request: web.Request) -> web.Response:
        self.messages.append({
            "topic": request.match_info["topic"],
            "title": request.headers.get("Title"),
            "priority": request.headers.get("Priority"),
            "tags": request.headers.get("Tags"),
            "body": await request.text(),
        })
        return web.Response(status=self.status, text="{}")


def make_settings_store(server: str = "http://127.0.0.1:9", **overrides) -> SettingsStore:
    """Settings store with a fixed topic and the given top-level overrides."""
    settings = AppSettings(ntfy=NtfySettings(server=server, topic=TEST_TOPIC), **overrides)
    return SettingsStore(settings=settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dnd() -> FakeDNDChecker:
    return FakeDNDChecker()


@pytest.fixture
def settings_store() -> SettingsStore:
    return make_settings_store()


@pytest.fixture
def ntfy_server():
    """Factory for FakeNtfyServer; use as `async with ntfy_server() as sink`."""
    return FakeNtfyServer


@pytest.fixture
def short_tmp_dir() -> Generator[Path, None, None]:
    """Temporary directory with a short path.

    Unix socket paths are limited to ~108 bytes, which pytest's tmp_path can
    exceed.
    """
    path = Path(tempfile.mkdtemp(prefix="boop-", dir="/tmp"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def socket_path(short_tmp_dir: Path) -> Path:
    return short_tmp_dir / "sock"


@pytest.fixture
def store_factory():
    """make_settings_store, for tests that need a custom server or settings."""
    return make_settings_store
