"""Unit tests for the notification policy and push delivery."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from boop_monitor.config import (
    AppSettings,
    NotificationCategory,
    NotificationSettings,
    QuietHours,
)
from boop_monitor.dispatcher import (
    NotificationDispatcher,
    PushMessage,
    build_message,
    decide,
)
from boop_monitor.dnd import DNDChecker
from boop_monitor.models import Session, SessionState

WORKING = SessionState.WORKING
APPROVAL = SessionState.AWAITING_APPROVAL
COMPLETED = SessionState.COMPLETED
ERROR = SessionState.ERROR
IDLE = SessionState.IDLE


def make_session(session_id: str = "s1", tool: str = "claude", project: str = "demo") -> Session:
    return Session(id=session_id, tool=tool, project_name=project)


class TestDecide:
    """Which transitions produce which notification category."""

    @pytest.mark.parametrize("previous,new,expected", [
        (WORKING, APPROVAL, NotificationCategory.APPROVAL),
        (IDLE, APPROVAL, NotificationCategory.APPROVAL),
        (WORKING, COMPLETED, NotificationCategory.COMPLETED),
        (APPROVAL, COMPLETED, None),
        (WORKING, ERROR, NotificationCategory.ERROR),
        (APPROVAL, ERROR, NotificationCategory.ERROR),
        (WORKING, IDLE, NotificationCategory.COMPLETED),
        (APPROVAL, IDLE, None),
        (APPROVAL, WORKING, None),
        (IDLE, WORKING, None),
    ])
    def test_policy(self, previous, new, expected):
        assert decide(previous, new, AppSettings()) == expected

    def test_paused_suppresses_everything(self):
        settings = AppSettings(is_paused=True)
        for new in (APPROVAL, COMPLETED, ERROR, IDLE):
            assert decide(WORKING, new, settings) is None

    def test_disabled_category(self):
        settings = AppSettings()
        settings.notifications.error = NotificationSettings(enabled=False)
        assert decide(WORKING, ERROR, settings) is None
        assert decide(WORKING, APPROVAL, settings) == NotificationCategory.APPROVAL

    def test_disabled_completed_also_silences_idle(self):
        settings = AppSettings()
        settings.notifications.completed = NotificationSettings(enabled=False)
        assert decide(WORKING, IDLE, settings) is None

    @pytest.mark.parametrize("duration,expected", [
        (None, NotificationCategory.COMPLETED),
        (29, None),
        (30, NotificationCategory.COMPLETED),
        (600, NotificationCategory.COMPLETED),
    ])
    def test_idle_needs_enough_work(self, duration, expected):
        assert decide(WORKING, IDLE, AppSettings(), duration) == expected


class TestBuildMessage:
    def test_approval_message(self):
        message = build_message(make_session(project="webapp"), NotificationCategory.APPROVAL, AppSettings())
        assert message == PushMessage(
            title="webapp", body="Claude is waiting for approval", priority=5, tags=["warning"]
        )

    def test_completed_and_error_messages(self):
        settings = AppSettings()
        completed = build_message(make_session(tool="codex"), NotificationCategory.COMPLETED, settings)
        error = build_message(make_session(tool="codex"), NotificationCategory.ERROR, settings)

        assert (completed.body, completed.priority, completed.tags) == ("Codex finished", 3, ["white_check_mark"])
        assert (error.body, error.priority, error.tags) == ("Codex encountered an error", 4, ["x"])

    def test_headers(self):
        message = PushMessage(title="demo", body="b", priority=4, tags=["x", "y"])
        assert message.headers() == {"Title": "demo", "Priority": "4", "Tags": "x,y"}

    def test_header_line_breaks_are_folded(self):
        message = PushMessage(title="demo\r\nInjected: 1\n", body="b", priority=3)
        assert message.headers()["Title"] == "demo Injected: 1"


class TestGates:
    """Debounce, quiet hours and DND, with the HTTP request stubbed."""

    @pytest.mark.asyncio
    async def test_debounce_then_resend(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(return_value=200)
        session = make_session()

        assert dispatcher.on_transition(session, WORKING, APPROVAL) is True
        clock.advance(10)
        assert dispatcher.on_transition(session, APPROVAL, ERROR) is False
        clock.advance(21)
        assert dispatcher.on_transition(session, ERROR, APPROVAL) is True

        await dispatcher.drain()
        assert dispatcher._post.await_count == 2
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_debounce_recorded_before_send_completes(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(return_value=200)
        session = make_session()

        assert dispatcher.on_transition(session, WORKING, APPROVAL) is True
        assert dispatcher.on_transition(session, APPROVAL, ERROR) is False

        await dispatcher.drain()
        assert dispatcher._post.await_count == 1
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_debounce_is_per_session(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(return_value=200)

        assert dispatcher.on_transition(make_session("a"), WORKING, ERROR)
        assert dispatcher.on_transition(make_session("b"), WORKING, ERROR)

        await dispatcher.drain()
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_clear_debounce(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(return_value=200)
        session = make_session()

        dispatcher.on_transition(session, WORKING, APPROVAL)
        dispatcher.clear_debounce("s1")
        assert dispatcher.on_transition(session, APPROVAL, ERROR) is True

        dispatcher.clear_all_debounce()
        assert dispatcher.on_transition(session, ERROR, APPROVAL) is True

        await dispatcher.drain()
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_quiet_hours_suppress_without_debouncing(self, settings_store, dnd, clock):
        settings_store.settings.quiet_hours = QuietHours(enabled=True, start="00:00", end="00:00")
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(return_value=200)
        session = make_session()

        assert dispatcher.on_transition(session, WORKING, ERROR) is False

        settings_store.settings.quiet_hours = QuietHours(enabled=False)
        assert dispatcher.on_transition(session, WORKING, ERROR) is True

        await dispatcher.drain()
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_dnd_suppresses_when_respected(self, settings_store, dnd, clock):
        dnd.enabled = True
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(return_value=200)

        assert dispatcher.on_transition(make_session("a"), WORKING, ERROR) is False

        settings_store.settings.respect_dnd = False
        assert dispatcher.on_transition(make_session("b"), WORKING, ERROR) is True

        await dispatcher.drain()
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_dnd_gate_reads_cached_state(self, settings_store, clock, tmp_path):
        client = tmp_path / "swaync-client"
        client.write_text("#!/bin/sh\nexec sleep 5\n")
        client.chmod(0o755)
        checker = DNDChecker(client=str(client), timeout_sec=2.0)
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=checker, clock=clock)
        dispatcher._post = AsyncMock(return_value=200)

        started = time.monotonic()
        assert dispatcher.on_transition(make_session(), WORKING, ERROR) is True
        assert time.monotonic() - started < 0.5

        await dispatcher.drain()
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_dnd_polling_follows_dispatcher_lifecycle(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._head = AsyncMock(return_value=200)
        await dispatcher.start()
        assert dnd.running
        await dispatcher.stop()
        assert not dnd.running

    @pytest.mark.asyncio
    async def test_dnd_not_queried_when_nothing_fires(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher.on_transition(make_session(), APPROVAL, COMPLETED)
        assert dnd.calls == 0
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_paused_sends_nothing(self, settings_store, dnd, clock):
        settings_store.set_paused(True)
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(return_value=200)

        assert dispatcher.on_transition(make_session(), WORKING, APPROVAL) is False
        await dispatcher.drain()
        dispatcher._post.assert_not_awaited()
        await dispatcher.stop()


class TestDelivery:
    """Requests against an in-process ntfy server."""

    @pytest.mark.asyncio
    async def test_sends_to_topic(self, ntfy_server, store_factory, dnd, clock):
        async with ntfy_server() as sink:
            store = store_factory(server=sink.url)
            dispatcher = NotificationDispatcher(store, dnd_checker=dnd, clock=clock)

            dispatcher.on_transition(make_session(project="webapp"), WORKING, APPROVAL)
            await dispatcher.drain()
            await dispatcher.stop()

        assert sink.messages == [{
            "topic": store.settings.ntfy.topic,
            "title": "webapp",
            "priority": "5",
            "tags": "warning",
            "body": "Claude is waiting for approval",
        }]
        assert dispatcher.last_error is None
        assert dispatcher.last_successful_send == clock.now
        assert dispatcher.connection_healthy

    @pytest.mark.asyncio
    async def test_http_error_status(self, ntfy_server, store_factory, dnd, clock):
        async with ntfy_server(status=500) as sink:
            dispatcher = NotificationDispatcher(store_factory(server=sink.url), dnd_checker=dnd, clock=clock)
            dispatcher.on_transition(make_session(), WORKING, ERROR)
            await dispatcher.drain()
            await dispatcher.stop()

        assert dispatcher.last_error == "HTTP 500"
        assert dispatcher.last_successful_send is None

    @pytest.mark.asyncio
    async def test_success_clears_previous_error(self, ntfy_server, store_factory, dnd, clock):
        async with ntfy_server(status=429) as sink:
            dispatcher = NotificationDispatcher(store_factory(server=sink.url), dnd_checker=dnd, clock=clock)
            dispatcher.on_transition(make_session("a"), WORKING, ERROR)
            await dispatcher.drain()
            assert dispatcher.last_error == "HTTP 429"

            sink.status = 200
            dispatcher.on_transition(make_session("b"), WORKING, ERROR)
            await dispatcher.drain()
            await dispatcher.stop()

        assert dispatcher.last_error is None
        assert len(sink.messages) == 2

    @pytest.mark.asyncio
    async def test_project_name_with_line_break(self, ntfy_server, store_factory, dnd, clock):
        async with ntfy_server() as sink:
            dispatcher = NotificationDispatcher(store_factory(server=sink.url), dnd_checker=dnd, clock=clock)
            dispatcher.on_transition(make_session(project="demo\nInjected: 1"), WORKING, ERROR)
            await dispatcher.drain()
            await dispatcher.stop()

        assert dispatcher.last_error is None
        assert sink.messages[0]["title"] == "demo Injected: 1"

    @pytest.mark.asyncio
    async def test_rejected_request_is_recorded(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(side_effect=ValueError("Forbidden control character"))
        dispatcher.on_transition(make_session(), WORKING, ERROR)
        await dispatcher.drain()
        await dispatcher.stop()

        assert dispatcher.last_error == "Invalid request: Forbidden control character"
        assert dispatcher.last_successful_send is None

    @pytest.mark.asyncio
    async def test_invalid_url(self, store_factory, dnd, clock):
        dispatcher = NotificationDispatcher(store_factory(server="not a url"), dnd_checker=dnd, clock=clock)
        dispatcher.on_transition(make_session(), WORKING, ERROR)
        await dispatcher.drain()
        await dispatcher.stop()
        assert dispatcher.last_error == "Invalid ntfy URL"

    @pytest.mark.asyncio
    async def test_timeout(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(side_effect=asyncio.TimeoutError())
        dispatcher.on_transition(make_session(), WORKING, ERROR)
        await dispatcher.drain()
        await dispatcher.stop()
        assert dispatcher.last_error == "Request timed out"

    @pytest.mark.asyncio
    async def test_connection_refused(self, store_factory, dnd, clock, ntfy_server):
        async with ntfy_server() as sink:
            url = sink.url
        # Server is closed now
        dispatcher = NotificationDispatcher(store_factory(server=url), dnd_checker=dnd, clock=clock)
        dispatcher.on_transition(make_session(), WORKING, ERROR)
        await dispatcher.drain()
        await dispatcher.stop()

        assert dispatcher.last_error
        assert dispatcher.last_successful_send is None

    @pytest.mark.asyncio
    async def test_status_listeners(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(return_value=503)
        calls = []
        dispatcher.add_listener(lambda: calls.append(dispatcher.last_error))

        dispatcher.on_transition(make_session(), WORKING, ERROR)
        await dispatcher.drain()
        await dispatcher.stop()

        assert calls == ["HTTP 503"]


class TestTestNotification:
    @pytest.mark.asyncio
    async def test_bypasses_gates(self, ntfy_server, store_factory, dnd, clock):
        async with ntfy_server() as sink:
            store = store_factory(
                server=sink.url,
                quiet_hours=QuietHours(enabled=True, start="00:00", end="00:00"),
                is_paused=True,
            )
            dnd.enabled = True
            dispatcher = NotificationDispatcher(store, dnd_checker=dnd, clock=clock)
            assert await dispatcher.send_test_notification() is True
            assert await dispatcher.send_test_notification() is True
            await dispatcher.stop()

        assert len(sink.messages) == 2
        message = sink.messages[0]
        assert message["title"] == "Boop Test"
        assert message["body"] == "If you see this, notifications are working!"
        assert message["priority"] == "3"
        assert message["tags"] == "tada"
        assert not dispatcher.is_testing_connection

    @pytest.mark.asyncio
    async def test_reports_failure(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._post = AsyncMock(return_value=403)
        testing_flags = []
        dispatcher.add_listener(lambda: testing_flags.append(dispatcher.is_testing_connection))

        assert await dispatcher.send_test_notification() is False
        await dispatcher.stop()

        assert dispatcher.last_error == "HTTP 403"
        assert testing_flags[0] is True
        assert testing_flags[-1] is False


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_reachable_server(self, ntfy_server, store_factory, dnd, clock):
        async with ntfy_server() as sink:
            dispatcher = NotificationDispatcher(store_factory(server=sink.url), dnd_checker=dnd, clock=clock)
            assert await dispatcher.check_health() is True
            await dispatcher.stop()

        assert dispatcher.connection_healthy
        assert sink.head_requests == 1

    @pytest.mark.asyncio
    async def test_unhealthy_does_not_set_last_error(self, ntfy_server, store_factory, dnd, clock):
        async with ntfy_server(head_status=503) as sink:
            dispatcher = NotificationDispatcher(store_factory(server=sink.url), dnd_checker=dnd, clock=clock)
            dispatcher.connection_healthy = True
            assert await dispatcher.check_health() is False
            await dispatcher.stop()

        assert not dispatcher.connection_healthy
        assert dispatcher.last_error is None

    @pytest.mark.asyncio
    async def test_probe_runs_at_start(self, settings_store, dnd, clock):
        dispatcher = NotificationDispatcher(settings_store, dnd_checker=dnd, clock=clock)
        dispatcher._head = AsyncMock(return_value=200)

        await dispatcher.start()
        for _ in range(50):
            if dispatcher.connection_healthy:
                break
            await asyncio.sleep(0.01)
        await dispatcher.stop()

        assert dispatcher.connection_healthy
        dispatcher._head.assert_awaited_with(settings_store.settings.ntfy.server)
