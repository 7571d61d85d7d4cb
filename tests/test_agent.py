"""Tests for loopbridge.agent."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from loopbridge.agent import MAX_UNSENT, AgentPoller, ConnectionState, ConnectionStatus
from loopbridge.discovery import Discovery
from loopbridge.models.credentials import CacheEntry
from loopbridge.models.messages import MessageType, create_message


TOKEN = "c" * 32
PORT = 7890


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeController:
    """Stands in for the control server behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.queue: list[dict] = []
        self.posted: list[dict] = []
        self.poll_status = 200
        self.result_status = 200
        self.fail_results = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("X-Bridge-Token") != TOKEN:
            return httpx.Response(401, json={"ok": False, "error": "Unauthorized"})
        if request.url.path == "/poll":
            if self.poll_status != 200:
                return httpx.Response(self.poll_status, json={"ok": False, "error": "x"})
            messages, self.queue = self.queue, []
            return httpx.Response(200, json={"messages": messages})
        if request.url.path == "/result":
            if self.fail_results:
                raise httpx.ConnectError("refused", request=request)
            self.posted.append(json.loads(request.content)["message"])
            return httpx.Response(self.result_status, json={"ok": True})
        return httpx.Response(404, json={"ok": False, "error": "Not found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def _discovery(entry: CacheEntry | None) -> MagicMock:
    discovery = MagicMock(spec=Discovery)
    discovery.discover = AsyncMock(return_value=entry)
    discovery.base_url.side_effect = lambda port: f"http://127.0.0.1:{port}"
    return discovery


def _start(plan_id: str) -> dict:
    return create_message(MessageType.START_SESSION, {"planId": plan_id}).model_dump(mode="json")


def _reply_with_result(message):
    if message.type is MessageType.START_SESSION:
        return create_message(
            MessageType.SESSION_RESULT,
            {"planId": message.payload["planId"], "passed": True},
        )
    return None


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def entry():
    return CacheEntry(port=PORT, token=TOKEN)


# ---------------------------------------------------------------------------
# ConnectionState
# ---------------------------------------------------------------------------


class TestConnectionState:
    def test_starts_disconnected(self):
        state = ConnectionState()
        assert state.status is ConnectionStatus.DISCONNECTED
        assert state.port is None

    def test_notifies_only_on_transitions(self):
        state = ConnectionState()
        events = []
        state.subscribe(lambda status, port: events.append((status, port)))

        assert state.mark_connected(7890) is True
        assert state.mark_connected(7890) is False
        assert state.mark_disconnected() is True
        assert state.mark_disconnected() is False

        assert events == [
            (ConnectionStatus.CONNECTED, 7890),
            (ConnectionStatus.DISCONNECTED, None),
        ]

    def test_port_change_is_a_transition(self):
        state = ConnectionState()
        state.mark_connected(7890)
        assert state.mark_connected(7891) is True
        assert state.port == 7891

    def test_unsubscribe(self):
        state = ConnectionState()
        callback = MagicMock()
        unsubscribe = state.subscribe(callback)
        unsubscribe()
        state.mark_connected(1)
        callback.assert_not_called()

    def test_failing_subscriber_does_not_block_others(self):
        state = ConnectionState()
        later = MagicMock()
        state.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        state.subscribe(later)
        state.mark_connected(1)
        later.assert_called_once_with(ConnectionStatus.CONNECTED, 1)


# ---------------------------------------------------------------------------
# AgentPoller
# ---------------------------------------------------------------------------


class TestTick:
    @pytest.mark.asyncio
    async def test_no_server_marks_disconnected(self, controller):
        async with controller.client() as client:
            poller = AgentPoller(MagicMock(), _discovery(None), client=client)
            poller.state.mark_connected(PORT)
            assert await poller.tick() is True
        assert poller.state.status is ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_first_clean_cycle_connects_and_announces(self, controller, entry):
        events = []
        async with controller.client() as client:
            poller = AgentPoller(
                MagicMock(return_value=None), _discovery(entry), client=client, agent_version="9.9"
            )
            poller.state.subscribe(lambda status, port: events.append(status))
            await poller.tick()
            await poller.tick()

        assert events == [ConnectionStatus.CONNECTED]
        assert poller.state.port == PORT
        assert [m["type"] for m in controller.posted] == ["agent_ready"]
        assert controller.posted[0]["payload"] == {"agentVersion": "9.9"}

    @pytest.mark.asyncio
    async def test_handler_replies_are_posted(self, controller, entry):
        controller.queue = [_start("login"), _start("checkout")]
        async with controller.client() as client:
            poller = AgentPoller(_reply_with_result, _discovery(entry), client=client)
            poller.state.mark_connected(PORT)
            await poller.tick()

        plans = [m["payload"]["planId"] for m in controller.posted if m["type"] == "session_result"]
        assert plans == ["login", "checkout"]
        assert poller.unsent_count == 0

    @pytest.mark.asyncio
    async def test_async_handler(self, controller, entry):
        controller.queue = [_start("login")]

        async def handler(message):
            await asyncio.sleep(0)
            return _reply_with_result(message)

        async with controller.client() as client:
            poller = AgentPoller(handler, _discovery(entry), client=client)
            poller.state.mark_connected(PORT)
            await poller.tick()
        assert controller.posted[0]["payload"]["planId"] == "login"

    @pytest.mark.asyncio
    async def test_invalid_messages_are_skipped(self, controller, entry):
        controller.queue = [{"type": "bogus", "payload": {}, "timestamp": 1}, _start("login")]
        handler = MagicMock(return_value=None)
        async with controller.client() as client:
            poller = AgentPoller(handler, _discovery(entry), client=client)
            poller.state.mark_connected(PORT)
            await poller.tick()
        handler.assert_called_once()
        assert poller.state.is_connected

    @pytest.mark.asyncio
    async def test_handler_exception_does_not_fail_cycle(self, controller, entry):
        controller.queue = [_start("boom"), _start("login")]

        def handler(message):
            if message.payload["planId"] == "boom":
                raise RuntimeError("handler blew up")
            return _reply_with_result(message)

        async with controller.client() as client:
            poller = AgentPoller(handler, _discovery(entry), client=client)
            poller.state.mark_connected(PORT)
            await poller.tick()
        assert poller.state.is_connected
        assert [m["payload"]["planId"] for m in controller.posted] == ["login"]

    @pytest.mark.asyncio
    async def test_unauthorized_invalidates_cache(self, controller):
        stale = CacheEntry(port=PORT, token="0" * 32)
        discovery = _discovery(stale)
        async with controller.client() as client:
            poller = AgentPoller(MagicMock(), discovery, client=client)
            poller.state.mark_connected(PORT)
            await poller.tick()
        discovery.invalidate.assert_called_once_with()
        assert poller.state.status is ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_transport_error_marks_disconnected(self, entry):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            poller = AgentPoller(MagicMock(), _discovery(entry), client=client)
            poller.state.mark_connected(PORT)
            assert await poller.tick() is True
        assert poller.state.status is ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_server_error_marks_disconnected(self, controller, entry):
        controller.poll_status = 500
        async with controller.client() as client:
            poller = AgentPoller(MagicMock(), _discovery(entry), client=client)
            poller.state.mark_connected(PORT)
            await poller.tick()
        assert not poller.state.is_connected

    @pytest.mark.asyncio
    async def test_unsent_results_are_retried(self, controller, entry):
        controller.queue = [_start("login")]
        controller.fail_results = True
        async with controller.client() as client:
            poller = AgentPoller(_reply_with_result, _discovery(entry), client=client)
            poller.state.mark_connected(PORT)

            await poller.tick()
            assert poller.unsent_count == 1
            assert not poller.state.is_connected

            controller.fail_results = False
            await poller.tick()

        types = [m["type"] for m in controller.posted]
        # Reconnecting announces the agent before flushing the held result
        assert types == ["agent_ready", "session_result"]
        assert poller.unsent_count == 0
        assert poller.state.is_connected

    @pytest.mark.asyncio
    async def test_rejected_reply_is_dropped(self, controller, entry):
        controller.queue = [_start("login")]
        controller.result_status = 400
        async with controller.client() as client:
            poller = AgentPoller(_reply_with_result, _discovery(entry), client=client)
            poller.state.mark_connected(PORT)
            await poller.tick()
        assert poller.unsent_count == 0
        assert poller.state.is_connected


class TestReplyQueueLimit:
    def _results(self, count: int):
        return [
            create_message(MessageType.SESSION_RESULT, {"planId": f"old{i}", "passed": True})
            for i in range(count)
        ]

    @pytest.mark.asyncio
    async def test_announcement_on_full_queue_keeps_newest_reply(self, controller, entry, caplog):
        controller.fail_results = True
        async with controller.client() as client:
            poller = AgentPoller(MagicMock(), _discovery(entry), client=client)
            poller._unsent.extend(self._results(MAX_UNSENT))
            with caplog.at_level("WARNING", logger="loopbridge.agent"):
                await poller.tick()

        held = list(poller._unsent)
        assert poller.unsent_count == MAX_UNSENT
        assert held[0].type is MessageType.AGENT_READY
        plans = [m.payload["planId"] for m in held[1:]]
        assert plans[0] == "old1"
        assert plans[-1] == f"old{MAX_UNSENT - 1}"
        assert any("dropping oldest" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_new_reply_on_full_queue_drops_oldest_reply(self, caplog):
        poller = AgentPoller(MagicMock(), _discovery(None))
        try:
            ready = create_message(MessageType.AGENT_READY, {"agentVersion": "1"})
            poller._unsent.append(ready)
            poller._unsent.extend(self._results(MAX_UNSENT - 1))
            newest = create_message(
                MessageType.SESSION_RESULT, {"planId": "newest", "passed": True}
            )

            with caplog.at_level("WARNING", logger="loopbridge.agent"):
                poller._hold(newest)

            held = list(poller._unsent)
            assert len(held) == MAX_UNSENT
            assert held[0] is ready
            assert held[1].payload["planId"] == "old1"
            assert held[-1] is newest
            assert any("dropping oldest" in r.getMessage() for r in caplog.records)
        finally:
            await poller.aclose()


class TestInFlightGuard:
    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, entry):
        release = asyncio.Event()
        discovery = _discovery(entry)

        async def slow_discover():
            await release.wait()
            return None

        discovery.discover = AsyncMock(side_effect=slow_discover)
        poller = AgentPoller(MagicMock(), discovery)
        try:
            first = asyncio.create_task(poller.tick())
            await asyncio.sleep(0)
            assert poller.in_flight
            assert await poller.tick() is False

            release.set()
            assert await first is True
            assert not poller.in_flight
            assert discovery.discover.await_count == 1
        finally:
            await poller.aclose()


class TestRun:
    @pytest.mark.asyncio
    async def test_run_until_stopped(self, entry):
        discovery = _discovery(None)
        poller = AgentPoller(MagicMock(), discovery)
        task = asyncio.create_task(poller.run(interval=0.01))
        await asyncio.sleep(0.05)
        poller.stop()
        await asyncio.wait_for(task, timeout=1)
        assert discovery.discover.await_count >= 2
        await poller.aclose()
