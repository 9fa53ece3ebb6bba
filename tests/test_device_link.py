from __future__ import annotations

import asyncio

import pytest

from devicepilot.transport.device_link import (
    AuthenticationError,
    ConnectionState,
    DeviceLink,
    ExponentialBackoff,
    ObservableState,
)
from doubles import FakeSocket, ManualClock, settle

AUTH_OK = {"type": "auth_ok", "deviceId": "dev-1"}


class Connector:
    def __init__(self, *sockets: FakeSocket) -> None:
        self.sockets = list(sockets)
        self.calls = 0

    async def __call__(self, url: str) -> FakeSocket:
        self.calls += 1
        if not self.sockets:
            raise ConnectionRefusedError("no server")
        return self.sockets.pop(0)


@pytest.fixture
def link_clock() -> ManualClock:
    return ManualClock()


def make_link(connector, clock, **kwargs) -> DeviceLink:
    return DeviceLink("ws://orchestrator/ws/device", "dp_key", connector=connector, clock=clock, **kwargs)


async def shutdown(link: DeviceLink, task: "asyncio.Task[None]") -> None:
    await link.stop()
    await asyncio.wait_for(task, timeout=1.0)


def test_backoff_doubles_to_cap_and_resets():
    backoff = ExponentialBackoff()
    assert [backoff.next_delay() for _ in range(7)] == [1, 2, 4, 8, 16, 30, 30]
    backoff.reset()
    assert backoff.next_delay() == 1


def test_backoff_rejects_nonsense():
    with pytest.raises(ValueError):
        ExponentialBackoff(initial=0)
    with pytest.raises(ValueError):
        ExponentialBackoff(initial=10, maximum=5)


async def test_observable_state_notifies_and_waits():
    state = ObservableState()
    seen = []
    unsubscribe = state.subscribe(seen.append)

    waiter = asyncio.create_task(state.wait_for(ConnectionState.CONNECTED))
    await settle()
    state.set(ConnectionState.CONNECTING)
    assert not waiter.done()
    state.set(ConnectionState.CONNECTED)
    await settle()
    assert waiter.done()

    unsubscribe()
    state.set(ConnectionState.CLOSED)
    assert seen == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    await state.wait_for(ConnectionState.CLOSED)


async def test_auth_error_is_fatal_and_not_retried(link_clock):
    connector = Connector(FakeSocket({"type": "auth_error", "message": "Invalid API key"}))
    link = make_link(connector, link_clock)

    with pytest.raises(AuthenticationError, match="Invalid API key"):
        await link.run()

    assert connector.calls == 1
    assert link.state.value is ConnectionState.CLOSED
    assert link_clock.sleeps == []


async def test_queued_messages_flush_in_order_after_reauth(link_clock):
    first, second = FakeSocket(AUTH_OK), FakeSocket(AUTH_OK)
    link = make_link(Connector(first, second), link_clock, device_info={"model": "Pixel 8"})
    task = asyncio.create_task(link.run())
    await settle()
    assert link.state.value is ConnectionState.CONNECTED
    assert first.sent == [{"type": "auth", "apiKey": "dp_key", "deviceInfo": {"model": "Pixel 8"}}]

    first.drop()
    await settle()
    assert link.state.value is ConnectionState.DISCONNECTED

    await link.send({"type": "voice_start"})
    await link.send({"type": "voice_chunk", "data": "AAAA"})
    assert len(link.queued) == 2

    await link_clock.advance(1.0)

    assert link.state.value is ConnectionState.CONNECTED
    assert second.sent_types() == ["auth", "voice_start", "voice_chunk"]
    assert link.queued == []
    assert link_clock.sleeps[-1] == 1.0

    await link.send({"type": "voice_send"})
    assert second.sent_types()[-1] == "voice_send"
    await shutdown(link, task)


async def test_missing_pong_triggers_reconnect(link_clock):
    first, second = FakeSocket(AUTH_OK), FakeSocket(AUTH_OK)
    link = make_link(Connector(first, second), link_clock)
    task = asyncio.create_task(link.run())
    await settle()

    await link_clock.advance(20.0)
    assert first.sent_types()[-1] == "ping"

    await link_clock.advance(20.0)
    assert link.state.value is ConnectionState.DISCONNECTED
    assert first.closed
    assert link_clock.sleeps[-1] == 1.0

    await link_clock.advance(1.0)
    assert link.state.value is ConnectionState.CONNECTED
    await shutdown(link, task)


async def test_pong_keeps_link_alive(link_clock):
    socket = FakeSocket(AUTH_OK)
    link = make_link(Connector(socket), link_clock)
    task = asyncio.create_task(link.run())
    await settle()

    for _ in range(3):
        await link_clock.advance(20.0)
        assert socket.sent_types()[-1] == "ping"
        socket.feed({"type": "pong"})
        await settle()

    assert link.state.value is ConnectionState.CONNECTED
    assert socket.sent_types().count("ping") == 3
    await shutdown(link, task)


async def test_commands_are_answered_with_request_id_and_events_forwarded(link_clock):
    async def handler(command):
        return {"type": "screen", "elements": [{"text": "Home"}]}

    events = []
    socket = FakeSocket(
        AUTH_OK,
        {"type": "get_screen", "requestId": "req-7"},
        {"type": "goal_started", "sessionId": "s-1"},
        {"type": "ping"},
    )
    link = make_link(Connector(socket), link_clock, handler=handler, on_event=events.append)
    task = asyncio.create_task(link.run())
    await settle()

    assert {"type": "screen", "elements": [{"text": "Home"}], "requestId": "req-7"} in socket.sent
    assert {"type": "pong"} in socket.sent
    assert events == [{"type": "goal_started", "sessionId": "s-1"}]
    assert link.device_id == "dev-1"
    await shutdown(link, task)


async def test_command_without_handler_gets_error_reply(link_clock):
    socket = FakeSocket(AUTH_OK, {"type": "execute", "requestId": "req-1", "action": {"type": "back"}})
    link = make_link(Connector(socket), link_clock)
    task = asyncio.create_task(link.run())
    await settle()

    reply = socket.sent[-1]
    assert reply["type"] == "error"
    assert reply["requestId"] == "req-1"
    await shutdown(link, task)


async def test_failing_handler_gets_error_reply_with_request_id(link_clock):
    async def handler(command):
        raise RuntimeError("screen capture crashed")

    socket = FakeSocket(AUTH_OK, {"type": "get_screenshot", "requestId": "req-3"})
    link = make_link(Connector(socket), link_clock, handler=handler)
    task = asyncio.create_task(link.run())
    await settle()

    assert socket.sent[-1] == {"type": "error", "reason": "screen capture crashed", "requestId": "req-3"}
    assert link.state.value is ConnectionState.CONNECTED
    await shutdown(link, task)


async def test_refused_connections_back_off(link_clock):
    connector = Connector()
    link = make_link(connector, link_clock)
    task = asyncio.create_task(link.run())
    await settle()
    await link_clock.advance(1.0)
    await link_clock.advance(2.0)

    assert link_clock.sleeps == [1.0, 2.0, 4.0]
    assert connector.calls == 3
    await link.stop()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
