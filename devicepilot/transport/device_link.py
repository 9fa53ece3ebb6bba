"""
Device side of the WebSocket transport.

`DeviceLink` keeps one authenticated connection to the orchestrator alive:
it reconnects with exponential backoff, authenticates on every connect,
flushes queued outbound messages in FIFO order right after `auth_ok`,
answers inbound commands (echoing their requestId), and detects dead links
through ping/pong. An `auth_error` reply is fatal and never retried.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Set

import websockets
from websockets.exceptions import WebSocketException

from devicepilot.transport.sessions import TransportError
from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock

Message = Dict[str, Any]
CommandHandler = Callable[[Message], Awaitable[Message]]
EventListener = Callable[[Message], None]

COMMAND_TYPES = frozenset({"get_screen", "get_screenshot", "execute"})
DEFAULT_HEARTBEAT_INTERVAL = 20.0


class AuthenticationError(TransportError):
    """The orchestrator rejected the device credential."""


class LinkDropped(ConnectionError):
    """The live connection stopped answering heartbeats."""


class WebSocketLike(Protocol):
    async def send(self, message: str) -> None:
        ...

    async def recv(self) -> Any:
        ...

    async def close(self) -> None:
        ...


Connector = Callable[[str], Awaitable[WebSocketLike]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    CLOSED = "closed"


class ObservableState:
    """Current `ConnectionState` plus change notifications."""

    def __init__(self, initial: ConnectionState = ConnectionState.DISCONNECTED) -> None:
        self._value = initial
        self._listeners: List[Callable[[ConnectionState], None]] = []
        self._waiters: List["tuple[ConnectionState, asyncio.Future[None]]"] = []

    @property
    def value(self) -> ConnectionState:
        return self._value

    def subscribe(self, listener: Callable[[ConnectionState], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set(self, value: ConnectionState) -> None:
        if value is self._value:
            return
        self._value = value
        for listener in list(self._listeners):
            listener(value)
        remaining = []
        for wanted, future in self._waiters:
            if wanted is value and not future.done():
                future.set_result(None)
            elif not future.done():
                remaining.append((wanted, future))
        self._waiters = remaining

    async def wait_for(self, value: ConnectionState) -> None:
        if self._value is value:
            return
        future: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._waiters.append((value, future))
        await future


class ExponentialBackoff:
    """Delays of `initial`, doubling up to `maximum`; `reset()` after a good connect."""

    def __init__(self, initial: float = 1.0, maximum: float = 30.0, factor: float = 2.0) -> None:
        if initial <= 0 or maximum < initial or factor < 1:
            raise ValueError("backoff requires 0 < initial <= maximum and factor >= 1.")
        self._initial = initial
        self._maximum = maximum
        self._factor = factor
        self._current = initial

    @property
    def current(self) -> float:
        return self._current

    def next_delay(self) -> float:
        delay = self._current
        self._current = min(self._current * self._factor, self._maximum)
        return delay

    def reset(self) -> None:
        self._current = self._initial


class DeviceLink:
    """
    Reconnecting, authenticating client for the orchestrator WebSocket.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        device_info: Optional[Dict[str, Any]] = None,
        handler: Optional[CommandHandler] = None,
        on_event: Optional[EventListener] = None,
        connector: Optional[Connector] = None,
        clock: Clock = SYSTEM_CLOCK,
        backoff: Optional[ExponentialBackoff] = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        state: Optional[ObservableState] = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._device_info = device_info or {}
        self._handler = handler
        self._on_event = on_event
        self._connector: Connector = connector or websockets.connect
        self._clock = clock
        self._backoff = backoff or ExponentialBackoff()
        self._heartbeat_interval = heartbeat_interval
        self._state = state or ObservableState()
        self._outbound: Deque[Message] = deque()
        self._flush_lock = asyncio.Lock()
        self._ws: Optional[WebSocketLike] = None
        self._device_id: Optional[str] = None
        self._ping_outstanding = False
        self._stopped = False
        self._command_tasks: Set["asyncio.Task[None]"] = set()
        self._logger = StructuredLogger(__name__)

    @property
    def state(self) -> ObservableState:
        return self._state

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    @property
    def backoff(self) -> ExponentialBackoff:
        return self._backoff

    @property
    def queued(self) -> List[Message]:
        return list(self._outbound)

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #

    async def send(self, message: Message) -> None:
        """Queue a message; delivered now if connected, else right after re-auth."""
        self._outbound.append(message)
        if self._state.value is ConnectionState.CONNECTED:
            await self._flush()

    async def _flush(self) -> None:
        async with self._flush_lock:
            while self._outbound and self._ws is not None and self._state.value is ConnectionState.CONNECTED:
                message = self._outbound[0]
                try:
                    await self._ws.send(json.dumps(message))
                except (OSError, WebSocketException) as exc:
                    self._logger.warning(f"Flush interrupted, {len(self._outbound)} messages kept: {exc}")
                    return
                self._outbound.popleft()

    def _live_socket(self) -> WebSocketLike:
        if self._ws is None:
            raise LinkDropped("No live connection")
        return self._ws

    async def _send_now(self, message: Message) -> None:
        await self._live_socket().send(json.dumps(message))

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def run(self) -> None:
        """
        Connect and stay connected until `stop()`. Raises AuthenticationError
        if the orchestrator rejects the credential.
        """
        while not self._stopped:
            self._state.set(ConnectionState.CONNECTING)
            try:
                self._ws = await self._connector(self._url)
                await self._authenticate()
                await self._flush()
                await self._session()
            except AuthenticationError:
                self._stopped = True
                await self._close_socket()
                self._state.set(ConnectionState.CLOSED)
                raise
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                self._logger.warning(f"Connection lost: {exc}")
            finally:
                await self._close_socket()

            if self._stopped:
                break
            self._state.set(ConnectionState.DISCONNECTED)
            delay = self._backoff.next_delay()
            self._logger.info(f"Reconnecting in {delay:g}s")
            await self._clock.sleep(delay)
        self._state.set(ConnectionState.CLOSED)

    async def stop(self) -> None:
        self._stopped = True
        await self._close_socket()
        self._state.set(ConnectionState.CLOSED)

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        for task in list(self._command_tasks):
            task.cancel()
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException):
                self._logger.debug("Socket close failed; already gone")

    async def _authenticate(self) -> None:
        self._state.set(ConnectionState.AUTHENTICATING)
        await self._send_now({"type": "auth", "apiKey": self._api_key, "deviceInfo": self._device_info})
        reply = _decode(await self._live_socket().recv())
        if reply is None:
            raise LinkDropped("Malformed authentication reply")
        if reply.get("type") == "auth_error":
            raise AuthenticationError(reply.get("message") or "Authentication rejected")
        if reply.get("type") != "auth_ok":
            raise LinkDropped(f"Unexpected authentication reply: {reply.get('type')!r}")
        self._device_id = reply.get("deviceId") or self._device_id
        self._backoff.reset()
        self._ping_outstanding = False
        self._state.set(ConnectionState.CONNECTED)
        self._logger.info(f"Authenticated as device {self._device_id}; flushing {len(self._outbound)} queued")

    async def _session(self) -> None:
        reader = asyncio.create_task(self._reader())
        heartbeat = asyncio.create_task(self._heartbeat())
        done, pending = await asyncio.wait({reader, heartbeat}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()

    async def _heartbeat(self) -> None:
        while True:
            await self._clock.sleep(self._heartbeat_interval)
            if self._ping_outstanding:
                raise LinkDropped("Pong not received before the next heartbeat")
            self._ping_outstanding = True
            await self._send_now({"type": "ping"})

    async def _reader(self) -> None:
        ws = self._live_socket()
        while True:
            message = _decode(await ws.recv())
            if message is None:
                self._logger.warning("Ignoring malformed message from orchestrator")
                continue
            kind = message.get("type")
            if kind == "pong":
                self._ping_outstanding = False
            elif kind == "ping":
                await self._send_now({"type": "pong"})
            elif kind in COMMAND_TYPES:
                task = asyncio.create_task(self._answer(message))
                self._command_tasks.add(task)
                task.add_done_callback(self._command_tasks.discard)
            elif self._on_event is not None:
                self._on_event(message)

    async def _answer(self, command: Message) -> None:
        request_id = command.get("requestId")
        if self._handler is None:
            reply: Message = {"type": "error", "reason": "No command handler installed"}
        else:
            try:
                reply = dict(await self._handler(command))
            except Exception as exc:
                self._logger.error(f"Command {command.get('type')} ({request_id}) failed: {exc}")
                reply = {"type": "error", "reason": str(exc) or type(exc).__name__}
        reply["requestId"] = request_id
        try:
            await self._send_now(reply)
        except (OSError, WebSocketException) as exc:
            # Replies are never replayed; the orchestrator fails the waiter instead.
            self._logger.warning(f"Dropping reply for {request_id}: {exc}")


def _decode(raw: Any) -> Optional[Message]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        message = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None
    return message if isinstance(message, dict) else None


__all__ = [
    "AuthenticationError",
    "ConnectionState",
    "DeviceLink",
    "ExponentialBackoff",
    "LinkDropped",
    "ObservableState",
]
