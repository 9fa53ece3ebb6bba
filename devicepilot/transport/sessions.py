"""
Device session manager: connection registry, request correlation, and
per-device admission control.

All registries live on a `DeviceSessionManager` instance and are mutated only
from the event loop. Admission goes through a single `asyncio.Lock`; outbound
messages go through each connection's outbox, drained by one writer task.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from devicepilot.orchestrator.data_types import AgentSession
from devicepilot.shared.actuator import Command, DeviceActuator
from devicepilot.shared.data_types import ActionResult
from devicepilot.skills.engine import LikeAttemptMemory
from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock

DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_HELD_EVENT_LIMIT = 50

Message = Dict[str, Any]


class TransportError(RuntimeError):
    """Base class for device transport failures."""


class CommandTimeout(TransportError):
    """A device did not answer one command in time. Fails only that waiter."""

    def __init__(self, command_type: str, request_id: str, timeout: float) -> None:
        super().__init__(f"Device did not answer {command_type!r} ({request_id}) within {timeout:g}s")
        self.command_type = command_type
        self.request_id = request_id
        self.timeout = timeout


class DeviceDisconnected(TransportError):
    """The device connection closed while a command was pending or being sent."""


class AdmissionConflict(RuntimeError):
    """A goal is already running on the device."""

    def __init__(self, existing: AgentSession) -> None:
        super().__init__(f"Device {existing.device_id} is already running session {existing.session_id}")
        self.existing = existing


class DeviceNotFound(LookupError):
    """No connected device matches the reference."""


class DeviceForbidden(PermissionError):
    """The caller does not own the device."""


@dataclass
class DeviceConnection:
    """Transport-side state for one WebSocket connection."""

    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    device_id: Optional[str] = None
    user_id: Optional[str] = None
    device_info: Dict[str, Any] = field(default_factory=dict)
    authenticated: bool = False
    connected_at: float = 0.0
    last_seen: float = 0.0
    closed: bool = False
    pending: Dict[str, "asyncio.Future[Message]"] = field(default_factory=dict)
    outbox: "asyncio.Queue[Message]" = field(default_factory=asyncio.Queue)
    like_memory: LikeAttemptMemory = field(default_factory=LikeAttemptMemory)

    @property
    def admission_key(self) -> str:
        return self.device_id or self.connection_id

    def touch(self, now: float) -> None:
        self.last_seen = now

    def enqueue(self, message: Message) -> None:
        if self.closed:
            raise DeviceDisconnected(f"Connection {self.connection_id} is closed")
        self.outbox.put_nowait(message)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "connectionId": self.connection_id,
            "deviceId": self.device_id,
            "deviceInfo": self.device_info,
            "connectedAt": self.connected_at,
            "lastSeen": self.last_seen,
        }


@dataclass
class ActiveGoal:
    session: AgentSession
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class DeviceSessionManager:
    """
    Tracks authenticated device connections and the goals running on them.
    """

    def __init__(
        self,
        *,
        clock: Clock = SYSTEM_CLOCK,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        held_event_limit: int = DEFAULT_HELD_EVENT_LIMIT,
    ) -> None:
        self._clock = clock
        self._command_timeout = command_timeout
        self._held_event_limit = held_event_limit
        self._connections: Dict[str, DeviceConnection] = {}
        self._by_device: Dict[str, str] = {}
        self._active: Dict[str, ActiveGoal] = {}
        self._held_events: Dict[str, Deque[Message]] = {}
        self._admission_lock = asyncio.Lock()
        self._logger = StructuredLogger(__name__)

    @property
    def command_timeout(self) -> float:
        return self._command_timeout

    # ------------------------------------------------------------------ #
    # Registry
    # ------------------------------------------------------------------ #

    def register(self, connection: DeviceConnection) -> None:
        now = self._clock.time()
        connection.authenticated = True
        connection.connected_at = connection.connected_at or now
        connection.touch(now)
        self._connections[connection.connection_id] = connection
        if connection.device_id:
            previous_id = self._by_device.get(connection.device_id)
            if previous_id and previous_id != connection.connection_id:
                previous = self._connections.get(previous_id)
                if previous is not None:
                    self._logger.warning(
                        f"Device {connection.device_id} reconnected; dropping stale connection {previous_id}"
                    )
                    self.unregister(previous)
            self._by_device[connection.device_id] = connection.connection_id
            self._flush_held_events(connection)
        self._logger.info(
            f"Device registered: connection={connection.connection_id} device={connection.device_id} "
            f"user={connection.user_id}"
        )

    def unregister(self, connection: DeviceConnection) -> None:
        if connection.closed and connection.connection_id not in self._connections:
            return
        connection.closed = True
        self._connections.pop(connection.connection_id, None)
        if connection.device_id and self._by_device.get(connection.device_id) == connection.connection_id:
            del self._by_device[connection.device_id]

        failed = 0
        for request_id, future in list(connection.pending.items()):
            if not future.done():
                future.set_exception(DeviceDisconnected(f"Device disconnected before answering {request_id}"))
                failed += 1
        connection.pending.clear()

        held = 0
        while not connection.outbox.empty():
            message = connection.outbox.get_nowait()
            # Commands are never replayed; informational events wait for the device.
            if "requestId" not in message and connection.device_id:
                self._hold(connection.device_id, message)
                held += 1
        self._logger.info(
            f"Device unregistered: connection={connection.connection_id} device={connection.device_id} "
            f"failed_waiters={failed} held_events={held}"
        )

    def get_by_connection(self, connection_id: str) -> Optional[DeviceConnection]:
        return self._connections.get(connection_id)

    def get_by_device_id(self, device_id: str) -> Optional[DeviceConnection]:
        connection_id = self._by_device.get(device_id)
        return self._connections.get(connection_id) if connection_id else None

    def lookup(self, ref: str) -> Optional[DeviceConnection]:
        """Resolve a connection id first, then a stable device id."""
        return self.get_by_connection(ref) or self.get_by_device_id(ref)

    def require(self, ref: str, user_id: str) -> DeviceConnection:
        connection = self.lookup(ref)
        if connection is None:
            raise DeviceNotFound(f"Device {ref} is not connected")
        if connection.user_id != user_id:
            raise DeviceForbidden(f"Device {ref} does not belong to this user")
        return connection

    def devices_for_user(self, user_id: str) -> List[DeviceConnection]:
        return [conn for conn in self._connections.values() if conn.user_id == user_id]

    def connections(self) -> List[DeviceConnection]:
        return list(self._connections.values())

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self._connections),
            "devices": len(self._by_device),
            "activeGoals": sum(1 for goal in self._active.values() if not goal.session.is_terminal),
            "heldEvents": sum(len(queue) for queue in self._held_events.values()),
        }

    # ------------------------------------------------------------------ #
    # Informational events
    # ------------------------------------------------------------------ #

    def _hold(self, device_id: str, message: Message) -> None:
        queue = self._held_events.setdefault(device_id, deque(maxlen=self._held_event_limit))
        queue.append(message)

    def _flush_held_events(self, connection: DeviceConnection) -> None:
        if connection.device_id is None:
            return
        queue = self._held_events.pop(connection.device_id, None)
        if not queue:
            return
        self._logger.info(f"Re-queuing {len(queue)} held events for device {connection.device_id}")
        for message in queue:
            connection.enqueue(message)

    def send_event(self, connection: DeviceConnection, message: Message) -> None:
        """Queue an informational event; held for the next registration if the link is down."""
        if connection.closed:
            if connection.device_id:
                live = self.get_by_device_id(connection.device_id)
                if live is not None:
                    live.enqueue(message)
                    return
                self._hold(connection.device_id, message)
            return
        connection.enqueue(message)

    def held_events(self, device_id: str) -> List[Message]:
        return list(self._held_events.get(device_id, ()))

    # ------------------------------------------------------------------ #
    # Request correlation
    # ------------------------------------------------------------------ #

    async def send_command(
        self,
        connection: DeviceConnection,
        command_type: str,
        payload: Optional[Message] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Message:
        """
        Send one command and await the reply with the same requestId.

        Raises CommandTimeout (only this waiter fails) or DeviceDisconnected.
        """
        if connection.closed:
            raise DeviceDisconnected(f"Connection {connection.connection_id} is closed")
        limit = timeout if timeout is not None else self._command_timeout
        request_id = uuid.uuid4().hex
        future: "asyncio.Future[Message]" = asyncio.get_running_loop().create_future()
        connection.pending[request_id] = future
        try:
            connection.enqueue({"type": command_type, "requestId": request_id, **(payload or {})})
            return await asyncio.wait_for(future, timeout=limit)
        except asyncio.TimeoutError as exc:
            raise CommandTimeout(command_type, request_id, limit) from exc
        finally:
            connection.pending.pop(request_id, None)

    def resolve(self, connection: DeviceConnection, message: Message) -> bool:
        """Settle the waiter matching the message's requestId. Unmatched replies are dropped."""
        request_id = message.get("requestId")
        future = connection.pending.get(request_id) if request_id else None
        if future is None or future.done():
            self._logger.debug(
                f"Discarding unmatched {message.get('type')!r} reply (requestId={request_id}) "
                f"on connection {connection.connection_id}"
            )
            return False
        future.set_result(message)
        return True

    # ------------------------------------------------------------------ #
    # Admission control
    # ------------------------------------------------------------------ #

    async def admit(self, connection: DeviceConnection, session: AgentSession) -> ActiveGoal:
        async with self._admission_lock:
            key = connection.admission_key
            existing = self._active.get(key)
            if existing is not None and not existing.session.is_terminal:
                raise AdmissionConflict(existing.session)
            active = ActiveGoal(session=session)
            self._active[key] = active
            self._logger.info(f"Admitted session {session.session_id} on {key}")
            return active

    def release(self, key: str, session_id: str) -> bool:
        active = self._active.get(key)
        if active is None or active.session.session_id != session_id:
            return False
        del self._active[key]
        self._logger.info(f"Released admission for {key} (session {session_id})")
        return True

    def active_for(self, connection: DeviceConnection) -> Optional[AgentSession]:
        active = self._active.get(connection.admission_key)
        if active is None or active.session.is_terminal:
            return None
        return active.session

    def cancel(self, connection: DeviceConnection) -> Optional[AgentSession]:
        active = self._active.get(connection.admission_key)
        if active is None or active.session.is_terminal:
            return None
        active.cancel_event.set()
        self._logger.info(f"Cancellation requested for session {active.session.session_id}")
        return active.session


class RemoteDevice(DeviceActuator):
    """`DeviceActuator` that relays commands over a device connection."""

    def __init__(
        self,
        manager: DeviceSessionManager,
        connection: DeviceConnection,
        *,
        command_timeout: Optional[float] = None,
    ) -> None:
        self._manager = manager
        self._connection = connection
        self._timeout = command_timeout

    @property
    def connection(self) -> DeviceConnection:
        return self._connection

    async def get_screen(self) -> Any:
        reply = await self._manager.send_command(self._connection, "get_screen", timeout=self._timeout)
        for key in ("elements", "xml", "root"):
            if reply.get(key) is not None:
                return {key: reply[key]}
        return None

    async def execute(self, command: Command) -> ActionResult:
        reply = await self._manager.send_command(
            self._connection, "execute", {"action": command}, timeout=self._timeout
        )
        success = bool(reply.get("success"))
        message = reply.get("message") or reply.get("error") or ("ok" if success else "failed")
        data = reply.get("data") if isinstance(reply.get("data"), dict) else None
        return ActionResult(success=success, message=str(message), data=data)

    async def get_screenshot(self) -> Optional[str]:
        reply = await self._manager.send_command(self._connection, "get_screenshot", timeout=self._timeout)
        if reply.get("type") == "error":
            return None
        image = reply.get("image")
        return image if isinstance(image, str) and image else None


__all__ = [
    "ActiveGoal",
    "AdmissionConflict",
    "CommandTimeout",
    "DeviceConnection",
    "DeviceDisconnected",
    "DeviceForbidden",
    "DeviceNotFound",
    "DeviceSessionManager",
    "RemoteDevice",
    "TransportError",
]
