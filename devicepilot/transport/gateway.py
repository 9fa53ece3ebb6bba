"""
Server side of the device WebSocket.

Per connection: an authentication handshake with a timeout, then three tasks
(reader, single writer draining the outbox, heartbeat watchdog). The reader
routes replies to the session manager and voice messages to the voice manager.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from devicepilot.pairing.service import CredentialStore
from devicepilot.transport.sessions import DeviceConnection, DeviceSessionManager
from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock
from devicepilot.voice.capture import VoiceCaptureManager

AUTH_FAILURE_CLOSE_CODE = 4001
HEARTBEAT_CLOSE_CODE = 1001

REPLY_TYPES = frozenset({"screen", "screenshot", "result", "error"})


class DeviceGateway:
    """Accepts device WebSockets and binds them to the session manager."""

    def __init__(
        self,
        manager: DeviceSessionManager,
        credentials: CredentialStore,
        voice: VoiceCaptureManager,
        *,
        clock: Clock = SYSTEM_CLOCK,
        auth_timeout: float = 10.0,
        heartbeat_interval: float = 20.0,
        heartbeat_timeout: float = 60.0,
    ) -> None:
        self._manager = manager
        self._credentials = credentials
        self._voice = voice
        self._clock = clock
        self._auth_timeout = auth_timeout
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_timeout = heartbeat_timeout
        self._background: Set["asyncio.Task[Any]"] = set()
        self._logger = StructuredLogger(__name__)

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        connection = await self._authenticate(websocket)
        if connection is None:
            return

        self._manager.register(connection)
        try:
            await websocket.send_json({"type": "auth_ok", "deviceId": connection.device_id})
        except (WebSocketDisconnect, RuntimeError):
            self._manager.unregister(connection)
            return
        reader = asyncio.create_task(self._reader(websocket, connection))
        writer = asyncio.create_task(self._writer(websocket, connection))
        watchdog = asyncio.create_task(self._watchdog(connection))
        try:
            done, pending = await asyncio.wait({reader, writer, watchdog}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if watchdog in done:
                await self._close(websocket, HEARTBEAT_CLOSE_CODE)
        finally:
            self.release(connection)

    def release(self, connection: DeviceConnection) -> None:
        """Drop a closed connection; voice capture survives if a newer connection owns the device."""
        current = self._manager.get_by_device_id(connection.device_id) if connection.device_id else None
        if current is None or current is connection:
            self._voice.cancel(connection.admission_key)
        else:
            self._logger.debug(f"Connection {connection.connection_id} superseded; keeping voice capture")
        self._manager.unregister(connection)

    # ------------------------------------------------------------------ #
    # Handshake
    # ------------------------------------------------------------------ #

    async def _authenticate(self, websocket: WebSocket) -> Optional[DeviceConnection]:
        try:
            raw = await asyncio.wait_for(websocket.receive_text(), timeout=self._auth_timeout)
        except asyncio.TimeoutError:
            await self._reject(websocket, "Authentication timeout")
            return None
        except WebSocketDisconnect:
            return None

        message = _decode(raw)
        if message is None or message.get("type") != "auth":
            await self._reject(websocket, "Expected auth message")
            return None

        record = self._credentials.authenticate(message.get("apiKey"))
        if record is None:
            await self._reject(websocket, "Invalid API key")
            return None

        device_info = message.get("deviceInfo") if isinstance(message.get("deviceInfo"), dict) else {}
        connection = DeviceConnection(device_id=record.device_id, user_id=record.user_id, device_info=device_info)
        self._logger.info(f"Device authenticated: device={record.device_id} user={record.user_id}")
        return connection

    async def _reject(self, websocket: WebSocket, reason: str) -> None:
        self._logger.warning(f"Device authentication failed: {reason}")
        try:
            await websocket.send_json({"type": "auth_error", "message": reason})
        except (WebSocketDisconnect, RuntimeError):
            return
        await self._close(websocket, AUTH_FAILURE_CLOSE_CODE)

    async def _close(self, websocket: WebSocket, code: int) -> None:
        try:
            await websocket.close(code=code)
        except RuntimeError:
            self._logger.debug("WebSocket already closed")

    # ------------------------------------------------------------------ #
    # Connection tasks
    # ------------------------------------------------------------------ #

    async def _reader(self, websocket: WebSocket, connection: DeviceConnection) -> None:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect as exc:
                self._logger.info(f"Device {connection.admission_key} disconnected (code={exc.code})")
                return
            connection.touch(self._clock.time())
            message = _decode(raw)
            if message is None:
                self._logger.warning(f"Ignoring malformed message from {connection.admission_key}")
                continue
            self.dispatch(connection, message)

    async def _writer(self, websocket: WebSocket, connection: DeviceConnection) -> None:
        while True:
            message = await connection.outbox.get()
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as exc:
                self._logger.info(f"Send to {connection.admission_key} failed: {exc}")
                return

    async def _watchdog(self, connection: DeviceConnection) -> None:
        while True:
            await self._clock.sleep(self._heartbeat_interval)
            silent_for = self._clock.time() - connection.last_seen
            if silent_for > self._heartbeat_timeout:
                self._logger.warning(
                    f"Device {connection.admission_key} silent for {silent_for:.0f}s; closing connection"
                )
                return

    # ------------------------------------------------------------------ #
    # Routing
    # ------------------------------------------------------------------ #

    def dispatch(self, connection: DeviceConnection, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        key = connection.admission_key

        def emit(event: Dict[str, Any]) -> None:
            self._manager.send_event(connection, event)

        if kind == "ping":
            connection.enqueue({"type": "pong"})
        elif kind == "pong":
            return
        elif kind in REPLY_TYPES:
            self._manager.resolve(connection, message)
        elif kind == "voice_start":
            self._voice.start(key, emit)
        elif kind == "voice_chunk":
            self._voice.append_chunk(key, message.get("data") or "")
        elif kind == "voice_send":
            self._spawn(self._voice.finalize(key))
        elif kind == "voice_cancel":
            self._voice.cancel(key)
        else:
            self._logger.debug(f"Ignoring {kind!r} message from {key}")

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _decode(raw: str) -> Optional[Dict[str, Any]]:
    try:
        message = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None
    return message if isinstance(message, dict) else None


__all__ = ["AUTH_FAILURE_CLOSE_CODE", "DeviceGateway"]
