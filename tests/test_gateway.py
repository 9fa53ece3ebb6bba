from __future__ import annotations

import pytest

from devicepilot.pairing.service import CredentialStore
from devicepilot.transport.gateway import DeviceGateway
from devicepilot.transport.sessions import DeviceConnection, DeviceSessionManager
from devicepilot.voice.capture import VoiceCaptureManager
from doubles import FakeTranscriber, ManualClock


@pytest.fixture
def manager(clock) -> DeviceSessionManager:
    return DeviceSessionManager(clock=clock)


@pytest.fixture
def voice() -> VoiceCaptureManager:
    return VoiceCaptureManager(FakeTranscriber("turn on wifi"), clock=ManualClock())


@pytest.fixture
def gateway(manager, voice, clock) -> DeviceGateway:
    return DeviceGateway(manager, CredentialStore(clock=clock), voice, clock=clock)


def connect(manager: DeviceSessionManager) -> DeviceConnection:
    connection = DeviceConnection(device_id="dev-1", user_id="user-1")
    manager.register(connection)
    return connection


async def test_stale_connection_teardown_keeps_voice_capture_of_reconnected_device(gateway, manager, voice):
    stale = connect(manager)
    fresh = connect(manager)
    gateway.dispatch(fresh, {"type": "voice_start"})

    gateway.release(stale)

    assert voice.active("dev-1") is not None
    assert manager.get_by_device_id("dev-1") is fresh

    gateway.release(fresh)
    assert voice.active("dev-1") is None
    assert manager.get_by_device_id("dev-1") is None


async def test_releasing_live_connection_cancels_its_voice_capture(gateway, manager, voice):
    connection = connect(manager)
    gateway.dispatch(connection, {"type": "voice_start"})

    gateway.release(connection)

    assert voice.active("dev-1") is None
    assert connection.closed
