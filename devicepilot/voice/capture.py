"""
Voice capture sessions: buffer streamed PCM audio per device and produce
periodic partial transcripts plus one final transcript on demand.

Audio arrives as base64 chunks of 16 kHz mono 16-bit PCM. Before
transcription the buffer is wrapped in a WAV container with the `wave` module.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import wave
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from devicepilot.api.oai_client import TranscriptionError
from devicepilot.transport.sessions import TransportError
from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock

SAMPLE_RATE = 16_000
CHANNELS = 1
SAMPLE_WIDTH_BYTES = 2
PARTIAL_INTERVAL = 2.0
# 100 ms of 16 kHz mono 16-bit audio.
MIN_AUDIO_BYTES = 3_200

EventSink = Callable[[Dict[str, Any]], None]


class Transcriber(Protocol):
    async def transcribe(self, wav_bytes: bytes) -> str:
        ...


def pcm_to_wav(
    pcm: bytes,
    *,
    sample_rate: int = SAMPLE_RATE,
    channels: int = CHANNELS,
    sample_width: int = SAMPLE_WIDTH_BYTES,
) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(sample_width)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buffer.getvalue()


@dataclass
class VoiceSession:
    """Audio buffer and partial-transcript bookkeeping for one device."""

    device_key: str
    emit: EventSink
    chunks: List[bytes] = field(default_factory=list)
    total_bytes: int = 0
    last_partial_offset: int = 0
    partials_sent: int = 0
    timer: Optional["asyncio.Task[None]"] = None
    closed: bool = False

    @property
    def audio(self) -> bytes:
        return b"".join(self.chunks)

    def append(self, data: bytes) -> None:
        self.chunks.append(data)
        self.total_bytes += len(data)

    def stop_timer(self) -> None:
        if self.timer is not None and not self.timer.done():
            self.timer.cancel()
        self.timer = None


class VoiceCaptureManager:
    """
    One `VoiceSession` per device; starting a new one cancels the previous.
    """

    def __init__(
        self,
        transcriber: Optional[Transcriber],
        *,
        clock: Clock = SYSTEM_CLOCK,
        partial_interval: float = PARTIAL_INTERVAL,
        min_audio_bytes: int = MIN_AUDIO_BYTES,
    ) -> None:
        self._transcriber = transcriber
        self._clock = clock
        self._partial_interval = partial_interval
        self._min_audio_bytes = min_audio_bytes
        self._sessions: Dict[str, VoiceSession] = {}
        self._logger = StructuredLogger(__name__)

    def active(self, device_key: str) -> Optional[VoiceSession]:
        return self._sessions.get(device_key)

    def start(self, device_key: str, emit: EventSink) -> VoiceSession:
        self.cancel(device_key)
        session = VoiceSession(device_key=device_key, emit=emit)
        self._sessions[device_key] = session
        session.timer = asyncio.create_task(self._partial_timer(session))
        self._logger.info(f"Voice session started for {device_key}")
        return session

    def append_chunk(self, device_key: str, data_b64: str) -> int:
        session = self._sessions.get(device_key)
        if session is None:
            self._logger.warning(f"Voice chunk for unknown session: {device_key}")
            return 0
        try:
            data = base64.b64decode(data_b64 or "", validate=True)
        except (binascii.Error, ValueError) as exc:
            self._logger.warning(f"Discarding undecodable voice chunk for {device_key}: {exc}")
            return 0
        session.append(data)
        return len(data)

    async def _partial_timer(self, session: VoiceSession) -> None:
        while not session.closed:
            await self._clock.sleep(self._partial_interval)
            await self.emit_partial_if_ready(session)

    async def emit_partial_if_ready(self, session: VoiceSession) -> bool:
        """
        One timer tick: transcribe the whole buffer when it meets the minimum
        and grew since the last partial.
        """
        if session.closed or self._transcriber is None:
            return False
        if session.total_bytes <= session.last_partial_offset:
            return False
        if session.total_bytes < self._min_audio_bytes:
            return False

        offset = session.total_bytes
        try:
            text = await self._transcriber.transcribe(pcm_to_wav(session.audio))
        except TranscriptionError as exc:
            self._logger.error(f"Partial transcription failed for {session.device_key}: {exc}")
            return False
        session.last_partial_offset = offset
        if not text or session.closed:
            return False
        session.partials_sent += 1
        self._send(session, {"type": "transcript_partial", "text": text})
        return True

    async def finalize(self, device_key: str) -> Optional[str]:
        """
        Stop the timer, transcribe the full buffer, emit `transcript_final`
        (possibly empty) and discard the session. None for unknown sessions.
        """
        session = self._sessions.pop(device_key, None)
        if session is None:
            self._logger.warning(f"Voice send for unknown session: {device_key}")
            return None
        session.closed = True
        session.stop_timer()

        transcript = ""
        if session.total_bytes >= self._min_audio_bytes and self._transcriber is not None:
            try:
                transcript = await self._transcriber.transcribe(pcm_to_wav(session.audio))
            except TranscriptionError as exc:
                self._logger.error(f"Final transcription failed for {device_key}: {exc}")
        elif self._transcriber is None:
            self._logger.warning("No transcription service configured; sending empty transcript")

        self._send(session, {"type": "transcript_final", "text": transcript})
        self._logger.info(
            f"Voice session finalized for {device_key}: {session.total_bytes} bytes, "
            f"{session.partials_sent} partials, {len(transcript)} chars"
        )
        return transcript

    def cancel(self, device_key: str) -> bool:
        session = self._sessions.pop(device_key, None)
        if session is None:
            return False
        session.closed = True
        session.stop_timer()
        self._logger.info(f"Voice session cancelled for {device_key}")
        return True

    def _send(self, session: VoiceSession, message: Dict[str, Any]) -> None:
        try:
            session.emit(message)
        except TransportError as exc:
            self._logger.warning(f"Could not deliver {message['type']} to {session.device_key}: {exc}")

    async def shutdown(self) -> None:
        for key in list(self._sessions):
            self.cancel(key)


__all__ = [
    "MIN_AUDIO_BYTES",
    "PARTIAL_INTERVAL",
    "Transcriber",
    "VoiceCaptureManager",
    "VoiceSession",
    "pcm_to_wav",
]
