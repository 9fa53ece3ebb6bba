"""
FastAPI server that exposes goal submission, session investigation, device
listing, pairing, and the device WebSocket.

Request bodies are validated through the dataclass contracts in
`devicepilot.orchestrator.data_types`; failures map to HTTP errors here.
The caller's identity comes from the `X-User-Id` header set by the upstream
dashboard.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import uvicorn
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request, WebSocket

from devicepilot.api.oai_client import ReasoningError, TranscriptionClient
from devicepilot.config import Settings, load_settings
from devicepilot.orchestrator.data_types import GoalRequest
from devicepilot.orchestrator.goals import (
    AnalystFactory,
    DeciderFactory,
    GoalService,
    NoActiveGoal,
    ReasoningNotConfigured,
    SessionNotFound,
)
from devicepilot.orchestrator.investigation import InvestigationError
from devicepilot.pairing.service import CredentialStore, InvalidPairingCode, PairingRateLimited, PairingService
from devicepilot.transport.gateway import DeviceGateway
from devicepilot.transport.sessions import AdmissionConflict, DeviceForbidden, DeviceNotFound, DeviceSessionManager
from devicepilot.utils.logger import StructuredLogger, configure_logging
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock
from devicepilot.voice.capture import Transcriber, VoiceCaptureManager

logger = StructuredLogger(__name__)


def _default_transcriber(settings: Settings) -> Optional[Transcriber]:
    if not settings.transcribe_api_key:
        logger.warning("No transcription API key configured; voice transcripts will be empty")
        return None
    return TranscriptionClient(
        api_key=settings.transcribe_api_key,
        base_url=settings.transcribe_base_url,
        model=settings.transcribe_model,
        timeout=settings.transcription_timeout,
    )


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def _claim_source(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def create_app(
    settings: Optional[Settings] = None,
    *,
    decider_factory: Optional[DeciderFactory] = None,
    analyst_factory: Optional[AnalystFactory] = None,
    transcriber: Optional[Transcriber] = None,
    credentials: Optional[CredentialStore] = None,
    clock: Clock = SYSTEM_CLOCK,
) -> FastAPI:
    """
    Build the application with its own registries; nothing lives at module scope.
    """
    settings = settings or load_settings()
    manager = DeviceSessionManager(clock=clock, command_timeout=settings.command_timeout)
    credentials = credentials or CredentialStore(clock=clock)
    pairing = PairingService(credentials, clock=clock)
    voice = VoiceCaptureManager(
        transcriber if transcriber is not None else _default_transcriber(settings),
        clock=clock,
    )
    goals = GoalService(
        manager,
        settings,
        decider_factory=decider_factory,
        analyst_factory=analyst_factory,
        clock=clock,
    )
    gateway = DeviceGateway(
        manager,
        credentials,
        voice,
        clock=clock,
        auth_timeout=settings.auth_timeout,
        heartbeat_interval=settings.heartbeat_interval,
        heartbeat_timeout=settings.heartbeat_timeout,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info_lines(
            "DevicePilot orchestrator starting:",
            [
                f"ws_url={settings.ws_url}",
                f"llm_provider={settings.llm_provider or '<per request>'}",
                f"max_steps={settings.max_steps}",
            ],
        )
        yield
        await goals.shutdown()
        await voice.shutdown()
        logger.info("DevicePilot orchestrator stopped")

    app = FastAPI(title="DevicePilot Orchestrator API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = manager
    app.state.credentials = credentials
    app.state.pairing = pairing
    app.state.voice = voice
    app.state.goals = goals
    app.state.gateway = gateway

    # ------------------------------------------------------------------ #
    # Goals
    # ------------------------------------------------------------------ #

    @app.post("/goals")
    async def submit_goal(
        payload: Dict[str, Any] = Body(...),
        user_id: str = Depends(current_user),
    ) -> Dict[str, Any]:
        """
        Start a goal on one of the caller's connected devices.
        """
        try:
            goal_request = GoalRequest.from_payload(payload)
        except (TypeError, ValueError) as exc:
            logger.debug(f"Invalid goal request: {exc}")
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        try:
            session = await goals.submit(user_id, goal_request)
        except DeviceNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except DeviceForbidden as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        except ReasoningNotConfigured as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except AdmissionConflict as exc:
            raise HTTPException(
                status_code=409,
                detail={
                    "error": "A goal is already running on this device",
                    "sessionId": exc.existing.session_id,
                    "goal": exc.existing.goal,
                },
            ) from exc

        return {
            "deviceId": goal_request.device_id,
            "goal": session.goal,
            "status": "started",
            "sessionId": session.session_id,
        }

    @app.post("/goals/stop")
    async def stop_goal(
        payload: Dict[str, Any] = Body(...),
        user_id: str = Depends(current_user),
    ) -> Dict[str, str]:
        device_id = payload.get("deviceId") if isinstance(payload, dict) else None
        if not isinstance(device_id, str) or not device_id.strip():
            raise HTTPException(status_code=400, detail="deviceId is required")
        try:
            goals.stop(user_id, device_id.strip())
        except (DeviceNotFound, NoActiveGoal) as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except DeviceForbidden as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        return {"status": "stopping"}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str, user_id: str = Depends(current_user)) -> Dict[str, Any]:
        session = goals.get_session(session_id, user_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session.to_payload()

    @app.post("/investigate/{session_id}")
    async def investigate_session(session_id: str, user_id: str = Depends(current_user)) -> Dict[str, Any]:
        """
        Turn a recorded session into up to five hints for the app it used most.
        """
        try:
            investigation = await goals.investigate(session_id, user_id)
        except SessionNotFound as exc:
            raise HTTPException(status_code=404, detail="Session not found") from exc
        except ReasoningNotConfigured as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except InvestigationError as exc:
            detail: Any = {"error": str(exc), "analysis": exc.analysis} if exc.analysis else str(exc)
            raise HTTPException(status_code=400, detail=detail) from exc
        except ReasoningError as exc:
            logger.warning(f"Investigation of {session_id} failed: {exc}")
            raise HTTPException(status_code=502, detail=f"Reasoning call failed: {exc}") from exc
        return investigation.to_payload()

    # ------------------------------------------------------------------ #
    # Devices / health
    # ------------------------------------------------------------------ #

    @app.get("/devices")
    async def list_devices(user_id: str = Depends(current_user)) -> Dict[str, Any]:
        devices = []
        for connection in manager.devices_for_user(user_id):
            entry = connection.to_payload()
            active = manager.active_for(connection)
            entry["activeSessionId"] = active.session_id if active is not None else None
            devices.append(entry)
        return {"devices": devices}

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        stats = manager.stats()
        return {"status": "ok", "connectedDevices": stats["connections"], **stats}

    # ------------------------------------------------------------------ #
    # Pairing
    # ------------------------------------------------------------------ #

    @app.post("/pairing/create")
    async def create_pairing_code(user_id: str = Depends(current_user)) -> Dict[str, str]:
        return pairing.create(user_id).to_payload()

    @app.get("/pairing/status")
    async def pairing_status(user_id: str = Depends(current_user)) -> Dict[str, bool]:
        return pairing.status(user_id)

    @app.post("/pairing/claim")
    async def claim_pairing_code(request: Request, payload: Dict[str, Any] = Body(...)) -> Dict[str, str]:
        code = payload.get("code") if isinstance(payload, dict) else None
        try:
            issued = pairing.claim(code if isinstance(code, str) else None, source=_claim_source(request))
        except PairingRateLimited as exc:
            raise HTTPException(status_code=429, detail=str(exc)) from exc
        except InvalidPairingCode as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"apiKey": issued.api_key, "wsUrl": settings.ws_url, "deviceId": issued.device_id}

    # ------------------------------------------------------------------ #
    # Device WebSocket
    # ------------------------------------------------------------------ #

    @app.websocket("/ws/device")
    async def device_socket(websocket: WebSocket) -> None:
        await gateway.serve(websocket)

    return app


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


__all__ = ["create_app", "current_user", "main"]
