"""
Goal submission and cancellation.

`GoalService` resolves the device and the reasoning configuration, admits the
session through the session manager, and runs one `AgentLoop` task per goal.
Recent sessions stay queryable in a bounded in-memory map and can be
investigated for per-app hints.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from devicepilot.api.oai_client import LLMConfig, ReasoningClient
from devicepilot.config import Settings
from devicepilot.orchestrator.data_types import AgentSession, GoalRequest, LoopConfig, SessionStatus
from devicepilot.orchestrator.investigation import Analyst, AppHint, HintStore, Investigation, SessionInvestigator
from devicepilot.orchestrator.loop import AgentLoop, Decider
from devicepilot.perception.sanitizer import ScreenSanitizer
from devicepilot.skills.engine import SkillEngine
from devicepilot.transport.sessions import DeviceConnection, DeviceSessionManager, RemoteDevice
from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock

DEFAULT_HISTORY_LIMIT = 200

DeciderFactory = Callable[[LLMConfig], Decider]
AnalystFactory = Callable[[LLMConfig], Analyst]


class ReasoningNotConfigured(ValueError):
    """Neither the request nor the server provides a usable reasoning configuration."""


class NoActiveGoal(LookupError):
    """Stop was requested for a device with nothing running."""


class SessionNotFound(LookupError):
    """No recorded session with that id belongs to the caller."""


class GoalService:
    """
    Accepts goals for connected devices and tracks their sessions.
    """

    def __init__(
        self,
        manager: DeviceSessionManager,
        settings: Settings,
        *,
        decider_factory: Optional[DeciderFactory] = None,
        analyst_factory: Optional[AnalystFactory] = None,
        clock: Clock = SYSTEM_CLOCK,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._manager = manager
        self._settings = settings
        self._decider_factory = decider_factory or self._default_decider
        self._analyst_factory = analyst_factory or self._default_analyst
        self._clock = clock
        self._history_limit = history_limit
        self._sessions: "OrderedDict[str, AgentSession]" = OrderedDict()
        self._tasks: Dict[str, "asyncio.Task[AgentSession]"] = {}
        self._hints = HintStore()
        self._logger = StructuredLogger(__name__)

    def _default_decider(self, config: LLMConfig) -> Decider:
        return ReasoningClient(config, timeout=self._settings.reasoning_timeout)

    def _default_analyst(self, config: LLMConfig) -> Analyst:
        return ReasoningClient(config, timeout=self._settings.reasoning_timeout)

    # ------------------------------------------------------------------ #
    # Reasoning configuration
    # ------------------------------------------------------------------ #

    def resolve_llm_config(self, request: GoalRequest) -> LLMConfig:
        """Request override first, then server settings."""
        if request.llm_provider:
            provider = request.llm_provider.strip().lower()
            api_key = request.llm_api_key
            if not api_key and provider == self._settings.llm_provider:
                api_key = self._settings.llm_api_key
            try:
                return LLMConfig(
                    provider=provider,
                    api_key=api_key or "",
                    model=request.llm_model,
                    base_url=self._settings.llm_base_url if provider == self._settings.llm_provider else None,
                )
            except ValueError as exc:
                raise ReasoningNotConfigured(str(exc)) from exc

        config = self._settings.default_llm_config()
        if config is None:
            raise ReasoningNotConfigured(
                "No reasoning service configured: pass llmProvider/llmApiKey or set LLM_PROVIDER and LLM_API_KEY."
            )
        if request.llm_model:
            return LLMConfig(
                provider=config.provider,
                api_key=config.api_key,
                model=request.llm_model,
                base_url=config.base_url,
            )
        return config

    # ------------------------------------------------------------------ #
    # Submission / cancellation
    # ------------------------------------------------------------------ #

    async def submit(self, user_id: str, request: GoalRequest) -> AgentSession:
        """
        Start a goal. Raises DeviceNotFound, DeviceForbidden,
        ReasoningNotConfigured, or AdmissionConflict.
        """
        connection = self._manager.require(request.device_id, user_id)
        llm_config = self.resolve_llm_config(request)

        session = AgentSession(
            session_id=uuid.uuid4().hex,
            device_id=connection.admission_key,
            user_id=user_id,
            goal=request.goal,
            max_steps=request.max_steps or self._settings.max_steps,
        )
        active = await self._manager.admit(connection, session)
        loop = self._build_loop(connection, session, llm_config, active.cancel_event)
        self._remember(session)

        task = asyncio.create_task(self._run(loop, connection.admission_key))
        self._tasks[session.session_id] = task
        self._logger.info_lines(
            "Goal accepted:",
            [
                f"session={session.session_id}",
                f"device={session.device_id}",
                f"llm={llm_config.redacted()}",
                f"max_steps={session.max_steps}",
            ],
        )
        return session

    def _build_loop(
        self,
        connection: DeviceConnection,
        session: AgentSession,
        llm_config: LLMConfig,
        cancel_event: asyncio.Event,
    ) -> AgentLoop:
        settings = self._settings
        device = RemoteDevice(self._manager, connection, command_timeout=settings.command_timeout)
        sanitizer = ScreenSanitizer(max_elements=settings.max_elements, clock=self._clock)
        skills = SkillEngine(device, sanitizer, clock=self._clock, like_memory=connection.like_memory)
        config = LoopConfig(
            max_steps=session.max_steps,
            stuck_threshold=settings.stuck_threshold,
            context_steps=settings.context_steps,
            command_timeout=settings.command_timeout,
        )
        return AgentLoop(
            session,
            device,
            self._decider_factory(llm_config),
            sanitizer=sanitizer,
            skills=skills,
            config=config,
            clock=self._clock,
            emit=lambda message: self._manager.send_event(connection, message),
            cancel_event=cancel_event,
        )

    async def _run(self, loop: AgentLoop, admission_key: str) -> AgentSession:
        session = loop.session
        try:
            return await loop.run()
        except Exception as exc:
            self._logger.exception(f"Agent loop for session {session.session_id} crashed")
            if not session.is_terminal:
                session.transition(SessionStatus.FAILED, f"Internal error: {exc}")
            return session
        finally:
            self._manager.release(admission_key, session.session_id)
            self._tasks.pop(session.session_id, None)

    def stop(self, user_id: str, device_ref: str) -> AgentSession:
        connection = self._manager.require(device_ref, user_id)
        session = self._manager.cancel(connection)
        if session is None:
            raise NoActiveGoal(f"No goal is running on device {device_ref}")
        return session

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def _remember(self, session: AgentSession) -> None:
        self._sessions[session.session_id] = session
        while len(self._sessions) > self._history_limit:
            self._sessions.popitem(last=False)

    def get_session(self, session_id: str, user_id: str) -> Optional[AgentSession]:
        session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id:
            return None
        return session

    # ------------------------------------------------------------------ #
    # Investigation
    # ------------------------------------------------------------------ #

    async def investigate(self, session_id: str, user_id: str) -> Investigation:
        """
        Analyse a recorded session with the server reasoning configuration.
        Raises SessionNotFound, ReasoningNotConfigured, InvestigationError, or
        ReasoningError.
        """
        session = self.get_session(session_id, user_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        config = self._settings.default_llm_config()
        if config is None:
            raise ReasoningNotConfigured("No reasoning service configured: set LLM_PROVIDER and LLM_API_KEY.")
        investigator = SessionInvestigator(self._analyst_factory(config), self._hints)
        return await investigator.investigate(session)

    def hints_for(self, user_id: str, package: str) -> List[AppHint]:
        return self._hints.hints_for(user_id, package)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "AnalystFactory",
    "DeciderFactory",
    "GoalService",
    "NoActiveGoal",
    "ReasoningNotConfigured",
    "SessionNotFound",
]
