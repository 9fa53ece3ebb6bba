"""Data models for agent sessions, steps, and goal requests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from devicepilot.orchestrator.validation import (
    validate_goal,
    validate_identifier,
    validate_max_steps,
    validate_positive_int,
    validate_screen_hash,
    validate_step_number,
    validate_timeout,
)
from devicepilot.shared.data_types import ActionDecision, ActionResult

DEFAULT_MAX_STEPS = 30
DEFAULT_STUCK_THRESHOLD = 3
DEFAULT_CONTEXT_STEPS = 6
DEFAULT_MAX_CONSECUTIVE_ERRORS = 3
DEFAULT_COMMAND_TIMEOUT = 30.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStateError(RuntimeError):
    """Raised on an illegal AgentSession status transition."""


class SessionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED})

_ALLOWED_TRANSITIONS = {
    SessionStatus.QUEUED: {SessionStatus.RUNNING, *TERMINAL_STATUSES},
    SessionStatus.RUNNING: set(TERMINAL_STATUSES),
}


@dataclass(frozen=True)
class AgentStep:
    """One observe -> decide -> act iteration, as recorded in the session."""

    step_number: int
    screen_hash: str
    decision: Optional[ActionDecision]
    result: ActionResult
    reasoning: Optional[str] = None
    stuck: bool = False
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        validate_step_number(self.step_number)
        validate_screen_hash(self.screen_hash)
        if not isinstance(self.result, ActionResult):
            raise TypeError("result must be an ActionResult.")

    @property
    def action_name(self) -> str:
        return self.decision.name if self.decision is not None else "none"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "step": self.step_number,
            "screenHash": self.screen_hash,
            "action": self.decision.to_payload() if self.decision is not None else None,
            "reasoning": self.reasoning,
            "result": self.result.message,
            "success": self.result.success,
            "stuck": self.stuck,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class AgentSession:
    """
    A single goal execution on one device.

    Status moves queued -> running -> {completed, failed, cancelled}; terminal
    statuses never change again.
    """

    session_id: str
    device_id: str
    user_id: str
    goal: str
    max_steps: int = DEFAULT_MAX_STEPS
    status: SessionStatus = SessionStatus.QUEUED
    steps: List[AgentStep] = field(default_factory=list)
    reason: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        validate_identifier("session_id", self.session_id)
        validate_identifier("device_id", self.device_id)
        validate_identifier("user_id", self.user_id)
        validate_goal(self.goal)
        validate_max_steps(self.max_steps)

    @property
    def steps_used(self) -> int:
        return len(self.steps)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: SessionStatus, reason: Optional[str] = None) -> None:
        if status is self.status:
            return
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise SessionStateError(
                f"Session {self.session_id}: illegal transition {self.status.value} -> {status.value}"
            )
        self.status = status
        if status.is_terminal:
            self.reason = reason or status.value
            self.completed_at = utcnow()

    def record_step(self, step: AgentStep) -> None:
        if self.is_terminal:
            raise SessionStateError(f"Session {self.session_id} is {self.status.value}; cannot record steps.")
        self.steps.append(step)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "deviceId": self.device_id,
            "goal": self.goal,
            "status": self.status.value,
            "stepsUsed": self.steps_used,
            "maxSteps": self.max_steps,
            "reason": self.reason,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [step.to_payload() for step in self.steps],
        }


@dataclass(frozen=True)
class LoopConfig:
    """Agent loop budgets and timeouts."""

    max_steps: int = DEFAULT_MAX_STEPS
    stuck_threshold: int = DEFAULT_STUCK_THRESHOLD
    context_steps: int = DEFAULT_CONTEXT_STEPS
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT

    def __post_init__(self) -> None:
        validate_max_steps(self.max_steps)
        validate_positive_int("stuck_threshold", self.stuck_threshold)
        validate_positive_int("context_steps", self.context_steps)
        validate_positive_int("max_consecutive_errors", self.max_consecutive_errors)
        validate_timeout("command_timeout", self.command_timeout)


@dataclass
class GoalRequest:
    """Incoming goal submission (HTTP body of POST /goals)."""

    device_id: str
    goal: str
    llm_provider: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_model: Optional[str] = None
    max_steps: Optional[int] = None

    def __post_init__(self) -> None:
        validate_identifier("deviceId", self.device_id)
        validate_goal(self.goal)
        self.goal = self.goal.strip()
        if self.max_steps is not None:
            validate_max_steps(self.max_steps)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GoalRequest":
        if not isinstance(payload, dict):
            raise TypeError("goal request must be a JSON object (dict).")
        return cls(
            device_id=payload.get("deviceId"),  # type: ignore[arg-type]
            goal=payload.get("goal"),  # type: ignore[arg-type]
            llm_provider=payload.get("llmProvider"),
            llm_api_key=payload.get("llmApiKey"),
            llm_model=payload.get("llmModel"),
            max_steps=payload.get("maxSteps"),
        )
