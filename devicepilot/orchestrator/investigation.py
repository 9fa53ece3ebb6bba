"""
Post-mortem analysis of recorded sessions.

A session transcript goes to the reasoning service together with an analysis
prompt. The reply yields up to five imperative hints about the app the session
spent most of its steps in, kept per (user, package) in a bounded store.
"""

from __future__ import annotations

import json
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Protocol, Sequence, Tuple

from devicepilot.api.oai_client import ReasoningError, extract_json_object
from devicepilot.orchestrator.data_types import AgentSession, AgentStep, utcnow
from devicepilot.utils.logger import StructuredLogger

MAX_HINTS = 5
TRANSCRIPT_STEP_LIMIT = 30
TRANSCRIPT_HEAD_STEPS = 3
TRANSCRIPT_TAIL_STEPS = 20
UNKNOWN_PACKAGE = "unknown"

ANALYSIS_SYSTEM_PROMPT = """You are an Android automation post-mortem analyst. Analyze the session transcript and identify recurring failure patterns, wasted steps, and wrong paths.

Generate 3-5 SHORT, ACTIONABLE hints (max 30 words each) for future sessions with this app. Each hint must:
1. Describe a specific behavior of this app's UI
2. Tell the agent exactly what to do (or avoid) in that situation
3. Be imperative voice ("Tap X", "After Y, do Z", "Do NOT use...")

Return JSON: {"hints": ["hint1", "hint2", ...], "analysis": "2-3 sentence summary"}"""


class Analyst(Protocol):
    async def analyze(self, system_prompt: str, user_prompt: str) -> str:
        ...


class InvestigationError(ValueError):
    """The session cannot be analysed, or the analysis produced no hints."""

    def __init__(self, message: str, *, analysis: str = "") -> None:
        super().__init__(message)
        self.analysis = analysis


@dataclass(frozen=True)
class AppHint:
    hint_id: str
    user_id: str
    package: str
    hint: str
    source_session_id: str
    created_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.hint_id, "hint": self.hint}


@dataclass(frozen=True)
class Investigation:
    session_id: str
    package: str
    hints: Tuple[AppHint, ...]
    analysis: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "packageName": self.package,
            "hints": [hint.to_payload() for hint in self.hints],
            "analysis": self.analysis,
        }


def dominant_package(steps: Sequence[AgentStep]) -> str:
    """Most frequent package named by the steps' decisions; ties go to the first seen."""
    counts = Counter(
        step.decision.package for step in steps if step.decision is not None and step.decision.package
    )
    if not counts:
        return UNKNOWN_PACKAGE
    return counts.most_common(1)[0][0]


def transcript_steps(steps: Sequence[AgentStep]) -> List[AgentStep]:
    if len(steps) > TRANSCRIPT_STEP_LIMIT:
        return list(steps[:TRANSCRIPT_HEAD_STEPS]) + list(steps[-TRANSCRIPT_TAIL_STEPS:])
    return list(steps)


def format_transcript(steps: Sequence[AgentStep]) -> str:
    lines = []
    for step in transcript_steps(steps):
        action = json.dumps(step.decision.to_payload()) if step.decision is not None else "null"
        lines.append(
            f"Step {step.step_number}: Action={action} | Reason={step.reasoning or '-'} "
            f"| Result={step.result.message or '-'}"
        )
    return "\n".join(lines)


def build_analysis_prompt(session: AgentSession, package: str) -> str:
    return (
        f"APP: {package}\n"
        f"GOAL: {session.goal}\n"
        f"STATUS: {session.status.value} (used {session.steps_used} steps)\n"
        "\n"
        "TRANSCRIPT:\n"
        f"{format_transcript(session.steps)}"
    )


def parse_analysis(text: str) -> Tuple[List[str], str]:
    """
    Extract `(hints, analysis)` from the analyst's reply.

    Replies without a readable JSON object yield no hints and keep the first
    500 characters of the text as the analysis.
    """
    try:
        payload = extract_json_object(text)
    except ReasoningError:
        return [], (text or "")[:500]
    raw_hints = payload.get("hints")
    hints: List[str] = []
    if isinstance(raw_hints, list):
        hints = [hint.strip() for hint in raw_hints if isinstance(hint, str) and hint.strip()]
    analysis = payload.get("analysis")
    return hints[:MAX_HINTS], analysis if isinstance(analysis, str) else ""


class HintStore:
    """Newest `limit` hints per (user, package)."""

    def __init__(self, *, limit: int = MAX_HINTS) -> None:
        if limit <= 0:
            raise ValueError("limit must be a positive integer.")
        self._limit = limit
        self._hints: Dict[Tuple[str, str], List[AppHint]] = {}

    def add(self, user_id: str, package: str, hints: Sequence[str], source_session_id: str) -> List[AppHint]:
        created = [
            AppHint(
                hint_id=uuid.uuid4().hex,
                user_id=user_id,
                package=package,
                hint=hint,
                source_session_id=source_session_id,
            )
            for hint in hints
        ]
        key = (user_id, package)
        self._hints[key] = (self._hints.get(key, []) + created)[-self._limit:]
        return created

    def hints_for(self, user_id: str, package: str) -> List[AppHint]:
        return list(self._hints.get((user_id, package), ()))


class SessionInvestigator:
    """Runs one analysis and records the resulting hints."""

    def __init__(self, analyst: Analyst, hints: HintStore) -> None:
        self._analyst = analyst
        self._hints = hints
        self._logger = StructuredLogger(__name__)

    async def investigate(self, session: AgentSession) -> Investigation:
        """
        Raises InvestigationError when the session has no steps or the reply
        carries no hints, and ReasoningError when the analyst call fails.
        """
        if not session.steps:
            raise InvestigationError("Session has no steps")
        package = dominant_package(session.steps)
        reply = await self._analyst.analyze(ANALYSIS_SYSTEM_PROMPT, build_analysis_prompt(session, package))
        hints, analysis = parse_analysis(reply)
        if not hints:
            raise InvestigationError("Reasoning service did not return actionable hints", analysis=analysis)

        stored = self._hints.add(session.user_id, package, hints, session.session_id)
        self._logger.info_lines(
            "Session investigated:",
            [
                f"session={session.session_id}",
                f"package={package}",
                f"hints={len(stored)}",
            ],
        )
        return Investigation(session_id=session.session_id, package=package, hints=tuple(stored), analysis=analysis)


__all__ = [
    "ANALYSIS_SYSTEM_PROMPT",
    "Analyst",
    "AppHint",
    "HintStore",
    "Investigation",
    "InvestigationError",
    "SessionInvestigator",
    "build_analysis_prompt",
    "dominant_package",
    "format_transcript",
    "parse_analysis",
]
