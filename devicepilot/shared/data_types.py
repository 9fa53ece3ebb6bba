"""Shared data models used across perception, skills, and the agent loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class UnknownActionError(ValueError):
    """Raised when a decision names an action or skill outside the closed vocabulary."""

    def __init__(self, name: Any) -> None:
        super().__init__(f"Unknown action or skill: {name!r}")
        self.name = name


class ElementAction(str, Enum):
    """Primary interaction inferred for a UI element."""

    TAP = "tap"
    READ = "read"
    TYPE = "type"


class ActionKind(str, Enum):
    """Primitive actions understood by the device actuator."""

    TAP = "tap"
    LONG_PRESS = "long_press"
    TYPE = "type"
    ENTER = "enter"
    SWIPE = "swipe"
    SCROLL = "scroll"
    LAUNCH = "launch"
    BACK = "back"
    HOME = "home"
    RECENTS = "recents"
    WAIT = "wait"
    DONE = "done"
    # Internal primitives: issued by skills, never chosen by the reasoning service.
    GLOBAL_ACTION = "global_action"
    SHELL = "shell"


class SkillName(str, Enum):
    """Composite routines implemented by the skill engine."""

    READ_SCREEN = "read_screen"
    SUBMIT_MESSAGE = "submit_message"
    COPY_VISIBLE_TEXT = "copy_visible_text"
    WAIT_FOR_CONTENT = "wait_for_content"
    FIND_AND_TAP = "find_and_tap"
    COMPOSE_EMAIL = "compose_email"
    LIKE_NTH_COMMENT = "like_nth_comment"
    VERIFY_NTH_COMMENT_LIKE = "verify_nth_comment_like"


INTERNAL_ACTIONS = frozenset({ActionKind.GLOBAL_ACTION, ActionKind.SHELL})
REASONING_ACTIONS = tuple(kind for kind in ActionKind if kind not in INTERNAL_ACTIONS)

DecisionKind = Union[ActionKind, SkillName]


def parse_decision_kind(name: Any, *, allow_internal: bool = False) -> DecisionKind:
    """Map a raw action/skill name onto the closed vocabulary."""
    if isinstance(name, (ActionKind, SkillName)):
        kind: DecisionKind = name
    else:
        normalized = str(name or "").strip().lower()
        try:
            kind = ActionKind(normalized)
        except ValueError:
            try:
                kind = SkillName(normalized)
            except ValueError as exc:
                raise UnknownActionError(name) from exc
    if not allow_internal and kind in INTERNAL_ACTIONS:
        raise UnknownActionError(name)
    return kind


@dataclass(frozen=True)
class UIElement:
    """One interactive or readable item extracted from a screen snapshot."""

    id: str = ""
    text: str = ""
    hint: str = ""
    class_name: str = ""
    center: Tuple[int, int] = (0, 0)
    size: Tuple[int, int] = (0, 0)
    enabled: bool = True
    clickable: bool = False
    long_clickable: bool = False
    editable: bool = False
    checked: bool = False
    selected: bool = False
    scrollable: bool = False
    action: ElementAction = ElementAction.READ

    @property
    def x(self) -> int:
        return self.center[0]

    @property
    def y(self) -> int:
        return self.center[1]

    @property
    def area(self) -> int:
        return max(0, self.size[0]) * max(0, self.size[1])

    def to_payload(self) -> Dict[str, Any]:
        """Compact JSON form used in reasoning prompts."""
        payload: Dict[str, Any] = {
            "text": self.text,
            "center": list(self.center),
            "action": self.action.value,
        }
        if self.id:
            payload["id"] = self.id
        if self.hint:
            payload["hint"] = self.hint
        if not self.enabled:
            payload["enabled"] = False
        for flag in ("checked", "selected", "scrollable", "long_clickable"):
            if getattr(self, flag):
                payload[flag] = True
        return payload


@dataclass(frozen=True)
class ActionDecision:
    """The reasoning service's chosen next step."""

    kind: DecisionKind
    query: Optional[str] = None
    text: Optional[str] = None
    coordinates: Optional[Tuple[int, int]] = None
    package: Optional[str] = None
    direction: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_skill(self) -> bool:
        return isinstance(self.kind, SkillName)

    @property
    def is_terminal(self) -> bool:
        return self.kind is ActionKind.DONE

    @property
    def name(self) -> str:
        return self.kind.value

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ActionDecision":
        """
        Build a decision from the reasoning service's JSON arguments.

        Raises UnknownActionError for names outside the vocabulary and
        ValueError/TypeError for malformed fields.
        """
        if not isinstance(payload, dict):
            raise TypeError("decision payload must be a JSON object (dict).")
        raw_kind = payload.get("skill") or payload.get("action")
        if not raw_kind:
            raise ValueError("decision payload must include 'action'.")
        kind = parse_decision_kind(raw_kind)
        return cls(
            kind=kind,
            query=_optional_str(payload.get("query")),
            text=_optional_str(payload.get("text")),
            coordinates=_parse_coordinates(payload.get("coordinates")),
            package=_optional_str(payload.get("package")),
            direction=_optional_str(payload.get("direction")),
            reason=_optional_str(payload.get("reason") or payload.get("reasoning")),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"action": self.kind.value}
        for key in ("query", "text", "package", "direction"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.coordinates is not None:
            payload["coordinates"] = list(self.coordinates)
        return payload


@dataclass
class ActionResult:
    """Outcome of executing one decision."""

    success: bool
    message: str
    data: Optional[Dict[str, Any]] = field(default=None)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _parse_coordinates(value: Any) -> Optional[Tuple[int, int]]:
    if value is None:
        return None
    if isinstance(value, dict):
        value = (value.get("x"), value.get("y"))
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValueError("coordinates must be a pair [x, y].")
    try:
        return int(value[0]), int(value[1])
    except (TypeError, ValueError) as exc:
        raise ValueError("coordinates must contain integers.") from exc


__all__ = [
    "ActionDecision",
    "ActionKind",
    "ActionResult",
    "DecisionKind",
    "ElementAction",
    "INTERNAL_ACTIONS",
    "REASONING_ACTIONS",
    "SkillName",
    "UIElement",
    "UnknownActionError",
    "parse_decision_kind",
]
