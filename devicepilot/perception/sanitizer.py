"""
Screen sanitizer: turns raw UI tree snapshots into ranked `UIElement` lists.

Accepted snapshot shapes:
  * a nested node dict (children under `children`),
  * a flat list of node dicts (what the device accessibility layer sends),
  * a dict wrapping either of the above under `elements` / `root`,
  * a uiautomator XML hierarchy string.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from lxml import etree

from devicepilot.shared.data_types import ElementAction, UIElement
from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock, PollPolicy

DEFAULT_MAX_ELEMENTS = 40
# Transitional screens (cold app launches) can take 500ms+ to expose a root.
DEFAULT_RETRY_POLICY = PollPolicy(delays=(0.05, 0.1, 0.2, 0.3, 0.5))

_BOUNDS_PATTERN = re.compile(r"\[(-?\d+),(-?\d+)\]\[(-?\d+),(-?\d+)\]")
_TRUE_VALUES = {"true", "1", "yes"}

_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "id": ("id", "resourceId", "resource-id", "viewIdResourceName"),
    "text": ("text",),
    "description": ("contentDescription", "content-desc", "description"),
    "hint": ("hint", "hintText"),
    "class_name": ("className", "class", "class_name"),
    "enabled": ("enabled", "isEnabled"),
    "clickable": ("clickable", "isClickable"),
    "long_clickable": ("longClickable", "long-clickable", "long_clickable"),
    "editable": ("editable", "isEditable"),
    "checked": ("checked", "isChecked"),
    "selected": ("selected", "isSelected"),
    "scrollable": ("scrollable", "isScrollable"),
}


class SnapshotParseError(ValueError):
    """Raised when a snapshot cannot be interpreted as a UI tree."""


# ---------------------------------------------------------------------- #
# Raw node helpers
# ---------------------------------------------------------------------- #


def _field(node: Dict[str, Any], name: str, default: Any = None) -> Any:
    for key in _FIELD_ALIASES.get(name, (name,)):
        if key in node and node[key] is not None:
            return node[key]
    return default


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in _TRUE_VALUES


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_bounds(value: Any) -> Optional[Tuple[int, int, int, int]]:
    """Parse `[x1,y1][x2,y2]` strings or `{left, top, right, bottom}` dicts."""
    if value is None:
        return None
    if isinstance(value, str):
        match = _BOUNDS_PATTERN.search(value)
        if not match:
            return None
        return tuple(int(part) for part in match.groups())  # type: ignore[return-value]
    if isinstance(value, dict):
        try:
            return (
                int(value["left"]),
                int(value["top"]),
                int(value["right"]),
                int(value["bottom"]),
            )
        except (KeyError, TypeError, ValueError):
            return None
    if isinstance(value, (list, tuple)) and len(value) == 4:
        try:
            return tuple(int(part) for part in value)  # type: ignore[return-value]
        except (TypeError, ValueError):
            return None
    return None


def _geometry(node: Dict[str, Any]) -> Optional[Tuple[Tuple[int, int], Tuple[int, int]]]:
    bounds = parse_bounds(node.get("bounds"))
    if bounds is not None:
        left, top, right, bottom = bounds
        width, height = right - left, bottom - top
        return ((left + right) // 2, (top + bottom) // 2), (width, height)
    center = node.get("center")
    if isinstance(center, (list, tuple)) and len(center) == 2:
        size = node.get("size") or (0, 0)
        try:
            return (int(center[0]), int(center[1])), (int(size[0]), int(size[1]))
        except (TypeError, ValueError, IndexError):
            return None
    return None


def infer_action(*, editable: bool, clickable: bool, long_clickable: bool) -> ElementAction:
    if editable:
        return ElementAction.TYPE
    if clickable or long_clickable:
        return ElementAction.TAP
    return ElementAction.READ


def node_to_element(node: Dict[str, Any]) -> Optional[UIElement]:
    """
    Convert a single raw node into a `UIElement`.

    Returns None for decorative containers (nothing to read, nothing to
    interact with) and for nodes without usable geometry.
    """
    geometry = _geometry(node)
    if geometry is None:
        return None
    center, size = geometry
    if size[0] <= 0 or size[1] <= 0:
        return None

    class_name = _as_text(_field(node, "class_name"))
    text = _as_text(_field(node, "text")) or _as_text(_field(node, "description"))
    hint = _as_text(_field(node, "hint"))
    element_id = _as_text(_field(node, "id"))
    clickable = _as_bool(_field(node, "clickable"))
    long_clickable = _as_bool(_field(node, "long_clickable"))
    editable = _as_bool(_field(node, "editable")) or "EditText" in class_name
    scrollable = _as_bool(_field(node, "scrollable"))

    interactive = clickable or long_clickable or editable or scrollable
    if not interactive and not (text or hint or element_id):
        return None

    return UIElement(
        id=element_id,
        text=text,
        hint=hint,
        class_name=class_name,
        center=center,
        size=size,
        enabled=_as_bool(_field(node, "enabled"), default=True),
        clickable=clickable,
        long_clickable=long_clickable,
        editable=editable,
        checked=_as_bool(_field(node, "checked")),
        selected=_as_bool(_field(node, "selected")),
        scrollable=scrollable,
        action=infer_action(editable=editable, clickable=clickable, long_clickable=long_clickable),
    )


def flatten_tree(root: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Pre-order walk of a nested node dict, preserving source order."""
    flat: List[Dict[str, Any]] = []
    stack: List[Dict[str, Any]] = [root]
    while stack:
        node = stack.pop()
        if not isinstance(node, dict):
            continue
        flat.append(node)
        children = node.get("children") or []
        stack.extend(reversed(list(children)))
    return flat


def parse_hierarchy_xml(xml_text: str) -> List[Dict[str, Any]]:
    """
    Parse a uiautomator XML dump into flat node dicts (document order).
    """
    if not xml_text or not xml_text.strip():
        return []
    try:
        root = etree.fromstring(xml_text.encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        raise SnapshotParseError(f"Malformed hierarchy XML: {exc}") from exc
    return [dict(node.attrib) for node in root.iter("node")]


def relevance_score(element: UIElement) -> int:
    score = 0
    if element.editable:
        score += 4
    if element.clickable or element.long_clickable:
        score += 3
    if element.text:
        score += 2
    if element.hint:
        score += 1
    if element.scrollable:
        score += 1
    if not element.enabled:
        score -= 2
    return score


def screen_hash(elements: Iterable[UIElement]) -> str:
    """
    Deterministic, order-insensitive fingerprint of the visible content.
    """
    lines = sorted(f"{el.id}|{el.text}|{el.center[0]},{el.center[1]}" for el in elements)
    digest = hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()
    return digest[:16]


# ---------------------------------------------------------------------- #
# Sanitizer facade
# ---------------------------------------------------------------------- #


class ScreenSanitizer:
    """
    Converts raw snapshots into compact, ranked element lists.

    Responsibilities:
        * normalise the accepted snapshot shapes into raw node dicts
        * drop decorative containers and rank what remains by relevance
        * retry observation of transitional screens with increasing delay
    """

    def __init__(
        self,
        *,
        max_elements: int = DEFAULT_MAX_ELEMENTS,
        retry_policy: PollPolicy = DEFAULT_RETRY_POLICY,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if max_elements <= 0:
            raise ValueError("max_elements must be a positive integer.")
        self._max_elements = max_elements
        self._retry_policy = retry_policy
        self._clock = clock
        self._logger = StructuredLogger(__name__)

    @property
    def max_elements(self) -> int:
        return self._max_elements

    @property
    def retry_policy(self) -> PollPolicy:
        return self._retry_policy

    def raw_nodes(self, snapshot: Any) -> Optional[List[Dict[str, Any]]]:
        """
        Normalise a snapshot into flat node dicts. None means "no root yet".
        """
        if snapshot is None:
            return None
        if isinstance(snapshot, str):
            return parse_hierarchy_xml(snapshot)
        if isinstance(snapshot, dict):
            if "elements" in snapshot:
                return self.raw_nodes(snapshot.get("elements"))
            if "xml" in snapshot:
                return self.raw_nodes(snapshot.get("xml"))
            if "root" in snapshot:
                return self.raw_nodes(snapshot.get("root"))
            return flatten_tree(snapshot)
        if isinstance(snapshot, (list, tuple)):
            nodes: List[Dict[str, Any]] = []
            for item in snapshot:
                if isinstance(item, dict):
                    nodes.extend(flatten_tree(item) if item.get("children") else [item])
            return nodes
        raise SnapshotParseError(f"Unsupported snapshot type: {type(snapshot).__name__}")

    def rank(self, elements: Sequence[UIElement]) -> List[UIElement]:
        indexed = list(enumerate(elements))
        indexed.sort(key=lambda pair: (-relevance_score(pair[1]), pair[0]))
        return [element for _, element in indexed[: self._max_elements]]

    def sanitize(self, snapshot: Any) -> List[UIElement]:
        nodes = self.raw_nodes(snapshot)
        if not nodes:
            return []
        elements = [el for el in (node_to_element(node) for node in nodes) if el is not None]
        return self.rank(elements)

    async def observe(self, fetch: Callable[[], Awaitable[Any]]) -> List[UIElement]:
        """
        Fetch and sanitize a snapshot, retrying missing, empty or unreadable roots.

        Returns an empty list only after every retry attempt is exhausted.
        """
        async def attempt() -> List[UIElement]:
            snapshot = await fetch()
            try:
                return self.sanitize(snapshot)
            except SnapshotParseError as exc:
                self._logger.warning("Discarding unreadable screen snapshot: %s", exc)
                return []

        outcome = await self._retry_policy.run(attempt, bool, self._clock)
        if not outcome.satisfied:
            self._logger.warning(
                "Screen snapshot empty after %d attempts; continuing with no elements.",
                outcome.attempts,
            )
            return []
        if outcome.attempts > 1:
            self._logger.debug("Screen snapshot available after %d attempts.", outcome.attempts)
        return outcome.value or []


__all__ = [
    "DEFAULT_MAX_ELEMENTS",
    "DEFAULT_RETRY_POLICY",
    "ScreenSanitizer",
    "SnapshotParseError",
    "flatten_tree",
    "infer_action",
    "node_to_element",
    "parse_bounds",
    "parse_hierarchy_xml",
    "relevance_score",
    "screen_hash",
]
