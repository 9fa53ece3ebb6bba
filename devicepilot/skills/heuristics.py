"""
Pure targeting heuristics over element snapshots.

Nothing in here talks to a device or sleeps: every function takes the current
element list and returns a deterministic ranking or selection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

from devicepilot.shared.data_types import ElementAction, UIElement

DEFAULT_SCREEN_WIDTH = 1080
DEFAULT_SCREEN_HEIGHT = 2400

SEND_BUTTON_PATTERN = re.compile(r"send|submit|post|arrow|paper.?plane", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w.-]+\.\w{2,}")
FIRST_INT_PATTERN = re.compile(r"\b\d[\d,]*\b")

BODY_FIELD_PATTERN = re.compile(r"body|compose_area|compose_edit|message_content", re.IGNORECASE)
BODY_HINT_PATTERN = re.compile(r"compose|body|message|write", re.IGNORECASE)

SUBMIT_BOTTOM_FRACTION = 0.8

# Comment like rows: right-hand column, below the header/video controls and
# above the composer bar.
LIKE_COLUMN_FRACTION = 0.72
LIKE_HEADER_FRACTION = 0.375
LIKE_FOOTER_FRACTION = 0.958
LIKE_ROW_MERGE_PX = 24
LIKE_COUNT_MAX_DY = 70
LIKE_COUNT_MIN_DX = -180
LIKE_COUNT_MAX_DX = 40
LIKE_RELOCATE_TOLERANCE_PX = 80
DEFAULT_COMMENT_INDEX = 3

_LIKE_EXCLUSIONS = ("video like", "like video", "repost")
_UNDO_LIKE_PATTERN = re.compile(r"like or undo like", re.IGNORECASE)


@dataclass(frozen=True)
class ScreenSize:
    width: int
    height: int


def approximate_screen_size(elements: Iterable[UIElement]) -> ScreenSize:
    """Estimate screen extents from element geometry (never below a phone default)."""
    max_x, max_y = DEFAULT_SCREEN_WIDTH, DEFAULT_SCREEN_HEIGHT
    for el in elements:
        x, y = el.center
        w, h = el.size
        max_x = max(max_x, x + max(0, w // 2))
        max_y = max(max_y, y + max(0, h // 2))
    return ScreenSize(width=max_x, height=max_y)


def swipe_vector(direction: str, screen: ScreenSize) -> Tuple[int, int, int, int]:
    """
    Start/end points for a swipe gesture. Swiping "up" scrolls content down.
    """
    cx, cy = screen.width // 2, screen.height // 2
    top, bottom = int(screen.height * 0.3), int(screen.height * 0.7)
    left, right = int(screen.width * 0.2), int(screen.width * 0.8)
    vectors = {
        "up": (cx, bottom, cx, top),
        "down": (cx, top, cx, bottom),
        "left": (right, cy, left, cy),
        "right": (left, cy, right, cy),
    }
    try:
        return vectors[direction.lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown swipe direction: {direction!r}") from exc


def scroll_to_swipe_direction(direction: str) -> str:
    """Map a scroll direction onto the finger movement that produces it."""
    mapping = {"down": "up", "up": "down", "left": "right", "right": "left"}
    try:
        return mapping[direction.lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown scroll direction: {direction!r}") from exc


def element_texts(elements: Iterable[UIElement]) -> List[str]:
    return [el.text for el in elements if el.text]


def new_texts(before: Iterable[UIElement], after: Iterable[UIElement]) -> List[str]:
    """Texts present in `after` that were absent from `before`, in `after` order."""
    seen = set(element_texts(before))
    return [text for text in element_texts(after) if text not in seen]


# ---------------------------------------------------------------------- #
# submit_message
# ---------------------------------------------------------------------- #


def rank_submit_candidates(elements: Sequence[UIElement]) -> List[UIElement]:
    """
    Send/submit buttons by label or id; otherwise clickable elements in the
    bottom 20% of the clickable area (measured from the lowest clickable
    element), rightmost first.
    """
    usable = [el for el in elements if el.enabled and el.clickable]
    labelled = [
        el for el in usable if SEND_BUTTON_PATTERN.search(el.text) or SEND_BUTTON_PATTERN.search(el.id)
    ]
    if labelled:
        return labelled
    if not usable:
        return []
    threshold = max(el.center[1] for el in usable) * SUBMIT_BOTTOM_FRACTION
    bottom = [el for el in usable if el.center[1] >= threshold]
    return sorted(bottom, key=lambda el: (-el.center[0], -el.center[1]))


# ---------------------------------------------------------------------- #
# copy_visible_text / read_screen
# ---------------------------------------------------------------------- #


def select_text_elements(elements: Sequence[UIElement], query: Optional[str] = None) -> List[UIElement]:
    """
    Read-only text elements (or any text element when none are read-only),
    optionally filtered by a case-insensitive substring, sorted top-to-bottom.
    """
    needle = query.lower() if query else None

    def matches(el: UIElement) -> bool:
        return needle is None or needle in el.text.lower()

    selected = [el for el in elements if el.text and el.action is ElementAction.READ and matches(el)]
    if not selected:
        selected = [el for el in elements if el.text and matches(el)]
    return sorted(selected, key=lambda el: el.center[1])


# ---------------------------------------------------------------------- #
# find_and_tap
# ---------------------------------------------------------------------- #


def score_text_match(element: UIElement, query_lower: str) -> int:
    score = 0
    if element.enabled:
        score += 10
    if element.clickable or element.long_clickable:
        score += 5
    score += 20 if element.text.lower() == query_lower else 5
    return score


def rank_text_matches(elements: Sequence[UIElement], query: str) -> List[UIElement]:
    """Case-insensitive substring matches, best first (stable on ties)."""
    query_lower = query.lower()
    matches = [el for el in elements if el.text and query_lower in el.text.lower()]
    return sorted(matches, key=lambda el: -score_text_match(el, query_lower))


def best_text_match(elements: Sequence[UIElement], query: str) -> Optional[UIElement]:
    ranked = rank_text_matches(elements, query)
    return ranked[0] if ranked else None


# ---------------------------------------------------------------------- #
# compose_email
# ---------------------------------------------------------------------- #


def extract_email(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = EMAIL_PATTERN.search(text)
    return match.group(0) if match else None


def editable_fields(elements: Sequence[UIElement]) -> List[UIElement]:
    return sorted((el for el in elements if el.editable and el.enabled), key=lambda el: el.center[1])


def find_field(
    editables: Sequence[UIElement],
    id_pattern: Pattern[str],
    hint_pattern: Pattern[str],
) -> Optional[UIElement]:
    """Locate a field by id, then hint text, then visible text."""
    for el in editables:
        if el.id and id_pattern.search(el.id):
            return el
    for el in editables:
        if el.hint and hint_pattern.search(el.hint):
            return el
    for el in editables:
        if el.text and id_pattern.search(el.text):
            return el
    return None


def find_body_field(editables: Sequence[UIElement]) -> Optional[UIElement]:
    if not editables:
        return None
    matched = find_field(editables, BODY_FIELD_PATTERN, BODY_HINT_PATTERN)
    if matched is not None:
        return matched
    # Positional fallback: the body is the largest field, usually the last one.
    return max(editables, key=lambda el: (el.area, el.center[1]))


# ---------------------------------------------------------------------- #
# like_nth_comment / verify_nth_comment_like
# ---------------------------------------------------------------------- #


def parse_ordinal(*values: Optional[str], default: int = DEFAULT_COMMENT_INDEX) -> int:
    """First positive integer found in the given strings, else `default`."""
    for value in values:
        if not value:
            continue
        match = re.search(r"\d+", str(value))
        if match:
            number = int(match.group(0))
            return number if number > 0 else default
    return default


def parse_first_int(text: str) -> Optional[int]:
    match = FIRST_INT_PATTERN.search(text or "")
    if not match:
        return None
    return int(match.group(0).replace(",", ""))


def _like_haystack(el: UIElement) -> str:
    return f"{el.text} {el.id} {el.hint}".lower()


def is_comment_like_button(el: UIElement, screen: ScreenSize) -> bool:
    hay = _like_haystack(el)
    if "like" not in hay:
        return False
    if any(marker in hay for marker in _LIKE_EXCLUSIONS):
        return False
    if el.center[0] < screen.width * LIKE_COLUMN_FRACTION:
        return False
    if el.center[1] < screen.height * LIKE_HEADER_FRACTION:
        return False
    if el.center[1] > screen.height * LIKE_FOOTER_FRACTION:
        return False
    return el.clickable or el.action is ElementAction.TAP or bool(_UNDO_LIKE_PATTERN.search(el.text))


def collect_comment_like_rows(elements: Sequence[UIElement]) -> List[UIElement]:
    """
    Like buttons grouped into rows (rightmost candidate per row), top-to-bottom.
    """
    screen = approximate_screen_size(elements)
    candidates = sorted(
        (el for el in elements if is_comment_like_button(el, screen)),
        key=lambda el: (el.center[1], -el.center[0]),
    )
    rows: List[UIElement] = []
    for el in candidates:
        for index, row in enumerate(rows):
            if abs(row.center[1] - el.center[1]) <= LIKE_ROW_MERGE_PX:
                if el.center[0] > row.center[0]:
                    rows[index] = el
                break
        else:
            rows.append(el)
    return sorted(rows, key=lambda el: el.center[1])


def find_nearby_count(elements: Sequence[UIElement], target: UIElement) -> Optional[int]:
    """Numeric label on the same row, just left of (or under) the like button."""
    for el in elements:
        if not el.text:
            continue
        if abs(el.center[1] - target.center[1]) > LIKE_COUNT_MAX_DY:
            continue
        dx = el.center[0] - target.center[0]
        if dx < LIKE_COUNT_MIN_DX or dx > LIKE_COUNT_MAX_DX:
            continue
        number = parse_first_int(el.text)
        if number is not None:
            return number
    return None


def nearest_row(rows: Sequence[UIElement], y: int) -> Optional[Tuple[UIElement, int]]:
    if not rows:
        return None
    best = min(rows, key=lambda row: abs(row.center[1] - y))
    return best, abs(best.center[1] - y)


def like_selection_signal(el: UIElement) -> bool:
    hay = _like_haystack(el)
    return el.selected or el.checked or "undo like" in hay or "liked" in hay


def sample_texts(elements: Sequence[UIElement], limit: int = 15) -> List[str]:
    return element_texts(elements)[:limit]


__all__ = [
    "DEFAULT_COMMENT_INDEX",
    "LIKE_RELOCATE_TOLERANCE_PX",
    "SEND_BUTTON_PATTERN",
    "ScreenSize",
    "approximate_screen_size",
    "best_text_match",
    "collect_comment_like_rows",
    "editable_fields",
    "extract_email",
    "find_body_field",
    "find_field",
    "find_nearby_count",
    "is_comment_like_button",
    "like_selection_signal",
    "nearest_row",
    "new_texts",
    "parse_first_int",
    "parse_ordinal",
    "rank_submit_candidates",
    "rank_text_matches",
    "sample_texts",
    "score_text_match",
    "scroll_to_swipe_direction",
    "select_text_elements",
    "swipe_vector",
]
