from __future__ import annotations

import pytest

from devicepilot.perception.sanitizer import ScreenSanitizer
from doubles import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sanitizer(clock: FakeClock) -> ScreenSanitizer:
    return ScreenSanitizer(clock=clock)
