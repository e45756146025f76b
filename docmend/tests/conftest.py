from __future__ import annotations

from datetime import datetime, timezone

import pytest

FIXED_NOW = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW
