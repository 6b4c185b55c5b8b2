"""Shared test fixtures for the check-in service test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

import pytest


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 14, 9, 30, 0, tzinfo=UTC)


@pytest.fixture
def clock(fixed_now: datetime) -> Callable[[], datetime]:
    return lambda: fixed_now


@pytest.fixture
def test_user_email() -> str:
    return "staff@example.com"


@pytest.fixture
def roster_header() -> list[str]:
    return ["Student ID", "First Name", "Last Name", "Center", "QR Code", "Last Attendance Date"]


@pytest.fixture
def roster_rows(roster_header: list[str]) -> list[list[str]]:
    """Student table with Alice (1) and Bob (2) but no Carol."""
    return [
        roster_header,
        ["1", "Alice", "Smith", "North", "", ""],
        ["2", "Bob", "Lee", "South", "", ""],
        ["4", "Dana", "Kim", "North", "https://drive.google.com/file/d/dana-qr/view", ""],
    ]
