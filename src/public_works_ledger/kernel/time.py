"""
Time provider abstraction and date parsing

Timestamps on history entries, expenses and alerts come from an injectable
clock so tests can freeze time. Expense dates arrive from request handlers
as strings, dates or datetimes; `parse_date` normalizes them.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Protocol

from public_works_ledger.kernel.errors import InvalidInput


class TimeProvider(Protocol):
    """Protocol for time providers - allows deterministic testing"""

    def now(self) -> datetime:
        """Return current UTC datetime"""
        ...


class RealTimeProvider:
    """Production time provider using system clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedTimeProvider:
    """
    Controllable time provider for deterministic tests

    Time only moves when the test moves it.
    """

    def __init__(self, initial_time: datetime | None = None) -> None:
        self._current_time = initial_time or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current_time

    def set_time(self, dt: datetime) -> None:
        self._current_time = dt

    def advance_seconds(self, seconds: int) -> None:
        self._current_time += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        self._current_time += timedelta(days=days)


def parse_date(value: Any, field: str = "date") -> date:
    """
    Parse a calendar date supplied by a caller

    Accepts `date`, `datetime` (date part is kept) or an ISO-8601 string
    ("2025-03-01" or "2025-03-01T10:00:00"). Only parseability is checked:
    dates in the future are valid.

    Raises:
        InvalidInput: If the value is missing or cannot be parsed
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            raise InvalidInput(field, f"'{value}' is not a valid ISO date") from None
    raise InvalidInput(field, "a date is required")
