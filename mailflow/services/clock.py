"""Clock abstraction so enqueue ordering and backoff timing can be tested."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return a timezone-aware UTC timestamp."""


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


system_clock = SystemClock()
