"""Retry scheduling for failed delivery attempts."""
from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from mailflow.config import settings


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Exponential backoff policy with an upper bound and optional jitter."""

    base_seconds: float = 30.0
    cap_seconds: float = 3600.0
    max_attempts: int = 5
    jitter_seconds: float = 0.0

    def next_delay(self, attempts: int) -> float:
        """Return the capped delay in seconds after the ``attempts``-th attempt."""

        attempt = max(attempts, 1)
        delay = self.base_seconds * (2 ** (attempt - 1))
        if delay > self.cap_seconds:
            delay = self.cap_seconds
        return float(delay)

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.OUTBOX_BASE_DELAY_SECONDS,
            cap_seconds=settings.OUTBOX_MAX_DELAY_SECONDS,
            max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
            jitter_seconds=settings.OUTBOX_JITTER_SECONDS,
        )


@dataclass(slots=True, frozen=True)
class RetryDecision:
    terminal: bool
    next_attempt_at: datetime | None = None
    delay_seconds: float = 0.0


def schedule_retry(
    attempts: int,
    policy: BackoffPolicy,
    now: datetime,
    rng: random.Random | None = None,
) -> RetryDecision:
    """Decide what happens after a transient failure on attempt ``attempts`` (1-based).

    Reaching ``policy.max_attempts`` is terminal. Otherwise the entry becomes
    eligible again after the exponential delay plus up to
    ``policy.jitter_seconds`` of jitter drawn from ``rng``.
    """

    if attempts >= policy.max_attempts:
        return RetryDecision(terminal=True)

    delay = policy.next_delay(attempts)
    if rng is not None and policy.jitter_seconds > 0:
        delay += rng.uniform(0.0, policy.jitter_seconds)
    return RetryDecision(
        terminal=False,
        next_attempt_at=now + timedelta(seconds=delay),
        delay_seconds=delay,
    )
