"""
shepherd_engines.backoff -- Retry delay calculation.

Pure.  ``delay = min(base * multiplier ** (attempt - 1), max)``.  With a
multiplier above 1 and a cap that is not reached within ``max_attempts``,
successive delays are strictly increasing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 1.0
    multiplier: float = 2.0
    max_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be positive")
        if self.multiplier <= 1:
            raise ValueError("multiplier must be greater than 1")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")


def backoff_delay(attempt: int, policy: BackoffPolicy) -> float:
    """Delay in seconds before retrying after failed attempt number ``attempt``."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    # Cap the exponent so very large attempt numbers do not overflow
    exponent = min(attempt - 1, 64)
    try:
        raw = policy.base_seconds * policy.multiplier ** exponent
    except OverflowError:
        return policy.max_seconds
    return min(raw, policy.max_seconds)


def next_attempt_at(now: datetime, attempt: int, policy: BackoffPolicy) -> datetime:
    return now + timedelta(seconds=backoff_delay(attempt, policy))
