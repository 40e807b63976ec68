"""Exponential backoff for failed status reads."""

from __future__ import annotations

from dataclasses import dataclass


DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_RETRIES = 3


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before automatic retry number ``attempt`` (counted from 0).

    ``next_delay(attempt) = base * 2 ** attempt``. Once ``attempt`` reaches
    ``max_retries`` the caller stops retrying on its own and waits for a
    manual trigger.
    """

    base_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES

    def next_delay(self, attempt: int) -> float:
        return self.base_seconds * (2 ** max(0, int(attempt)))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries
