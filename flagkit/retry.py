"""Counting connection retries with exponentially growing delays."""

from __future__ import annotations

DEFAULT_DELAY = 1.0
FACTOR = 2


class RetryCounter:
    """Tracks retry attempts against a limit and the delay before the next one, in seconds."""

    def __init__(self, max_retries: int, base_delay: float = DEFAULT_DELAY) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.current_delay = 0.0
        self.current_retries = 0

    def reset(self) -> None:
        """Restart counting attempts and delays."""
        self.current_delay = self.base_delay
        self.current_retries = 0

    def retry(self) -> bool:
        """Count an attempt and report whether it is still within the limit."""
        self.current_retries += 1
        return self.current_retries <= self.max_retries

    def sleep(self) -> float:
        """Return the current delay and grow the next one."""
        value = self.current_delay
        self.current_delay = FACTOR * self.current_delay
        return value