"""Bounded exponential backoff for retried gateway intents."""

import asyncio
import logging
from typing import Optional

from ..config import RetryConfig

logger = logging.getLogger(__name__)


class RetryExhaustedError(Exception):
    """Raised when an intent has been retried past the configured ceiling."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[str] = None):
        super().__init__(
            f"{operation}: gave up after {attempts} attempts (last error: {last_error})"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class RetryPolicy:
    """Exponential backoff with a retry ceiling.

    Each call to backoff() counts one failed attempt for the named
    operation and sleeps before the caller tries again. Switching to a
    different operation, or calling reset(), starts the count over.
    """

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempts = 0
        self._operation: Optional[str] = None

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = self.config.base_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self.config.max_delay_seconds)

    async def backoff(self, operation: str, error: Optional[Exception] = None) -> None:
        """Record a failure and wait before the next attempt.

        Raises:
            RetryExhaustedError: once max_attempts failures have been recorded
        """
        if operation != self._operation:
            self._operation = operation
            self.attempts = 0

        self.attempts += 1
        if self.attempts > self.config.max_attempts:
            raise RetryExhaustedError(operation, self.attempts - 1, str(error) if error else None)

        delay = self.delay_for(self.attempts)
        logger.warning(
            f"{operation} failed (attempt {self.attempts}/{self.config.max_attempts}), "
            f"retrying in {delay:.1f}s: {error}"
        )
        await asyncio.sleep(delay)

    def reset(self) -> None:
        self.attempts = 0
        self._operation = None
