"""Per-stage retry policy built on tenacity."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from comicpipe.config import Settings, settings
from comicpipe.errors import RetryableStageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, applied to retryable stage errors only.

    ``max_attempts`` of 0 means a single attempt: the first failure aborts.
    """

    max_attempts: int = 3
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 10000
    factor: float = 2.0
    jitter_ms: int = 1000

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RetryPolicy":
        config = config or settings
        retry = config.retry
        # Development runs fail fast so errors surface immediately
        max_attempts = 0 if config.is_development else retry.max_attempts
        return cls(
            max_attempts=max_attempts,
            initial_backoff_ms=retry.initial_backoff_ms,
            max_backoff_ms=retry.max_backoff_ms,
            factor=retry.factor,
            jitter_ms=retry.jitter_ms,
        )

    @property
    def attempts(self) -> int:
        return max(1, self.max_attempts)

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retrying after ``attempt`` failed, without jitter."""
        delay = self.initial_backoff_ms * (self.factor ** (attempt - 1))
        return min(delay, self.max_backoff_ms) / 1000

    def retrying(
        self,
        before_sleep: Optional[Callable[[RetryCallState], None]] = None,
    ) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential_jitter(
                initial=self.initial_backoff_ms / 1000,
                max=self.max_backoff_ms / 1000,
                exp_base=self.factor,
                jitter=self.jitter_ms / 1000,
            ),
            retry=retry_if_exception_type(RetryableStageError),
            before_sleep=before_sleep,
            reraise=True,
        )
