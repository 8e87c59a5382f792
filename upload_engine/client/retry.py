"""Retry policy for failed upload operations."""

from dataclasses import dataclass
from typing import Optional, Sequence

from upload_engine.config import DEFAULT_RETRY_DELAYS, EngineConfig
from upload_engine.exceptions import ErrorClass

RETRYABLE_ERROR_CLASSES = frozenset({ErrorClass.TRANSIENT_NETWORK, ErrorClass.SERVER_TEMPORARY})


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry consultation.

    Attributes:
        retry: Whether the failed operation should be attempted again
        delay_ms: How long to wait before the next attempt, in milliseconds
    """

    retry: bool
    delay_ms: int = 0

    @property
    def delay(self) -> float:
        """Delay in seconds."""
        return self.delay_ms / 1000


class RetryPolicy:
    """Deterministic retry policy driven by a delay sequence.

    Transient network failures and temporary server failures are retried,
    waiting ``retry_delays[n - 1]`` before the n-th retry. Once the sequence
    (or ``max_retries``) is exhausted the policy answers ``retry=False``.
    Permanent failures, protocol violations and client aborts are never
    retried.

    Example:
        >>> policy = RetryPolicy([0, 1000, 3000])
        >>> policy.should_retry(ErrorClass.SERVER_TEMPORARY, attempt=2)
        RetryDecision(retry=True, delay_ms=1000)
        >>> policy.should_retry(ErrorClass.SERVER_TEMPORARY, attempt=4)
        RetryDecision(retry=False, delay_ms=0)
    """

    def __init__(
        self,
        retry_delays: Sequence[int] = DEFAULT_RETRY_DELAYS,
        max_retries: Optional[int] = None,
    ):
        """Initialize the policy.

        Args:
            retry_delays: Delay before each retry in milliseconds
            max_retries: Optional cap on the number of retries

        Raises:
            ValueError: If a delay or max_retries is negative
        """
        if any(delay < 0 for delay in retry_delays):
            raise ValueError(f"retry delays must not be negative, got {list(retry_delays)}")
        if max_retries is not None and max_retries < 0:
            raise ValueError(f"max_retries must not be negative, got {max_retries}")
        self.retry_delays = tuple(int(delay) for delay in retry_delays)
        self.max_retries = max_retries

    @classmethod
    def from_config(cls, config: EngineConfig) -> "RetryPolicy":
        return cls(config.retry_delays, config.max_retries)

    @classmethod
    def exponential(
        cls, retry_delay_ms: int = 1000, max_retries: int = 3, max_delay_ms: Optional[int] = None
    ) -> "RetryPolicy":
        """Build a policy with exponential backoff: delay, 2*delay, 4*delay, ...

        Args:
            retry_delay_ms: Delay before the first retry in milliseconds
            max_retries: Number of retries
            max_delay_ms: Optional ceiling for a single delay
        """
        delays = []
        for attempt in range(max_retries):
            delay = retry_delay_ms * (2**attempt)
            if max_delay_ms is not None:
                delay = min(delay, max_delay_ms)
            delays.append(delay)
        return cls(delays)

    @property
    def retry_limit(self) -> int:
        """Total number of retries this policy allows."""
        if self.max_retries is None:
            return len(self.retry_delays)
        return min(self.max_retries, len(self.retry_delays))

    def should_retry(self, error_class: ErrorClass, attempt: int) -> RetryDecision:
        """Decide whether to retry after a failure.

        Args:
            error_class: Classification of the failure
            attempt: Number of consecutive failed attempts so far (1 after the
                first failure)

        Returns:
            RetryDecision with the delay to wait before retrying
        """
        if error_class not in RETRYABLE_ERROR_CLASSES:
            return RetryDecision(retry=False)
        if attempt < 1 or attempt > self.retry_limit:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay_ms=self.retry_delays[attempt - 1])
