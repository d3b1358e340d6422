"""
Retry and backoff policy.

Maps an attempt count to a retry decision. Fixed or exponential backoff with
a capped delay and bounded positive jitter so that jobs failing together do
not all become claimable at the same instant.
"""

import random
from dataclasses import dataclass, field, replace

from workqueue.config import Settings
from workqueue.constants import BackoffType
from workqueue.types.job import QueueConfig


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed attempt."""

    retry: bool
    delay_ms: int = 0


@dataclass
class RetryPolicy:
    """
    Backoff policy.

    Exponential: ``delay = min(max_delay_ms, base_delay_ms * 2 ** (attempts - 1))``.
    Fixed: ``delay = min(max_delay_ms, base_delay_ms)``. Either way a random
    jitter in ``[0, jitter * delay]`` is added, capped at ``max_delay_ms``.
    """

    base_delay_ms: int = 1000
    max_delay_ms: int = 5 * 60 * 1000
    jitter: float = 0.25
    default_max_attempts: int = 3
    backoff_type: BackoffType = BackoffType.EXPONENTIAL
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("Backoff delays must be non-negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")
        if self.default_max_attempts < 1:
            raise ValueError("default_max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        """Build the policy from application settings."""
        return cls(
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter=settings.retry_jitter,
            default_max_attempts=settings.default_max_attempts,
            backoff_type=BackoffType(settings.retry_backoff_type),
        )

    def for_queue(self, config: QueueConfig | None) -> "RetryPolicy":
        """Overlay a queue's job defaults and backoff onto this policy."""
        if config is None:
            return self
        changes: dict = {}
        if config.default_max_attempts is not None:
            changes["default_max_attempts"] = config.default_max_attempts
        backoff = config.backoff
        if backoff is not None:
            changes["backoff_type"] = backoff.type
            changes["base_delay_ms"] = backoff.delay_ms
        return replace(self, **changes) if changes else self

    def backoff_ms(self, attempts: int) -> int:
        """Backoff before the attempt following ``attempts`` failed ones."""
        if self.backoff_type == BackoffType.FIXED:
            delay = min(self.max_delay_ms, self.base_delay_ms)
        else:
            exponent = max(0, attempts - 1)
            delay = min(self.max_delay_ms, self.base_delay_ms * (2**exponent))
        if self.jitter and delay:
            delay += self.rng.uniform(0, self.jitter * delay)
        return int(min(self.max_delay_ms, delay))

    def decide(self, attempts: int, max_attempts: int) -> RetryDecision:
        """
        Decide whether a job that just failed its ``attempts``-th attempt
        should run again.

        Args:
            attempts: Attempts made so far, including the one that failed.
            max_attempts: The job's attempt budget.

        Returns:
            RetryDecision with the delay before the job becomes claimable.
        """
        if attempts >= max_attempts:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay_ms=self.backoff_ms(attempts))
