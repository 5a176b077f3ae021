"""
Backoff policy.

Single retry policy object injected into the chain client.
"""

import random
from dataclasses import dataclass, field


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with jitter.

    delay(attempt) = min(max_delay, base_delay * 2 ** (attempt - 1)),
    scaled by a random factor in [1 - jitter, 1 + jitter] and capped
    at max_delay again.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay after the first failed attempt (seconds)
        max_delay: Ceiling for any single delay (seconds)
        jitter: Relative jitter (0 disables)
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be within [0, 1]")

    def delay_for(self, attempt: int) -> float:
        """
        Delay before the next attempt.

        Args:
            attempt: Number of the attempt that just failed (1-based)

        Returns:
            Delay in seconds
        """
        raw = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        if self.jitter:
            raw *= self.rng.uniform(1 - self.jitter, 1 + self.jitter)
        return max(0.0, min(self.max_delay, raw))

    def has_attempts_left(self, attempt: int) -> bool:
        """True if another attempt is allowed after `attempt`."""
        return attempt < self.max_attempts

    @classmethod
    def from_settings(cls, settings) -> "BackoffPolicy":
        """Build policy from application settings."""
        return cls(
            max_attempts=settings.chain_max_attempts,
            base_delay=settings.chain_backoff_base_seconds,
            max_delay=settings.chain_backoff_max_seconds,
            jitter=settings.chain_backoff_jitter,
        )
