"""
Backoff policy for redelivery.
"""

import random
from dataclasses import dataclass

from .logging import get_logger

logger = get_logger("shared.retry")

BACKOFF_STRATEGIES = ("exponential", "linear", "fixed")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry behaviour.

    ``max_attempts`` counts every handler invocation, the first one included.
    A delivery that has used all of them is dead-lettered.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    backoff_strategy: str = "exponential"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_strategy not in BACKOFF_STRATEGIES:
            raise ValueError(f"Unknown backoff strategy '{self.backoff_strategy}'")

    def exhausted(self, attempts: int) -> bool:
        """True once ``attempts`` invocations leave no budget for another one."""
        return attempts >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt that follows failed attempt number ``attempt``."""
        if self.backoff_strategy == "exponential":
            delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        elif self.backoff_strategy == "linear":
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_amount = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0.0, delay)

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        """Build the delivery policy from a ``BaseConfig``."""
        policy = cls(
            max_attempts=config.delivery_max_attempts,
            base_delay=config.delivery_base_delay,
            max_delay=config.delivery_max_delay,
            jitter=config.delivery_jitter,
            backoff_strategy=config.delivery_backoff_strategy,
        )
        logger.debug("Delivery retry policy loaded", max_attempts=policy.max_attempts,
                     backoff_strategy=policy.backoff_strategy)
        return policy
