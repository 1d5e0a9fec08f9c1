"""Retry strategies for failed workflow steps.

A failed non-critical step is not retried in place: the executor
schedules a deferred re-entry after the delay computed here, so the
worker is free while the account backs off.

Usage:
    strategy = RetryStrategy.from_config(await config.get_retry_config())
    if strategy.should_retry(instance.retry_count + 1, error_code):
        delay_ms = strategy.compute_delay_ms(instance.retry_count + 1)
"""

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from core.exceptions import (
    AccountNotAliveError,
    UnrecoverableError,
    ValidationError,
)


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


# Error classifications that retrying cannot fix.
NON_RETRYABLE_CODES = frozenset({
    ValidationError.code,
    AccountNotAliveError.code,
    UnrecoverableError.code,
})


@dataclass
class RetryStrategy:
    """Retry budget plus backoff curve, in milliseconds."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay_ms: int = 30_000
    max_delay_ms: int = 300_000
    jitter: bool = False
    jitter_range: float = 0.2
    non_retryable_codes: frozenset = field(default_factory=lambda: NON_RETRYABLE_CODES)

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries: the first failure is final."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay_ms: int = 30_000) -> 'RetryStrategy':
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            base_delay_ms=delay_ms,
            max_delay_ms=delay_ms,
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay_ms: int = 30_000,
        max_delay_ms: int = 300_000,
        jitter: bool = False,
    ) -> 'RetryStrategy':
        """delay = base * 2^(attempt-1), capped."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay_ms=base_delay_ms,
            max_delay_ms=max_delay_ms,
            jitter=jitter,
        )

    @classmethod
    def linear(
        cls,
        max_retries: int = 3,
        base_delay_ms: int = 30_000,
        max_delay_ms: int = 300_000,
    ) -> 'RetryStrategy':
        """delay = base * attempt, capped."""
        return cls(
            policy=RetryPolicy.LINEAR,
            max_retries=max_retries,
            base_delay_ms=base_delay_ms,
            max_delay_ms=max_delay_ms,
        )

    @classmethod
    def from_config(cls, config: dict, max_retries: Optional[int] = None) -> 'RetryStrategy':
        """Build from the ``workflow.retry`` config document.

        ``max_retries`` (usually the definition's own budget) wins over
        the configured one.
        """
        return cls(
            policy=RetryPolicy(config.get('policy', 'exponential')),
            max_retries=int(max_retries if max_retries is not None else config.get('max_retries', 3)),
            base_delay_ms=int(config.get('backoff_ms', 30_000)),
            max_delay_ms=int(config.get('max_backoff_ms', 300_000)),
            jitter=bool(config.get('jitter', False)),
        )

    def to_dict(self) -> dict:
        return {
            'policy': self.policy.value,
            'max_retries': self.max_retries,
            'backoff_ms': self.base_delay_ms,
            'max_backoff_ms': self.max_delay_ms,
            'jitter': self.jitter,
        }

    def compute_delay_ms(self, attempt: int) -> int:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0

        if self.policy == RetryPolicy.FIXED:
            delay = self.base_delay_ms
        elif self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay_ms * (2 ** (attempt - 1))
        else:
            delay = self.base_delay_ms * attempt

        delay = min(delay, self.max_delay_ms)

        if self.jitter and delay > 0:
            spread = delay * self.jitter_range
            delay = max(0, delay + random.uniform(-spread, spread))

        return int(delay)

    def should_retry(self, attempt: int, error_code: Optional[str] = None) -> bool:
        """Whether retry number ``attempt`` (1-based) is allowed for this failure."""
        if self.policy == RetryPolicy.NONE:
            return False
        if attempt > self.max_retries:
            return False
        return error_code not in self.non_retryable_codes
