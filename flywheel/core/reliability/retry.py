"""
Retry policy — bounded attempts with a fixed inter-attempt delay.

Install steps are retried in place (no persistent queue): a step gets
``attempts`` tries with ``delay`` seconds between them. There is no
backoff or jitter; package mirrors and installer endpoints either
recover within a few seconds or not at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flywheel.core.models.module import CommandStep
from flywheel.core.models.result import ErrorKind, StepOutcome

logger = logging.getLogger(__name__)

# Failure kinds that retrying cannot fix
NON_RETRYABLE = frozenset({
    ErrorKind.INTEGRITY_VIOLATION,
    ErrorKind.CONTRACT_VIOLATION,
    ErrorKind.VALIDATION_ERROR,
})


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try a step and how long to wait in between."""

    attempts: int = 3
    delay: float = 5.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {self.attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")

    @property
    def retries(self) -> bool:
        return self.attempts > 1

    def should_retry(self, outcome: StepOutcome, attempt: int) -> bool:
        """Whether a failed ``outcome`` on ``attempt`` (1-based) earns another try."""
        if outcome.ok or attempt >= self.attempts:
            return False
        if outcome.error_kind in NON_RETRYABLE:
            logger.debug("Not retrying %s failure", outcome.error_kind)
            return False
        return True

    @classmethod
    def for_step(cls, step: CommandStep) -> RetryPolicy:
        return cls(attempts=step.attempts, delay=step.delay)


SINGLE_ATTEMPT = RetryPolicy(attempts=1, delay=0.0)
