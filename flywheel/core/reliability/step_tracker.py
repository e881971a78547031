"""
Step tracker — run one step, record where and how it failed.

Every command the installer executes goes through ``run_step``. The
tracker knows which phase and step are current, applies the step's
mode, and keeps the last failure as an ``ErrorContext``:

    strict     failure fails the owning module
    optional   failure is recorded as a warning, module continues
    retrying   up to ``policy.attempts`` tries, ``policy.delay`` apart;
               exhaustion is a strict failure naming the attempt count

Captured output is sanitized and cut to MAX_OUTPUT_CHARS before it is
stored anywhere. Actions never raise into the tracker: they return a
StepOutcome.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flywheel.core.models.result import ErrorContext, ErrorKind, StepOutcome
from flywheel.core.reliability.retry import SINGLE_ATTEMPT, RetryPolicy
from flywheel.core.services.redaction import sanitize_text

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 2000
TRUNCATION_SUFFIX = "... [truncated]"


class StepMode(StrEnum):
    STRICT = "strict"
    OPTIONAL = "optional"
    RETRYING = "retrying"


def excerpt(output: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    """Sanitized, length-bounded copy of captured output."""
    clean = sanitize_text(output or "").strip()
    if len(clean) > limit:
        return clean[:limit] + TRUNCATION_SUFFIX
    return clean


@dataclass
class StepResult:
    """What happened to one step."""

    description: str
    status: str                      # success | warning | failed
    exit_code: int = 0
    attempts: int = 1
    output: str = ""
    warning: str | None = None
    error: ErrorContext | None = None

    @property
    def ok(self) -> bool:
        """False only when the owning module must fail."""
        return self.status != "failed"


@dataclass
class StepTracker:
    """Phase/step context plus the error history for one module run.

    Not shared between threads: the orchestrator gives each unit its own.
    """

    module_id: str | None = None
    sleep: Callable[[float], None] = time.sleep

    phase: str | None = None
    phase_name: str | None = None
    step: str | None = None
    last_error: ErrorContext | None = None
    errors: list[ErrorContext] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    # ── Context ──────────────────────────────────────────────────

    def set_phase(self, phase_id: str, phase_name: str | None = None) -> None:
        self.phase = phase_id
        self.phase_name = phase_name or phase_id
        logger.debug("Phase: %s (%s)", self.phase, self.phase_name)

    def clear_phase(self) -> None:
        self.phase = None
        self.phase_name = None
        self.step = None

    def has_error(self) -> bool:
        return self.last_error is not None

    def clear_error(self) -> None:
        self.last_error = None

    # ── Execution ────────────────────────────────────────────────

    def run_step(
        self,
        description: str,
        action: Callable[[], StepOutcome],
        mode: StepMode = StepMode.STRICT,
        policy: RetryPolicy | None = None,
    ) -> StepResult:
        """Run ``action`` under ``mode`` and record the outcome.

        Args:
            description: What the step does (shown in error reports).
            action: Zero-argument callable returning a StepOutcome.
            mode: How a final failure is treated.
            policy: Attempts and delay. Defaults to one attempt, except
                in retrying mode, which defaults to RetryPolicy().

        Returns:
            StepResult; ``attempts`` is the number of tries used.
        """
        if policy is None:
            policy = RetryPolicy() if mode == StepMode.RETRYING else SINGLE_ATTEMPT

        self.step = description
        logger.info("%s", description)

        attempt = 0
        while True:
            attempt += 1
            outcome = action()
            if outcome.ok:
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d/%d", description, attempt, policy.attempts)
                return StepResult(
                    description=description,
                    status="success",
                    attempts=attempt,
                    output=excerpt(outcome.output),
                )
            if not policy.should_retry(outcome, attempt):
                break
            logger.warning(
                "%s failed (exit %d), retry %d/%d in %.1fs",
                description, outcome.exit_code, attempt + 1, policy.attempts, policy.delay,
            )
            self.sleep(policy.delay)

        return self._record_failure(description, outcome, attempt, mode, policy)

    def _record_failure(
        self,
        description: str,
        outcome: StepOutcome,
        attempts: int,
        mode: StepMode,
        policy: RetryPolicy,
    ) -> StepResult:
        message = outcome.message or f"Command exited with code {outcome.exit_code}"
        if outcome.timed_out and not outcome.message:
            message = "Command timed out"
        if policy.retries and attempts >= policy.attempts:
            message = f"Failed after {attempts} attempts: {message}"

        context = ErrorContext(
            kind=outcome.error_kind or ErrorKind.STEP_FAILURE,
            module_id=self.module_id,
            phase=self.phase,
            phase_name=self.phase_name,
            step=description,
            error=message,
            exit_code=outcome.exit_code,
            output=excerpt(outcome.output),
            attempts=attempts,
        )
        self.errors.append(context)

        # Integrity violations are never downgraded to warnings
        if mode == StepMode.OPTIONAL and context.kind != ErrorKind.INTEGRITY_VIOLATION:
            warning = f"Optional step failed: {description} ({message})"
            self.warnings.append(warning)
            logger.warning("%s", warning)
            return StepResult(
                description=description,
                status="warning",
                exit_code=outcome.exit_code,
                attempts=attempts,
                output=context.output,
                warning=warning,
                error=context,
            )

        self.last_error = context
        logger.error("%s: %s", description, message)
        return StepResult(
            description=description,
            status="failed",
            exit_code=outcome.exit_code,
            attempts=attempts,
            output=context.output,
            error=context,
        )

    # ── Reporting ────────────────────────────────────────────────

    def get_error_context(self) -> str:
        """Human-readable report of the last fatal error."""
        if self.last_error is None:
            return "No error recorded"
        return self.last_error.format_report()

    def get_error_context_json(self) -> dict[str, Any]:
        """Structured record of the last fatal error (empty when none)."""
        if self.last_error is None:
            return {}
        return self.last_error.model_dump(mode="json")
