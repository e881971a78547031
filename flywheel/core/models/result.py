"""
Result models — the execution contract between components.

Runners return StepOutcomes. Executable units return ModuleResults.
Failures travel as data (status + error context), never as exceptions
across component boundaries.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# Exit code reported for a step killed by its timeout (matches coreutils `timeout`)
TIMEOUT_EXIT_CODE = 124


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ErrorKind(StrEnum):
    """Failure taxonomy."""

    VALIDATION_ERROR = "validation_error"
    CONTRACT_VIOLATION = "contract_violation"
    INTEGRITY_VIOLATION = "integrity_violation"
    STEP_FAILURE = "step_failure"
    DEPENDENCY_SKIPPED = "dependency_skipped"


class ModuleStatus(StrEnum):
    SUCCESS = "success"
    SKIPPED_FILTERED = "skipped_filtered"
    SKIPPED_DEPENDENCY = "skipped_dependency"
    FAILED = "failed"


class ModuleAction(StrEnum):
    """What a successful (or attempted) module actually did."""

    INSTALLED = "installed"
    ALREADY_INSTALLED = "already_installed"
    DRY_RUN = "dry_run"
    PLACEHOLDER = "placeholder"
    NONE = "none"


class StepOutcome(BaseModel):
    """Raw result of running one command. Runners never raise."""

    exit_code: int = 0
    output: str = ""
    duration_ms: int = 0
    error_kind: ErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error_kind is None

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    @classmethod
    def failure(cls, message: str, exit_code: int = 1, **kwargs: Any) -> StepOutcome:
        kwargs.setdefault("error_kind", ErrorKind.STEP_FAILURE)
        return cls(exit_code=exit_code, message=message, **kwargs)


class ErrorContext(BaseModel):
    """Where and how a step failed.

    The only channel by which failure details leave a component.
    """

    kind: ErrorKind = ErrorKind.STEP_FAILURE
    module_id: str | None = None
    phase: str | None = None
    phase_name: str | None = None
    step: str | None = None
    error: str = ""
    exit_code: int = 0
    output: str = ""
    attempts: int = 1
    time: str = Field(default_factory=_now_iso)

    def format_report(self) -> str:
        """Human-readable multi-line report."""
        lines = [
            "=== Error Context ===",
            f"Phase: {self.phase or 'unknown'} ({self.phase_name or 'unknown'})",
            f"Step: {self.step or 'unknown'}",
            f"Error: {self.error}",
            f"Exit Code: {self.exit_code}",
            f"Time: {self.time}",
        ]
        if self.module_id:
            lines.insert(1, f"Module: {self.module_id}")
        if self.output:
            lines += ["", "=== Output ===", self.output]
        return "\n".join(lines)


class ModuleResult(BaseModel):
    """Outcome of one module in one run."""

    module_id: str
    status: ModuleStatus
    action: ModuleAction = ModuleAction.NONE
    error_kind: ErrorKind | None = None
    error: ErrorContext | None = None
    output: str = ""
    warnings: list[str] = Field(default_factory=list)
    preview: list[str] = Field(default_factory=list)
    attempts: int = 0
    optional: bool = False
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (ModuleStatus.SUCCESS, ModuleStatus.SKIPPED_FILTERED)

    @property
    def failed(self) -> bool:
        return self.status == ModuleStatus.FAILED

    @classmethod
    def success(cls, module_id: str, action: ModuleAction, **kwargs: Any) -> ModuleResult:
        return cls(module_id=module_id, status=ModuleStatus.SUCCESS, action=action, **kwargs)

    @classmethod
    def failure(cls, module_id: str, error: ErrorContext, **kwargs: Any) -> ModuleResult:
        return cls(
            module_id=module_id,
            status=ModuleStatus.FAILED,
            error_kind=error.kind,
            error=error,
            **kwargs,
        )

    @classmethod
    def filtered(cls, module_id: str, **kwargs: Any) -> ModuleResult:
        return cls(module_id=module_id, status=ModuleStatus.SKIPPED_FILTERED, **kwargs)

    @classmethod
    def dependency_skipped(
        cls, module_id: str, blocked_by: list[str], **kwargs: Any
    ) -> ModuleResult:
        return cls(
            module_id=module_id,
            status=ModuleStatus.SKIPPED_DEPENDENCY,
            error_kind=ErrorKind.DEPENDENCY_SKIPPED,
            output=f"not attempted: unresolved dependencies {', '.join(blocked_by)}",
            **kwargs,
        )
