"""
InstallState — what previous runs left behind.

Serialized to .state/current.json after every live (non dry-run) run.
It is disposable: delete it and the next run simply re-checks every
module through its idempotent check. ``--resume`` reads it to skip
modules that already succeeded.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ModuleState(BaseModel):
    """Last known outcome of a module."""

    id: str
    last_status: str | None = None   # success, failed, skipped_dependency, ...
    last_action: str | None = None   # installed, already_installed, ...
    last_run_at: str | None = None
    attempts: int = 0


class RunRecord(BaseModel):
    """Summary of the last run."""

    run_id: str = ""
    started_at: str = ""
    ended_at: str = ""
    status: str = ""                 # completed, partial_failure, aborted
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class InstallState(BaseModel):
    """Root state model — serialized to .state/current.json."""

    schema_version: int = 1
    manifest_name: str = ""

    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    modules: dict[str, ModuleState] = Field(default_factory=dict)
    last_run: RunRecord = Field(default_factory=RunRecord)

    metadata: dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def set_module_state(self, module_id: str, **kwargs: Any) -> None:
        """Update or create a module state entry."""
        if module_id in self.modules:
            for key, value in kwargs.items():
                setattr(self.modules[module_id], key, value)
        else:
            self.modules[module_id] = ModuleState(id=module_id, **kwargs)

    def succeeded_modules(self) -> set[str]:
        """Ids whose last recorded status was success."""
        return {mid for mid, ms in self.modules.items() if ms.last_status == "success"}
