"""
Status use case — what earlier runs left in the state directory.

Reads .state/current.json and the tail of the audit ledger. Nothing
is executed and the manifest itself is not validated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from flywheel.core.config.loader import find_manifest_file
from flywheel.core.models.state import InstallState
from flywheel.core.persistence.audit import AuditEntry, AuditWriter
from flywheel.core.persistence.state_file import (
    default_state_dir,
    default_state_path,
    load_state,
)


@dataclass
class StatusResult:
    """Recorded install status for one manifest."""

    manifest_path: Path | None = None
    state_dir: Path | None = None
    state: InstallState | None = None
    history: list[AuditEntry] = field(default_factory=list)
    error: str | None = None

    @property
    def has_runs(self) -> bool:
        return bool(self.state and self.state.last_run.run_id)

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        result: dict = {
            "manifest_path": str(self.manifest_path),
            "state_dir": str(self.state_dir),
            "history": [e.model_dump(mode="json") for e in self.history],
        }
        if self.state:
            result["state"] = self.state.model_dump(mode="json")
        return result


def get_status(manifest_path: Path | None = None, history: int = 5) -> StatusResult:
    """Load recorded state and the last ``history`` audit entries."""
    result = StatusResult()

    if manifest_path is None:
        manifest_path = find_manifest_file()
    if manifest_path is None:
        result.error = "No flywheel.manifest.yaml found."
        return result

    result.manifest_path = manifest_path
    result.state_dir = default_state_dir(manifest_path)
    result.state = load_state(default_state_path(manifest_path))
    if history > 0:
        result.history = AuditWriter.in_dir(result.state_dir).read_recent(history)
    return result
