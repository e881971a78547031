"""
Audit ledger — append-only install history.

Every live run appends one entry to .state/audit.ndjson: which modules
ran, how each ended, and the first error contexts. Entries are never
modified or deleted. Dry-runs write nothing.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from flywheel.core.engine.orchestrator import RunReport

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_FILE = "audit.ndjson"


class AuditEntry(BaseModel):
    """A single audit log entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    manifest_name: str = ""

    # What happened
    status: str = ""               # completed, partial_failure, aborted
    modules: dict[str, str] = Field(default_factory=dict)   # id → module status
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0

    # Errors (if any), already sanitized
    errors: list[str] = Field(default_factory=list)

    # Selection and contract snapshot
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_report(
        cls,
        report: RunReport,
        manifest_name: str = "",
        context: dict[str, Any] | None = None,
    ) -> AuditEntry:
        errors = [f"{e.module_id}: {e.error}" for e in report.error_contexts()]
        return cls(
            run_id=report.run_id,
            manifest_name=manifest_name,
            status=str(report.status),
            modules={r.module_id: str(r.status) for r in report.results},
            succeeded=report.succeeded,
            skipped=report.skipped,
            failed=report.failed,
            errors=report.abort_reasons + errors,
            context=context or {},
        )


class AuditWriter:
    """Append-only audit ledger writer."""

    def __init__(self, path: Path):
        self._path = path

    @classmethod
    def in_dir(cls, state_dir: Path) -> AuditWriter:
        return cls(state_dir / DEFAULT_AUDIT_FILE)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        """Append one entry. A write failure is logged, never raised."""
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Audit entry written: %s (%s)", entry.run_id, entry.status)
        except OSError as e:
            logger.error("Failed to write audit entry: %s", e)

    def read_all(self) -> list[AuditEntry]:
        """All entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(AuditEntry.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, PydanticValidationError) as e:
                        logger.warning("Skipping corrupt audit entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read audit ledger: %s", e)

        return entries

    def read_recent(self, n: int = 20) -> list[AuditEntry]:
        return self.read_all()[-n:]
