"""
Install use case — the full vertical slice of ``flywheel install``.

Loads the trust store and manifest, builds the execution contract and
runner, plans, executes, and (for live runs) persists state and an
audit entry. Configuration problems come back as ``error`` with exit
code 2; they never raise out of here.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from flywheel.adapters.base import CommandRunner
from flywheel.adapters.shell.command import ShellRunner
from flywheel.core.config.loader import (
    ConfigError,
    ManifestError,
    default_checksums_path,
    find_manifest_file,
    load_manifest_file,
    load_trust_store,
)
from flywheel.core.engine.orchestrator import EXIT_ABORTED, Orchestrator, RunReport
from flywheel.core.engine.planner import ExecutionPlan, SelectionCriteria
from flywheel.core.models.contract import ExecutionContract
from flywheel.core.models.manifest import Manifest
from flywheel.core.models.trust import TrustStore
from flywheel.core.persistence.audit import AuditEntry, AuditWriter
from flywheel.core.persistence.state_file import (
    apply_run,
    default_state_dir,
    default_state_path,
    load_state,
    save_state,
)
from flywheel.core.services.integrity import IntegrityVerifier

logger = logging.getLogger(__name__)


@dataclass
class InstallResult:
    """Result of an install (or plan-only) invocation."""

    report: RunReport | None = None
    plan: ExecutionPlan | None = None
    manifest: Manifest | None = None
    manifest_path: Path | None = None
    state_dir: Path | None = None
    error: str | None = None
    details: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        if self.error or self.report is None:
            return EXIT_ABORTED
        return self.report.exit_code

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error, "details": self.details, "exit_code": self.exit_code}

        result: dict = {
            "manifest_name": self.manifest.name if self.manifest else "",
            "manifest_path": str(self.manifest_path) if self.manifest_path else None,
        }
        if self.report:
            result["report"] = self.report.to_dict()
        elif self.plan:
            result["plan"] = self.plan.to_dict()
        return result


def _load(
    result: InstallResult,
    manifest_path: Path | None,
    checksums_path: Path | None,
    criteria: SelectionCriteria,
) -> TrustStore | None:
    """Shared loading for install and plan. Returns the trust store or None."""
    if manifest_path is None:
        manifest_path = find_manifest_file()
    if manifest_path is None:
        result.error = "No flywheel.manifest.yaml found."
        return None
    result.manifest_path = manifest_path

    try:
        trust_store = load_trust_store(checksums_path or default_checksums_path(manifest_path))
        result.manifest = load_manifest_file(manifest_path, trust_store)
    except ManifestError as e:
        result.error = "Manifest validation failed"
        result.details = e.errors
        return None
    except ConfigError as e:
        result.error = str(e)
        return None

    unknown = criteria.unknown_ids(set(result.manifest.module_ids))
    if unknown:
        result.error = f"Unknown module id(s) in selection: {', '.join(unknown)}"
        return None
    return trust_store


def plan_install(
    manifest_path: Path | None = None,
    checksums_path: Path | None = None,
    criteria: SelectionCriteria | None = None,
) -> InstallResult:
    """Load and plan without executing (``--list-modules``)."""
    criteria = criteria or SelectionCriteria()
    result = InstallResult()
    trust_store = _load(result, manifest_path, checksums_path, criteria)
    if trust_store is None:
        return result

    assert result.manifest is not None
    orchestrator = Orchestrator(
        result.manifest, ShellRunner(ExecutionContract()), ExecutionContract(), trust_store
    )
    result.plan = orchestrator.plan(criteria)
    return result


def run_install(
    manifest_path: Path | None = None,
    checksums_path: Path | None = None,
    criteria: SelectionCriteria | None = None,
    contract: ExecutionContract | None = None,
    dry_run: bool = False,
    max_workers: int = 1,
    resume: bool = False,
    runner: CommandRunner | None = None,
    verifier: IntegrityVerifier | None = None,
    sleep: Callable[[float], None] = time.sleep,
    on_start: Callable[[Orchestrator], None] | None = None,
) -> InstallResult:
    """Install the selected modules.

    Args:
        manifest_path: Explicit manifest; default searches upward from cwd.
        checksums_path: Explicit trust store; default sits beside the manifest.
        criteria: Selection filters (default: everything).
        contract: Execution bindings (default: from the environment).
        dry_run: Preview only; nothing executes, nothing is written.
        max_workers: >1 enables intra-phase parallelism.
        resume: Skip modules the last state file records as succeeded.
        runner: Command runner override (tests use MockRunner).
        verifier: Integrity verifier override.
        sleep: Delay function for retries.
        on_start: Called with the orchestrator before execution begins
            (the CLI uses it to wire signal-driven cancellation).

    Returns:
        InstallResult; ``exit_code`` is 0, 1 or 2.
    """
    criteria = criteria or SelectionCriteria()
    result = InstallResult()
    trust_store = _load(result, manifest_path, checksums_path, criteria)
    if trust_store is None:
        return result

    manifest = result.manifest
    assert manifest is not None and result.manifest_path is not None

    contract = contract or ExecutionContract.from_environ()
    runner = runner or ShellRunner(contract)

    state_dir = default_state_dir(result.manifest_path)
    state_path = default_state_path(result.manifest_path)
    result.state_dir = state_dir

    resume_ids: set[str] = set()
    if resume:
        resume_ids = load_state(state_path).succeeded_modules()
        logger.info("Resuming: %d module(s) already recorded as installed", len(resume_ids))

    orchestrator = Orchestrator(
        manifest,
        runner,
        contract,
        trust_store=trust_store,
        verifier=verifier,
        max_workers=max_workers,
        sleep=sleep,
        resume_ids=resume_ids,
    )
    if on_start is not None:
        on_start(orchestrator)

    plan = orchestrator.plan(criteria)
    report = orchestrator.execute(plan, dry_run=dry_run)
    result.plan = plan
    result.report = report

    if dry_run:
        return result

    # ── Persist ──────────────────────────────────────────────────
    state = load_state(state_path)
    state.manifest_name = manifest.name
    try:
        save_state(apply_run(state, report), state_path)
    except OSError as e:
        logger.warning("Install state not saved: %s", e)

    AuditWriter.in_dir(state_dir).write(
        AuditEntry.from_report(
            report,
            manifest_name=manifest.name,
            context={
                "only_modules": sorted(criteria.only_modules),
                "only_phases": sorted(criteria.only_phases),
                "skip_modules": sorted(criteria.skip_modules),
                "mode": str(contract.mode) if contract.mode else None,
                "resume": resume,
                "max_workers": max_workers,
            },
        )
    )
    return result
