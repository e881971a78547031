"""
Orchestrator — drive a plan to completion and decide the outcome.

State machine for one run:

    INIT → PLANNING → EXECUTING → COMPLETED
                               → PARTIAL_FAILURE
                  ↘            → ABORTED
                   ABORTED (pre-flight contract check)

Failure isolation: when a non-optional module fails, every module that
depends on it (transitively) is reported ``skipped_dependency`` and
never attempted. Modules excluded with --skip count as unresolved for
their dependents; modules outside --only / --only-phase are assumed to
be satisfied already.

Execution is sequential by default. With ``max_workers > 1`` units of
the same phase whose dependencies are settled run on a thread pool;
package manager calls stay serialized by the runner's lock.

Cancellation (``cancel()``, normally from a signal handler) is honored
between modules only. Finished modules are left as they are.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from flywheel.adapters.base import CommandRunner
from flywheel.core.engine.generator import RunContext, compile_manifest
from flywheel.core.engine.planner import (
    EXCLUDED_BY_FILTER,
    EXCLUDED_BY_SKIP,
    ExecutionPlan,
    PlanEntry,
    SelectionCriteria,
    build_plan,
    get_ready_entries,
)
from flywheel.core.models.contract import ExecutionContract
from flywheel.core.models.manifest import Manifest
from flywheel.core.models.result import (
    ErrorContext,
    ErrorKind,
    ModuleAction,
    ModuleResult,
    ModuleStatus,
)
from flywheel.core.models.trust import TrustStore
from flywheel.core.services.integrity import IntegrityVerifier

logger = logging.getLogger(__name__)

# Error contexts shown in the run summary
MAX_REPORTED_ERRORS = 5

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_ABORTED = 2


class RunStatus(StrEnum):
    INIT = "init"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.INIT: {RunStatus.PLANNING},
    RunStatus.PLANNING: {RunStatus.EXECUTING, RunStatus.ABORTED},
    RunStatus.EXECUTING: {RunStatus.COMPLETED, RunStatus.PARTIAL_FAILURE, RunStatus.ABORTED},
}

_EXIT_CODES = {
    RunStatus.COMPLETED: EXIT_OK,
    RunStatus.PARTIAL_FAILURE: EXIT_PARTIAL_FAILURE,
    RunStatus.ABORTED: EXIT_ABORTED,
}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class RunReport:
    """Everything one run produced."""

    run_id: str = ""
    status: RunStatus = RunStatus.INIT
    dry_run: bool = False
    started_at: str = ""
    ended_at: str = ""
    results: list[ModuleResult] = field(default_factory=list)
    plan: ExecutionPlan | None = None
    abort_reasons: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == ModuleStatus.SUCCESS)

    @property
    def skipped(self) -> int:
        return sum(
            1 for r in self.results
            if r.status in (ModuleStatus.SKIPPED_FILTERED, ModuleStatus.SKIPPED_DEPENDENCY)
        )

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.failed)

    @property
    def warnings(self) -> list[str]:
        return [w for r in self.results for w in r.warnings]

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES.get(self.status, EXIT_ABORTED)

    def result_for(self, module_id: str) -> ModuleResult | None:
        for r in self.results:
            if r.module_id == module_id:
                return r
        return None

    def error_contexts(self, limit: int = MAX_REPORTED_ERRORS) -> list[ErrorContext]:
        """First ``limit`` error contexts, in plan order."""
        return [r.error for r in self.results if r.failed and r.error][:limit]

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": str(self.status),
            "exit_code": self.exit_code,
            "dry_run": self.dry_run,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "cancelled": self.cancelled,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "abort_reasons": self.abort_reasons,
            "errors": [e.model_dump(mode="json") for e in self.error_contexts()],
            "results": [r.model_dump(mode="json") for r in self.results],
            "plan": self.plan.to_dict() if self.plan else None,
        }


class Orchestrator:
    """Plans and executes one manifest against one execution contract."""

    def __init__(
        self,
        manifest: Manifest,
        runner: CommandRunner,
        contract: ExecutionContract,
        trust_store: TrustStore | None = None,
        verifier: IntegrityVerifier | None = None,
        max_workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        resume_ids: set[str] | None = None,
    ):
        self._manifest = manifest
        self._runner = runner
        self._contract = contract
        self._verifier = verifier or IntegrityVerifier(trust_store or TrustStore(), runner)
        self._max_workers = max(1, max_workers)
        self._sleep = sleep
        self._resume_ids = set(resume_ids or ())
        self._cancel = threading.Event()
        self._status = RunStatus.INIT

    @property
    def status(self) -> RunStatus:
        return self._status

    def cancel(self) -> None:
        """Stop at the next module boundary."""
        logger.warning("Cancellation requested; stopping after the current module")
        self._cancel.set()

    def _transition(self, new: RunStatus) -> None:
        if new not in _TRANSITIONS.get(self._status, set()):
            raise RuntimeError(f"Invalid run transition: {self._status} → {new}")
        logger.debug("Run status: %s → %s", self._status, new)
        self._status = new

    # ── Planning ────────────────────────────────────────────────

    def plan(self, criteria: SelectionCriteria | None = None) -> ExecutionPlan:
        """Compile the manifest and order it for this run's selection."""
        self._status = RunStatus.INIT
        self._transition(RunStatus.PLANNING)
        criteria = criteria or SelectionCriteria()

        unknown = criteria.unknown_ids(set(self._manifest.module_ids))
        if unknown:
            logger.warning("Selection names unknown module(s): %s", ", ".join(unknown))

        plan = build_plan(compile_manifest(self._manifest), criteria)
        logger.info(
            "Planned %d module(s), %d selected", len(plan.entries), len(plan.selected)
        )
        return plan

    def preflight(self, plan: ExecutionPlan) -> list[str]:
        """Every missing contract binding for the selected units, at once."""
        modules = [
            e.unit.module for e in plan.selected
            if not e.unit.placeholder and e.unit.id not in self._resume_ids
        ]
        report = self._contract.missing_for_all(modules)
        return [f"{mid}: missing {', '.join(names)}" for mid, names in report.items()]

    # ── Execution ───────────────────────────────────────────────

    def execute(self, plan: ExecutionPlan, dry_run: bool = False) -> RunReport:
        """Run a plan produced by ``plan()``."""
        report = RunReport(
            run_id=f"run-{uuid.uuid4().hex[:12]}",
            dry_run=dry_run,
            started_at=_now_iso(),
            plan=plan,
        )

        if not dry_run:
            reasons = self.preflight(plan)
            if reasons:
                for reason in reasons:
                    logger.error("Contract violation: %s", reason)
                report.abort_reasons = reasons
                return self._finish(report, RunStatus.ABORTED)

        self._transition(RunStatus.EXECUTING)
        ctx = RunContext(
            runner=self._runner,
            contract=self._contract,
            verifier=self._verifier,
            dry_run=dry_run,
            sleep=self._sleep,
        )

        state = _ExecutionState()
        if self._max_workers > 1:
            self._execute_parallel(plan, ctx, state)
        else:
            for entry in plan.entries:
                if self._should_stop(state):
                    break
                self._record(entry, self._run_entry(entry, ctx, state), state)

        report.results = [state.results[e.unit.id] for e in plan.entries if e.unit.id in state.results]
        report.cancelled = self._cancel.is_set()

        if state.abort_reason or report.cancelled:
            report.abort_reasons.append(state.abort_reason or "Run cancelled")
            return self._finish(report, RunStatus.ABORTED)
        if any(r.failed and not r.optional for r in report.results):
            return self._finish(report, RunStatus.PARTIAL_FAILURE)
        return self._finish(report, RunStatus.COMPLETED)

    def run(self, criteria: SelectionCriteria | None = None, dry_run: bool = False) -> RunReport:
        """plan() then execute()."""
        return self.execute(self.plan(criteria), dry_run=dry_run)

    # ── Internals ───────────────────────────────────────────────

    def _should_stop(self, state: _ExecutionState) -> bool:
        return self._cancel.is_set() or state.abort_reason is not None

    def _run_entry(self, entry: PlanEntry, ctx: RunContext, state: _ExecutionState) -> ModuleResult:
        module = entry.unit.module
        if entry.selected:
            with state.lock:
                blocked_by = [d for d in module.dependencies if d in state.unresolved]
            if blocked_by:
                logger.warning("%s: skipped, unresolved dependencies %s", module.id, blocked_by)
                return ModuleResult.dependency_skipped(
                    module.id, blocked_by, optional=module.optional
                )
            if module.id in self._resume_ids:
                logger.info("%s: recorded as installed by a previous run", module.id)
                return ModuleResult.success(
                    module.id,
                    ModuleAction.ALREADY_INSTALLED,
                    optional=module.optional,
                    warnings=["resumed: recorded as installed by a previous run"],
                )
        return entry.unit.execute(ctx, selected=entry.selected)

    def _record(self, entry: PlanEntry, result: ModuleResult, state: _ExecutionState) -> None:
        uid = entry.unit.id
        with state.lock:
            state.results[uid] = result
            if entry.excluded_by == EXCLUDED_BY_SKIP:
                state.unresolved.add(uid)
            elif entry.excluded_by == EXCLUDED_BY_FILTER and any(
                d in state.unresolved for d in entry.unit.module.dependencies
            ):
                # Filtered modules stay satisfied only while their upstream is
                state.unresolved.add(uid)
            elif result.status == ModuleStatus.SKIPPED_DEPENDENCY:
                state.unresolved.add(uid)
            elif result.failed and not result.optional:
                state.unresolved.add(uid)

            if result.error_kind == ErrorKind.CONTRACT_VIOLATION and state.abort_reason is None:
                state.abort_reason = (
                    f"{uid}: {result.error.error if result.error else 'contract violation'}"
                )

        if result.failed:
            logger.error("%s: failed (%s)", uid, result.error_kind)
        else:
            logger.info("%s: %s", uid, result.status)

    def _execute_parallel(
        self, plan: ExecutionPlan, ctx: RunContext, state: _ExecutionState
    ) -> None:
        for batch in plan.phase_batches():
            completed: set[str] = set()
            while len(completed) < len(batch):
                if self._should_stop(state):
                    return
                ready = get_ready_entries(batch, completed, set())
                if not ready:
                    break

                if len(ready) == 1:
                    entry = ready[0]
                    self._record(entry, self._run_entry(entry, ctx, state), state)
                    completed.add(entry.unit.id)
                    continue

                with concurrent.futures.ThreadPoolExecutor(
                    max_workers=min(self._max_workers, len(ready)),
                    thread_name_prefix="flywheel",
                ) as pool:
                    futures = {pool.submit(self._run_entry, e, ctx, state): e for e in ready}
                    for future in concurrent.futures.as_completed(futures):
                        entry = futures[future]
                        self._record(entry, future.result(), state)
                        completed.add(entry.unit.id)

    def _finish(self, report: RunReport, status: RunStatus) -> RunReport:
        self._transition(status)
        report.status = status
        report.ended_at = _now_iso()
        logger.info(
            "Run %s: %s (%d succeeded, %d skipped, %d failed)",
            report.run_id, status, report.succeeded, report.skipped, report.failed,
        )
        return report


@dataclass
class _ExecutionState:
    results: dict[str, ModuleResult] = field(default_factory=dict)
    unresolved: set[str] = field(default_factory=set)
    abort_reason: str | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)
