"""
Tests for the orchestrator — run states, failure isolation, exit codes.
"""

import threading
import time

import pytest

from flywheel.adapters.mock import MockRunner
from flywheel.core.engine.orchestrator import (
    EXIT_ABORTED,
    EXIT_OK,
    EXIT_PARTIAL_FAILURE,
    Orchestrator,
    RunStatus,
)
from flywheel.core.engine.planner import SelectionCriteria
from flywheel.core.models.contract import ExecutionContract, InstallMode
from flywheel.core.models.result import ErrorKind, ModuleAction, ModuleStatus, StepOutcome

from tests.helpers import build_manifest


def _m(mid, phase=1, deps=(), run="true", **fields):
    fields.setdefault("install", [f"{run} {mid}"])
    return {"id": mid, "phase": phase, "dependencies": list(deps), **fields}


def _orch(modules, runner, contract, sleeps=None, **kwargs):
    sleeps = [] if sleeps is None else sleeps
    return Orchestrator(build_manifest(modules), runner, contract, sleep=sleeps.append, **kwargs)


def _statuses(report):
    return {r.module_id: r.status for r in report.results}


class TestHappyPath:
    def test_completed(self, mock_runner, contract):
        report = _orch([_m("x.a"), _m("x.b", deps=["x.a"])], mock_runner, contract).run()
        assert report.status == RunStatus.COMPLETED
        assert report.exit_code == EXIT_OK
        assert report.succeeded == 2
        assert mock_runner.commands == ["true x.a", "true x.b"]
        assert report.run_id.startswith("run-")
        assert report.started_at and report.ended_at

    def test_status_tracks_run(self, mock_runner, contract):
        orch = _orch([_m("x.a")], mock_runner, contract)
        assert orch.status == RunStatus.INIT
        plan = orch.plan()
        assert orch.status == RunStatus.PLANNING
        orch.execute(plan)
        assert orch.status == RunStatus.COMPLETED

    def test_execute_twice_is_invalid(self, mock_runner, contract):
        orch = _orch([_m("x.a")], mock_runner, contract)
        plan = orch.plan()
        orch.execute(plan)
        with pytest.raises(RuntimeError, match="Invalid run transition"):
            orch.execute(plan)

    def test_rerun_after_plan(self, mock_runner, contract):
        orch = _orch([_m("x.a")], mock_runner, contract)
        orch.run()
        assert orch.run().status == RunStatus.COMPLETED

    def test_empty_manifest(self, mock_runner, contract):
        report = _orch([], mock_runner, contract).run()
        assert report.status == RunStatus.COMPLETED
        assert report.results == []


class TestFailureIsolation:
    def test_dependent_skipped(self, mock_runner, contract):
        mock_runner.fail("true x.a", exit_code=3)
        report = _orch(
            [_m("x.a"), _m("x.b", deps=["x.a"]), _m("x.c")], mock_runner, contract
        ).run()

        assert report.status == RunStatus.PARTIAL_FAILURE
        assert report.exit_code == EXIT_PARTIAL_FAILURE
        assert _statuses(report) == {
            "x.a": ModuleStatus.FAILED,
            "x.b": ModuleStatus.SKIPPED_DEPENDENCY,
            "x.c": ModuleStatus.SUCCESS,
        }
        assert "true x.b" not in mock_runner.commands
        skipped = report.result_for("x.b")
        assert skipped.error_kind == ErrorKind.DEPENDENCY_SKIPPED
        assert "x.a" in skipped.output

    def test_transitive(self, mock_runner, contract):
        mock_runner.fail("true x.a")
        report = _orch(
            [_m("x.a"), _m("x.b", deps=["x.a"]), _m("x.c", deps=["x.b"])], mock_runner, contract
        ).run()
        assert report.result_for("x.c").status == ModuleStatus.SKIPPED_DEPENDENCY
        assert report.failed == 1
        assert report.skipped == 2

    def test_filtered_module_does_not_mask_failure(self, mock_runner, contract):
        mock_runner.fail("true x.a")
        orch = _orch(
            [_m("x.a", 1), _m("x.b", 2, deps=["x.a"]), _m("x.c", 3, deps=["x.b"])],
            mock_runner,
            contract,
        )
        report = orch.run(SelectionCriteria.from_options(only_phase="1,3"))
        assert _statuses(report) == {
            "x.a": ModuleStatus.FAILED,
            "x.b": ModuleStatus.SKIPPED_FILTERED,
            "x.c": ModuleStatus.SKIPPED_DEPENDENCY,
        }
        assert mock_runner.commands == ["true x.a"]
        assert report.status == RunStatus.PARTIAL_FAILURE

    def test_filtered_module_with_healthy_upstream(self, mock_runner, contract):
        orch = _orch(
            [_m("x.a", 1), _m("x.b", 2, deps=["x.a"]), _m("x.c", 3, deps=["x.b"])],
            mock_runner,
            contract,
        )
        report = orch.run(SelectionCriteria.from_options(only_phase="1,3"))
        assert report.result_for("x.c").status == ModuleStatus.SUCCESS
        assert mock_runner.commands == ["true x.a", "true x.c"]

    def test_optional_failure_does_not_block(self, mock_runner, contract):
        mock_runner.fail("true x.a")
        report = _orch(
            [_m("x.a", optional=True), _m("x.b", deps=["x.a"])], mock_runner, contract
        ).run()
        assert report.result_for("x.a").failed
        assert report.result_for("x.b").status == ModuleStatus.SUCCESS
        assert report.status == RunStatus.COMPLETED

    def test_error_contexts_capped(self, mock_runner, contract):
        modules = [_m(f"x.m{i}") for i in range(7)]
        for i in range(7):
            mock_runner.fail(f"true x.m{i}")
        report = _orch(modules, mock_runner, contract).run()
        errors = report.error_contexts()
        assert len(errors) == 5
        assert errors[0].module_id == "x.m0"

    def test_report_dict(self, mock_runner, contract):
        mock_runner.fail("true x.a", output="it broke")
        data = _orch([_m("x.a")], mock_runner, contract).run().to_dict()
        assert data["status"] == "partial_failure"
        assert data["exit_code"] == 1
        assert data["failed"] == 1
        assert data["errors"][0]["output"] == "it broke"
        assert data["results"][0]["status"] == "failed"
        assert data["plan"]["order"] == ["x.a"]


class TestSelection:
    def test_only_assumes_others_satisfied(self, mock_runner, contract):
        orch = _orch([_m("x.a"), _m("x.b", deps=["x.a"])], mock_runner, contract)
        report = orch.run(SelectionCriteria.from_options(only="x.b"))
        assert _statuses(report) == {
            "x.a": ModuleStatus.SKIPPED_FILTERED,
            "x.b": ModuleStatus.SUCCESS,
        }
        assert mock_runner.commands == ["true x.b"]
        assert report.status == RunStatus.COMPLETED

    def test_skip_blocks_dependents(self, mock_runner, contract):
        orch = _orch([_m("x.a"), _m("x.b", deps=["x.a"]), _m("x.c")], mock_runner, contract)
        report = orch.run(SelectionCriteria.from_options(skip="x.a"))
        assert _statuses(report) == {
            "x.a": ModuleStatus.SKIPPED_FILTERED,
            "x.b": ModuleStatus.SKIPPED_DEPENDENCY,
            "x.c": ModuleStatus.SUCCESS,
        }
        assert mock_runner.commands == ["true x.c"]
        assert report.status == RunStatus.COMPLETED

    def test_only_phase(self, mock_runner, contract):
        orch = _orch([_m("x.a", 1), _m("x.b", 2), _m("x.c", 3)], mock_runner, contract)
        report = orch.run(SelectionCriteria.from_options(only_phase="2"))
        assert mock_runner.commands == ["true x.b"]
        assert report.skipped == 2


class TestDryRun:
    def test_previews_and_executes_nothing(self, mock_runner):
        orch = _orch(
            [_m("x.a", idempotent_check="check x.a"), _m("x.b", deps=["x.a"])],
            mock_runner,
            ExecutionContract(),
        )
        mock_runner.fail("check x.a")
        report = orch.run(dry_run=True)
        assert report.dry_run
        assert report.status == RunStatus.COMPLETED
        assert all(r.action == ModuleAction.DRY_RUN for r in report.results)
        assert report.result_for("x.a").preview == ["dry-run: install: true x.a (target_user)"]
        assert mock_runner.commands == ["check x.a"]

    def test_dry_run_does_not_change_live_outcome(self, contract):
        modules = [
            _m("x.a", idempotent_check="check x.a"),
            _m("x.b", deps=["x.a"]),
            _m("x.c", 2),
            _m("x.d", 2, deps=["x.c"]),
        ]

        def sequence(report):
            return [(r.module_id, r.status) for r in report.results]

        def scripted():
            runner = MockRunner()
            runner.fail("check x.a")
            runner.fail("true x.c")
            return runner

        live_only = _orch(modules, scripted(), contract).run()

        runner = scripted()
        _orch(modules, runner, contract).run(dry_run=True)
        after_dry_run = _orch(modules, runner, contract).run()

        assert sequence(after_dry_run) == sequence(live_only)
        assert after_dry_run.status == live_only.status == RunStatus.PARTIAL_FAILURE

    def test_installed_module_not_previewed(self, mock_runner, contract):
        orch = _orch([_m("x.a", idempotent_check="check x.a")], mock_runner, contract)
        report = orch.run(dry_run=True)
        assert report.result_for("x.a").action == ModuleAction.ALREADY_INSTALLED


class TestIdempotency:
    def test_second_run_installs_nothing(self, contract):
        runner = MockRunner()
        runner.script("check x.a", 1, 0)
        modules = [_m("x.a", idempotent_check="check x.a")]

        first = _orch(modules, runner, contract).run()
        assert first.result_for("x.a").action == ModuleAction.INSTALLED

        second = _orch(modules, runner, contract).run()
        assert second.result_for("x.a").action == ModuleAction.ALREADY_INSTALLED
        assert runner.calls_for("true x.a") == 1


class TestContractAbort:
    def test_preflight_reports_everything(self, mock_runner):
        orch = _orch(
            [
                _m("x.a"),
                _m("x.b", run_as="root"),
                _m("x.c", run_as="current"),
                _m("x.d", install=[{"description": "wizard"}]),
            ],
            mock_runner,
            ExecutionContract(mode=InstallMode.STRICT, is_root=False),
        )
        report = orch.run()
        assert report.status == RunStatus.ABORTED
        assert report.exit_code == EXIT_ABORTED
        assert report.abort_reasons == [
            "x.a: missing TARGET_USER, TARGET_HOME",
            "x.b: missing SUDO",
        ]
        assert report.results == []
        assert mock_runner.call_count == 0

    def test_preflight_ignores_unselected(self, mock_runner):
        orch = _orch(
            [_m("x.a"), _m("x.c", run_as="current")],
            mock_runner,
            ExecutionContract(mode=InstallMode.STRICT),
        )
        report = orch.run(SelectionCriteria.from_options(only="x.c"))
        assert report.status == RunStatus.COMPLETED

    def test_violation_mid_run_aborts(self, contract):
        runner = MockRunner()
        runner.respond(
            "true x.a",
            StepOutcome.failure("no sudo", error_kind=ErrorKind.CONTRACT_VIOLATION),
        )
        report = _orch([_m("x.a"), _m("x.b")], runner, contract).run()
        assert report.status == RunStatus.ABORTED
        assert report.abort_reasons[0].startswith("x.a:")
        assert "true x.b" not in runner.commands


class TestCancellation:
    def test_cancel_between_modules(self, contract):
        orch = None

        class CancellingRunner(MockRunner):
            def run(self, command, run_as=None, timeout=600):
                outcome = super().run(command, run_as, timeout)
                if command == "true x.a":
                    orch.cancel()
                return outcome

        runner = CancellingRunner()
        orch = _orch([_m("x.a"), _m("x.b"), _m("x.c")], runner, contract)
        report = orch.run()

        assert report.cancelled
        assert report.status == RunStatus.ABORTED
        assert report.exit_code == EXIT_ABORTED
        assert report.result_for("x.a").status == ModuleStatus.SUCCESS
        assert report.result_for("x.b") is None
        assert runner.commands == ["true x.a"]
        assert "Run cancelled" in report.abort_reasons


class TestResume:
    def test_resumed_modules_not_rerun(self, mock_runner, contract):
        orch = _orch([_m("x.a"), _m("x.b", deps=["x.a"])], mock_runner, contract,
                     resume_ids={"x.a"})
        report = orch.run()
        result = report.result_for("x.a")
        assert result.action == ModuleAction.ALREADY_INSTALLED
        assert result.warnings == ["resumed: recorded as installed by a previous run"]
        assert mock_runner.commands == ["true x.b"]

    def test_resumed_modules_skip_preflight(self, mock_runner):
        orch = _orch(
            [_m("x.a"), _m("x.c", run_as="current")],
            mock_runner,
            ExecutionContract(mode=InstallMode.STRICT),
            resume_ids={"x.a"},
        )
        assert orch.run().status == RunStatus.COMPLETED


class SlowRunner(MockRunner):
    """Tracks how many commands run at once."""

    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0
        self._gauge = threading.Lock()

    def run(self, command, run_as=None, timeout=600):
        with self._gauge:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self._gauge:
            self.active -= 1
        return super().run(command, run_as, timeout)


class TestParallel:
    def test_independent_modules_overlap(self, contract):
        runner = SlowRunner()
        modules = [_m(f"x.m{i}") for i in range(4)]
        report = _orch(modules, runner, contract, max_workers=4).run()
        assert report.status == RunStatus.COMPLETED
        assert runner.peak > 1
        assert [r.module_id for r in report.results] == [f"x.m{i}" for i in range(4)]

    def test_dependencies_respected(self, contract):
        runner = SlowRunner()
        modules = [_m("x.a"), _m("x.b", deps=["x.a"]), _m("x.c", 2, deps=["x.b"])]
        report = _orch(modules, runner, contract, max_workers=4).run()
        assert runner.commands == ["true x.a", "true x.b", "true x.c"]
        assert report.succeeded == 3

    def test_failure_isolation_in_parallel(self, contract):
        runner = MockRunner()
        runner.fail("true x.a")
        modules = [_m("x.a"), _m("x.b"), _m("x.c", 2, deps=["x.a"])]
        report = _orch(modules, runner, contract, max_workers=3).run()
        assert report.result_for("x.c").status == ModuleStatus.SKIPPED_DEPENDENCY
        assert report.result_for("x.b").status == ModuleStatus.SUCCESS
        assert report.exit_code == EXIT_PARTIAL_FAILURE

