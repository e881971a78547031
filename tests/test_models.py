"""
Tests for domain models — modules, manifest, trust store, contract, results.
"""

import pytest
from pydantic import ValidationError

from flywheel.core.models import (
    CommandStep,
    DescriptionStep,
    ErrorContext,
    ErrorKind,
    ExecutionContract,
    InstallMode,
    Manifest,
    Module,
    ModuleResult,
    ModuleStatus,
    Phase,
    RunAs,
    StepOutcome,
    TrustEntry,
    TrustStore,
    procedure_name,
)

DIGEST = "a" * 64


class TestModule:
    def test_string_steps_become_commands(self):
        m = Module(id="cli.ripgrep", phase=2, install=["apt-get install -y ripgrep"])
        assert isinstance(m.install[0], CommandStep)
        assert m.install[0].run == "apt-get install -y ripgrep"
        assert m.install[0].timeout == 600
        assert m.install[0].attempts == 1

    def test_full_command_step(self):
        m = Module(
            id="cli.ast-grep",
            phase=2,
            install=[{"run": "cargo install ast-grep", "attempts": 3, "timeout": 900}],
        )
        step = m.install[0]
        assert isinstance(step, CommandStep)
        assert step.attempts == 3
        assert step.timeout == 900

    def test_description_step(self):
        m = Module(id="agents.wizard", phase=5, install=[{"description": "Done by the wizard"}])
        assert isinstance(m.install[0], DescriptionStep)
        assert m.is_descriptive
        assert m.command_steps == []

    def test_verified_installer_is_not_descriptive(self):
        m = Module(id="lang.bun", phase=1, verified_installer={"tool": "bun"})
        assert not m.is_descriptive
        assert m.verified_installer.runner == "bash"

    def test_defaults(self):
        m = Module(id="lang.bun", phase=1)
        assert m.run_as == RunAs.TARGET_USER
        assert m.idempotent_check is None
        assert m.generated is True
        assert m.optional is False

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            Module(id="lang.bun", phase=1, installer="nope")

    def test_unknown_step_field_rejected(self):
        with pytest.raises(ValidationError):
            Module(id="lang.bun", phase=1, install=[{"run": "x", "retries": 3}])

    def test_attempts_bounded(self):
        with pytest.raises(ValidationError):
            Module(id="lang.bun", phase=1, install=[{"run": "x", "attempts": 0}])

    def test_frozen(self):
        m = Module(id="lang.bun", phase=1)
        with pytest.raises(ValidationError):
            m.phase = 2

    def test_step_label_is_first_line(self):
        step = CommandStep(run="curl -fsSL x \\\n  | bash")
        assert step.label == "curl -fsSL x \\"


class TestProcedureName:
    def test_dots_and_dashes(self):
        assert procedure_name("lang.bun") == "install_lang_bun"
        assert procedure_name("agents.claude-code") == "install_agents_claude_code"

    def test_distinct_ids_can_collide(self):
        assert procedure_name("a.b-c") == procedure_name("a.b_c")

    def test_module_property(self):
        assert Module(id="db.postgres", phase=3).procedure_name == "install_db_postgres"


class TestManifest:
    def test_phase_bounds_default(self):
        assert Manifest().phase_bounds() == set(range(1, 11))

    def test_phase_bounds_declared(self):
        m = Manifest(phases=(Phase(number=1, id="base"), Phase(number=3, id="tools")))
        assert m.phase_bounds() == {1, 3}

    def test_phase_info_synthesized(self):
        phase = Manifest().phase_info(4)
        assert phase.id == "phase_4"
        assert phase.display_name == "Phase 4"

    def test_get(self):
        a = Module(id="x.a", phase=1)
        b = Module(id="x.b", phase=2, dependencies=["x.a"])
        m = Manifest(modules=(a, b))
        assert m.get("x.b") is b
        assert m.get("x.zzz") is None


class TestTrustStore:
    def test_https_only(self):
        with pytest.raises(ValidationError):
            TrustEntry(url="http://bun.sh/install", sha256=DIGEST)

    def test_sha256_normalized(self):
        entry = TrustEntry(url="https://bun.sh/install", sha256="sha256:" + "AB" * 32)
        assert entry.sha256 == "ab" * 32

    def test_bad_digest(self):
        with pytest.raises(ValidationError):
            TrustEntry(url="https://bun.sh/install", sha256="abc")

    def test_resolve(self):
        store = TrustStore(installers={"bun": {"url": "https://bun.sh/install", "sha256": DIGEST}})
        assert "bun" in store
        assert store.resolve("bun").url == "https://bun.sh/install"
        assert store.resolve("uv") is None


class TestExecutionContract:
    def test_from_environ(self):
        contract = ExecutionContract.from_environ({
            "TARGET_USER": "dev",
            "TARGET_HOME": "/home/dev",
            "FLYWHEEL_MODE": "permissive",
            "SUDO": "sudo",
        })
        assert contract.target_user == "dev"
        assert contract.target_home == "/home/dev"
        assert contract.mode == InstallMode.PERMISSIVE
        assert contract.sudo == "sudo"

    def test_overrides_win(self):
        contract = ExecutionContract.from_environ(
            {"TARGET_USER": "dev", "FLYWHEEL_MODE": "strict", "SUDO": "sudo"},
            target_user="ops",
            mode="permissive",
        )
        assert contract.target_user == "ops"
        assert contract.mode == InstallMode.PERMISSIVE

    def test_unknown_mode_is_unbound(self):
        contract = ExecutionContract.from_environ({"FLYWHEEL_MODE": "yolo", "SUDO": "sudo"})
        assert contract.mode is None

    def test_missing_everything_for_target_user(self):
        contract = ExecutionContract(is_root=False)
        missing = contract.missing_for(Module(id="lang.bun", phase=1))
        assert missing == ["FLYWHEEL_MODE", "TARGET_USER", "TARGET_HOME"]

    def test_root_module_needs_sudo(self):
        contract = ExecutionContract(mode=InstallMode.STRICT, is_root=False)
        missing = contract.missing_for(Module(id="base.apt", phase=1, run_as="root"))
        assert missing == ["SUDO"]

    def test_root_invoker_needs_no_sudo(self):
        contract = ExecutionContract(mode=InstallMode.STRICT, is_root=True)
        assert contract.missing_for(Module(id="base.apt", phase=1, run_as="root")) == []

    def test_current_identity_needs_only_mode(self):
        contract = ExecutionContract(mode=InstallMode.STRICT)
        assert contract.missing_for(Module(id="x.y", phase=1, run_as="current")) == []

    def test_missing_for_all_is_exhaustive(self):
        contract = ExecutionContract(is_root=False)
        report = contract.missing_for_all([
            Module(id="lang.bun", phase=1),
            Module(id="base.apt", phase=1, run_as="root"),
        ])
        assert set(report) == {"lang.bun", "base.apt"}
        assert "SUDO" in report["base.apt"]


class TestResults:
    def test_step_outcome(self):
        assert StepOutcome().ok
        failed = StepOutcome.failure("boom", exit_code=2)
        assert not failed.ok
        assert failed.error_kind == ErrorKind.STEP_FAILURE
        assert StepOutcome.failure("slow", exit_code=124).timed_out

    def test_failure_keeps_explicit_kind(self):
        outcome = StepOutcome.failure("bad hash", error_kind=ErrorKind.INTEGRITY_VIOLATION)
        assert outcome.error_kind == ErrorKind.INTEGRITY_VIOLATION

    def test_error_report(self):
        ctx = ErrorContext(
            module_id="lang.bun",
            phase="phase_1",
            phase_name="Base",
            step="curl ...",
            error="Command exited with code 2",
            exit_code=2,
            output="boom",
        )
        report = ctx.format_report()
        assert report.startswith("=== Error Context ===")
        assert "Module: lang.bun" in report
        assert "Phase: phase_1 (Base)" in report
        assert "Exit Code: 2" in report
        assert "=== Output ===" in report

    def test_module_result_constructors(self):
        skipped = ModuleResult.dependency_skipped("x.b", ["x.a"])
        assert skipped.status == ModuleStatus.SKIPPED_DEPENDENCY
        assert skipped.error_kind == ErrorKind.DEPENDENCY_SKIPPED
        assert "x.a" in skipped.output
        assert not skipped.ok

        assert ModuleResult.filtered("x.c").ok
        failed = ModuleResult.failure("x.d", ErrorContext(error="nope"))
        assert failed.failed
        assert failed.error_kind == ErrorKind.STEP_FAILURE
