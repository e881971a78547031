"""
Procedure generator — compile a Manifest into executable units.

Every module becomes an ExecutableUnit that runs the same six gates,
in order, whatever it installs:

    1. selection     excluded by the run's filters → skipped_filtered
    2. idempotency   idempotent_check passes → success, nothing done
    3. dry-run       render the preview, execute nothing → success
    4. contract      a missing binding → contract_violation
    5. execution     verified installer (through the integrity
                     verifier), then install steps, each through the
                     step tracker
    6. verification  verify steps; optional failures become warnings

Modules with nothing to execute (only description steps) compile to
placeholders. Modules marked ``generated: false`` are left out entirely
and handled outside this installer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from flywheel.adapters.base import CommandRunner
from flywheel.core.models.contract import ExecutionContract
from flywheel.core.models.manifest import Manifest, Phase
from flywheel.core.models.module import CommandStep, DescriptionStep, Module, RunAs, Step
from flywheel.core.models.result import (
    ErrorContext,
    ErrorKind,
    ModuleAction,
    ModuleResult,
    StepOutcome,
)
from flywheel.core.reliability.retry import RetryPolicy
from flywheel.core.reliability.step_tracker import StepMode, StepResult, StepTracker
from flywheel.core.services.integrity import IntegrityVerifier

logger = logging.getLogger(__name__)

IDEMPOTENT_CHECK_TIMEOUT = 60

# Download failures only; hash mismatches are NON_RETRYABLE
VERIFIED_INSTALLER_POLICY = RetryPolicy(attempts=3, delay=5.0)


@dataclass
class RunContext:
    """Everything a unit needs to execute, shared by all units of a run."""

    runner: CommandRunner
    contract: ExecutionContract
    verifier: IntegrityVerifier | None = None
    dry_run: bool = False
    sleep: Callable[[float], None] = time.sleep


def step_mode(step: CommandStep, force_optional: bool = False) -> StepMode:
    if step.optional or force_optional:
        return StepMode.OPTIONAL
    if step.attempts > 1:
        return StepMode.RETRYING
    return StepMode.STRICT


def render_preview(module: Module, contract: ExecutionContract | None = None) -> list[str]:
    """Dry-run lines for every action ``module`` would take."""
    identity = str(module.run_as)
    if contract is not None and module.run_as == RunAs.TARGET_USER and contract.target_user:
        identity = f"target_user={contract.target_user}"

    lines: list[str] = []
    vi = module.verified_installer
    if vi is not None:
        args = " ".join(vi.args)
        lines.append(
            f"dry-run: verified installer: {vi.tool} via {vi.runner}"
            + (f" {args}" if args else "")
            + f" ({identity})"
        )
    lines.extend(_preview_steps("install", module.install, identity))
    lines.extend(_preview_steps("verify", module.verify, identity))
    return lines


def _preview_steps(section: str, steps: tuple[Step, ...], identity: str) -> list[str]:
    lines = []
    for step in steps:
        if isinstance(step, DescriptionStep):
            lines.append(f"dry-run: note: {step.description}")
        else:
            lines.append(f"dry-run: {section}: {step.label} ({identity})")
    return lines


@dataclass(frozen=True)
class ExecutableUnit:
    """A compiled module: the six-gate procedure for one module."""

    module: Module
    phase: Phase
    placeholder: bool = False

    @property
    def id(self) -> str:
        return self.module.id

    @property
    def procedure_name(self) -> str:
        return self.module.procedure_name

    def execute(self, ctx: RunContext, selected: bool = True) -> ModuleResult:
        """Run the gates. Never raises; failures come back as results."""
        module = self.module
        start = time.monotonic()

        # 1. selection
        if not selected:
            logger.debug("%s: not selected", module.id)
            return ModuleResult.filtered(module.id, optional=module.optional)

        if self.placeholder:
            logger.info("%s: placeholder (no executable steps)", module.id)
            return ModuleResult.success(
                module.id,
                ModuleAction.PLACEHOLDER,
                optional=module.optional,
                preview=render_preview(module) if ctx.dry_run else [],
            )

        tracker = StepTracker(module_id=module.id, sleep=ctx.sleep)
        tracker.set_phase(self.phase.id, self.phase.display_name)

        # 2. idempotency
        if self._already_installed(ctx):
            logger.info("%s: already installed", module.id)
            return ModuleResult.success(
                module.id,
                ModuleAction.ALREADY_INSTALLED,
                optional=module.optional,
                duration_ms=_elapsed_ms(start),
            )

        # 3. dry-run
        if ctx.dry_run:
            preview = render_preview(module, ctx.contract)
            for line in preview:
                logger.info("%s", line)
            return ModuleResult.success(
                module.id, ModuleAction.DRY_RUN, optional=module.optional, preview=preview
            )

        # 4. contract
        missing = ctx.contract.missing_for(module)
        if missing:
            error = ErrorContext(
                kind=ErrorKind.CONTRACT_VIOLATION,
                module_id=module.id,
                phase=self.phase.id,
                phase_name=self.phase.display_name,
                step="contract check",
                error=f"Missing execution contract bindings: {', '.join(missing)}",
            )
            return ModuleResult.failure(module.id, error, optional=module.optional)

        # 5. execution
        attempts = 0
        if module.verified_installer is not None:
            step = self._run_verified_installer(ctx, tracker)
            attempts += step.attempts
            if not step.ok:
                return self._failed(step, tracker, attempts, start)

        for cmd in module.command_steps:
            step = tracker.run_step(
                cmd.label,
                self._command_action(ctx, cmd),
                mode=step_mode(cmd),
                policy=RetryPolicy.for_step(cmd),
            )
            attempts += step.attempts
            if not step.ok:
                return self._failed(step, tracker, attempts, start)

        # 6. verification
        last_output = ""
        for cmd in (s for s in module.verify if isinstance(s, CommandStep)):
            step = tracker.run_step(
                f"verify: {cmd.label}",
                self._command_action(ctx, cmd),
                mode=step_mode(cmd, force_optional=module.optional),
                policy=RetryPolicy.for_step(cmd),
            )
            attempts += step.attempts
            if not step.ok:
                return self._failed(step, tracker, attempts, start)
            last_output = step.output or last_output

        tracker.clear_phase()
        return ModuleResult.success(
            module.id,
            ModuleAction.INSTALLED,
            optional=module.optional,
            warnings=list(tracker.warnings),
            output=last_output,
            attempts=attempts,
            duration_ms=_elapsed_ms(start),
        )

    # ── Gate helpers ────────────────────────────────────────────

    def _already_installed(self, ctx: RunContext) -> bool:
        check = self.module.idempotent_check
        if not check:
            return False
        outcome = ctx.runner.run(check, self.module.run_as, IDEMPOTENT_CHECK_TIMEOUT)
        if outcome.error_kind == ErrorKind.CONTRACT_VIOLATION:
            logger.debug("%s: idempotent check skipped: %s", self.module.id, outcome.message)
            return False
        return outcome.ok

    def _command_action(self, ctx: RunContext, cmd: CommandStep) -> Callable[[], StepOutcome]:
        run_as = self.module.run_as
        return lambda: ctx.runner.run(cmd.run, run_as, cmd.timeout)

    def _run_verified_installer(self, ctx: RunContext, tracker: StepTracker) -> StepResult:
        vi = self.module.verified_installer
        assert vi is not None
        verifier = ctx.verifier

        def _action() -> StepOutcome:
            if verifier is None:
                return StepOutcome.failure(
                    f"No integrity verifier configured for installer '{vi.tool}'",
                    error_kind=ErrorKind.INTEGRITY_VIOLATION,
                )
            return verifier.fetch_and_run(vi.tool, vi.runner, self.module.run_as, vi.args)

        return tracker.run_step(
            f"verified installer: {vi.tool}",
            _action,
            mode=StepMode.RETRYING,
            policy=VERIFIED_INSTALLER_POLICY,
        )

    def _failed(
        self, step: StepResult, tracker: StepTracker, attempts: int, start: float
    ) -> ModuleResult:
        assert step.error is not None
        return ModuleResult.failure(
            self.module.id,
            step.error,
            optional=self.module.optional,
            output=step.output,
            warnings=list(tracker.warnings),
            attempts=attempts,
            duration_ms=_elapsed_ms(start),
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@dataclass
class CompiledManifest:
    """Units in manifest order, plus the ids left to external tooling."""

    units: list[ExecutableUnit] = field(default_factory=list)
    omitted: list[str] = field(default_factory=list)

    def get(self, module_id: str) -> ExecutableUnit | None:
        for unit in self.units:
            if unit.id == module_id:
                return unit
        return None


def compile_manifest(manifest: Manifest) -> CompiledManifest:
    """Compile every module of a validated manifest.

    Raises:
        ValueError: If two modules map to one procedure name. The
            validator rejects such manifests; this only guards against
            a Manifest built without it.
    """
    compiled = CompiledManifest()
    procedures: dict[str, str] = {}

    for module in manifest.modules:
        owner = procedures.setdefault(module.procedure_name, module.id)
        if owner != module.id:
            raise ValueError(
                f"Procedure name collision: {owner}, {module.id} "
                f"both map to '{module.procedure_name}'"
            )

        if not module.generated:
            logger.debug("%s: generated=false, left to external orchestration", module.id)
            compiled.omitted.append(module.id)
            continue

        compiled.units.append(
            ExecutableUnit(
                module=module,
                phase=manifest.phase_info(module.phase),
                placeholder=module.is_descriptive,
            )
        )

    logger.debug(
        "Compiled %d units (%d placeholders, %d omitted)",
        len(compiled.units),
        sum(1 for u in compiled.units if u.placeholder),
        len(compiled.omitted),
    )
    return compiled
