"""
Flywheel — CLI entrypoint.

Usage:
    flywheel --help
    flywheel install --dry-run
    flywheel install --only lang.bun,agents.claude-code
    flywheel manifest check
    flywheel session sanitize export.json
"""

from __future__ import annotations

import json
import os
import signal
import sys
from pathlib import Path

import click

from flywheel import __version__
from flywheel.core.observability.logging_config import resolve_level, setup_logging

_STATUS_ICONS = {
    "success": ("✅", "green"),
    "skipped_filtered": ("⏭️ ", "white"),
    "skipped_dependency": ("⛔", "yellow"),
    "failed": ("❌", "red"),
}

_RUN_STATUS_COLORS = {"completed": "green", "partial_failure": "yellow", "aborted": "red"}


@click.group()
@click.version_option(version=__version__, prog_name="flywheel")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--manifest",
    "-m",
    "manifest_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to flywheel.manifest.yaml (default: auto-detect).",
)
@click.option(
    "--checksums",
    "checksums_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to checksums.yaml (default: next to the manifest).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    manifest_path: str | None,
    checksums_path: str | None,
) -> None:
    """Flywheel — declarative workstation installer."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["manifest_path"] = Path(manifest_path) if manifest_path else None
    ctx.obj["checksums_path"] = Path(checksums_path) if checksums_path else None

    setup_logging(
        level=resolve_level(debug, verbose, quiet, os.environ.get("FLYWHEEL_LOG_LEVEL")),
        log_file=os.environ.get("FLYWHEEL_LOG_FILE"),
        log_file_level=os.environ.get("FLYWHEEL_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
    )


# ── install ─────────────────────────────────────────────────────


@cli.command()
@click.option("--dry-run", is_flag=True, help="Preview every action without executing any.")
@click.option("--only", "only", default=None, help="Comma-separated module ids to run.")
@click.option("--only-phase", "only_phase", default=None, help="Comma-separated phase numbers.")
@click.option("--skip", "skip", default=None, help="Comma-separated module ids to leave out.")
@click.option("--list-modules", is_flag=True, help="Show the ordered plan and exit.")
@click.option("--parallel", type=click.IntRange(min=1), default=1, show_default=True,
              help="Workers per phase for independent modules.")
@click.option("--resume", is_flag=True, help="Skip modules the last run installed.")
@click.option("--target-user", default=None, help="Overrides $TARGET_USER.")
@click.option("--target-home", default=None, help="Overrides $TARGET_HOME.")
@click.option("--mode", type=click.Choice(["strict", "permissive"]), default=None,
              help="Overrides $FLYWHEEL_MODE.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    dry_run: bool,
    only: str | None,
    only_phase: str | None,
    skip: str | None,
    list_modules: bool,
    parallel: int,
    resume: bool,
    target_user: str | None,
    target_home: str | None,
    mode: str | None,
    as_json: bool,
) -> None:
    """Install the modules declared in the manifest."""
    from flywheel.core.engine.planner import SelectionCriteria
    from flywheel.core.models.contract import ExecutionContract
    from flywheel.core.use_cases.install import plan_install, run_install

    try:
        criteria = SelectionCriteria.from_options(only, only_phase, skip)
    except ValueError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(2)

    if list_modules:
        result = plan_install(
            manifest_path=ctx.obj.get("manifest_path"),
            checksums_path=ctx.obj.get("checksums_path"),
            criteria=criteria,
        )
        if as_json:
            click.echo(json.dumps(result.to_dict(), indent=2))
        elif not result.error:
            _print_plan(result)
        if result.error:
            if not as_json:
                _print_error(result.error, result.details)
            sys.exit(result.exit_code)
        return

    contract = ExecutionContract.from_environ(
        target_user=target_user, target_home=target_home, mode=mode
    )

    previous_handlers: dict[int, object] = {}
    try:
        result = run_install(
            manifest_path=ctx.obj.get("manifest_path"),
            checksums_path=ctx.obj.get("checksums_path"),
            criteria=criteria,
            contract=contract,
            dry_run=dry_run,
            max_workers=parallel,
            resume=resume,
            on_start=lambda orch: previous_handlers.update(_install_signal_handlers(orch)),
        )
    finally:
        for sig, handler in previous_handlers.items():
            if handler is not None:
                signal.signal(sig, handler)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        _print_error(result.error, result.details)
        sys.exit(result.exit_code)

    _print_report(result, quiet=ctx.obj.get("quiet", False))
    sys.exit(result.exit_code)


def _install_signal_handlers(orchestrator) -> dict[int, object]:
    """SIGINT/SIGTERM stop the run at the next module boundary.

    Returns the handlers that were replaced, for restoring afterwards.
    """

    def _handler(signum, frame):
        orchestrator.cancel()

    previous: dict[int, object] = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # Not the main thread (embedded use); no signal wiring
            break
    return previous


def _print_error(error: str, details: list[str]) -> None:
    click.secho(f"❌ {error}", fg="red", bold=True)
    for detail in details:
        click.echo(f"   • {detail}")


def _print_plan(result) -> None:
    plan = result.plan
    assert plan is not None
    click.secho(f"\n📋 {result.manifest.name or 'Install plan'}", fg="cyan", bold=True)
    current_phase = None
    for entry in plan.entries:
        unit = entry.unit
        if unit.phase.number != current_phase:
            current_phase = unit.phase.number
            click.secho(f"\n   Phase {current_phase}: {unit.phase.display_name}", bold=True)
        marker = "•" if entry.selected else "-"
        notes = []
        if unit.placeholder:
            notes.append("placeholder")
        if unit.module.optional:
            notes.append("optional")
        if not entry.selected:
            notes.append(f"excluded by {entry.excluded_by}")
        suffix = f"  ({', '.join(notes)})" if notes else ""
        line = f"     {marker} {unit.id}{suffix}"
        click.secho(line, dim=not entry.selected)
    if plan.omitted:
        click.echo(f"\n   Handled externally: {', '.join(plan.omitted)}")
    click.echo()


def _print_report(result, quiet: bool = False) -> None:
    report = result.report
    assert report is not None

    if not quiet:
        title = "🔎 Dry run" if report.dry_run else "🚀 Install"
        click.secho(f"\n{title}: {result.manifest.name or result.manifest_path}", fg="cyan", bold=True)
        for r in report.results:
            icon, color = _STATUS_ICONS.get(str(r.status), ("•", "white"))
            action = f" [{r.action}]" if r.action != "none" else ""
            click.secho(f"   {icon} {r.module_id}{action}", fg=color)
            for line in r.preview:
                click.echo(f"        {line}")
            for warning in r.warnings:
                click.secho(f"        ⚠️  {warning}", fg="yellow")
            if str(r.status) == "skipped_dependency" and r.output:
                click.echo(f"        {r.output}")

    click.echo()
    click.echo(
        f"   Succeeded: {report.succeeded}   Skipped: {report.skipped}   Failed: {report.failed}"
    )

    for reason in report.abort_reasons:
        click.secho(f"   ⛔ {reason}", fg="red")

    errors = report.error_contexts()
    if errors:
        click.echo()
        for error in errors:
            click.secho(error.format_report(), fg="red")
            click.echo()

    color = _RUN_STATUS_COLORS.get(str(report.status), "white")
    click.secho(f"   Status: {report.status} (exit {report.exit_code})", fg=color, bold=True)
    click.echo()


# ── manifest ────────────────────────────────────────────────────


@cli.group()
def manifest() -> None:
    """Manifest commands."""


@manifest.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def manifest_check(ctx: click.Context, as_json: bool) -> None:
    """Validate flywheel.manifest.yaml and its trust store."""
    from flywheel.core.use_cases.manifest_check import check_manifest

    result = check_manifest(
        manifest_path=ctx.obj.get("manifest_path"),
        checksums_path=ctx.obj.get("checksums_path"),
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    if result.valid:
        assert result.manifest is not None  # guaranteed when valid
        click.secho("✅ Manifest is valid", fg="green", bold=True)
        click.echo(f"   Manifest: {result.manifest.name or result.manifest_path}")
        click.echo(f"   Modules: {len(result.manifest.modules)}")
    else:
        click.secho("❌ Manifest errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


# ── status ──────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--history", default=5, show_default=True, help="Number of past runs to show.")
@click.pass_context
def status(ctx: click.Context, as_json: bool, history: int) -> None:
    """Show what previous install runs recorded."""
    from flywheel.core.use_cases.status import get_status

    result = get_status(manifest_path=ctx.obj.get("manifest_path"), history=history)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(1 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    if not result.has_runs:
        click.echo(f"No install runs recorded in {result.state_dir}")
        return

    state = result.state
    assert state is not None  # guaranteed by has_runs
    last = state.last_run
    color = _RUN_STATUS_COLORS.get(last.status, "white")
    click.secho(f"\n📋 {state.manifest_name or result.manifest_path}", fg="cyan", bold=True)
    click.secho(f"   Last run: {last.run_id} {last.status}", fg=color, bold=True)
    click.echo(
        f"   Succeeded: {last.succeeded}   Skipped: {last.skipped}   Failed: {last.failed}"
    )

    if not ctx.obj.get("quiet", False):
        click.echo()
        for mid, ms in sorted(state.modules.items()):
            icon, mcolor = _STATUS_ICONS.get(ms.last_status or "", ("•", "white"))
            click.secho(f"   {icon} {mid}  {ms.last_status}", fg=mcolor)

    if result.history:
        click.echo()
        click.secho("   Recent runs:", bold=True)
        for entry in reversed(result.history):
            click.echo(f"     {entry.timestamp}  {entry.run_id}  {entry.status}")
    click.echo()


# ── Register sub-command groups from flywheel/ui/cli/ ───────────

from flywheel.ui.cli.session import session  # noqa: E402

cli.add_command(session)


if __name__ == "__main__":
    cli()
