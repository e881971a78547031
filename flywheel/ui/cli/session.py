"""
CLI commands for session exports.

Thin wrappers over ``flywheel.core.services.redaction``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click


@click.group()
def session() -> None:
    """Session exports — validate, sanitize, scan for secrets."""


@session.command("validate")
@click.argument("file", type=click.Path(path_type=Path))
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def validate(file: Path, as_json: bool) -> None:
    """Check a session export against the schema."""
    from flywheel.core.services.redaction import validate_session_export

    errors, warnings = validate_session_export(file)

    if as_json:
        click.echo(json.dumps({"valid": not errors, "errors": errors, "warnings": warnings}, indent=2))
        sys.exit(1 if errors else 0)

    if errors:
        click.secho(f"❌ Invalid session export: {file}", fg="red", bold=True)
        for err in errors:
            click.echo(f"   • {err}")
    else:
        click.secho(f"✅ Valid session export: {file}", fg="green")

    for warn in warnings:
        click.secho(f"   ⚠️  {warn}", fg="yellow")

    if errors:
        sys.exit(1)


@session.command("sanitize")
@click.argument("file", type=click.Path(path_type=Path))
@click.option(
    "--optional",
    "include_optional",
    is_flag=True,
    help="Also redact IP and email addresses (also on with FLYWHEEL_SANITIZE_OPTIONAL=1).",
)
def sanitize(file: Path, include_optional: bool) -> None:
    """Redact secrets from a session export, in place."""
    from flywheel.core.services.redaction import (
        SessionExportError,
        optional_enabled_by_env,
        sanitize_session_export,
    )

    include_optional = include_optional or optional_enabled_by_env()

    try:
        changed = sanitize_session_export(file, include_optional=include_optional)
    except SessionExportError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    if changed:
        click.secho(f"🔒 Redacted {changed} value(s) in {file}", fg="green")
    else:
        click.echo(f"   No secrets found in {file}")


@session.command("scan")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def scan(file: Path) -> None:
    """Exit 1 if the file still contains anything that would be redacted."""
    from flywheel.core.services.redaction import contains_secrets

    text = file.read_text(encoding="utf-8", errors="replace")
    if contains_secrets(text):
        click.secho(f"⚠️  Possible secrets in {file} — run 'flywheel session sanitize'", fg="yellow")
        sys.exit(1)
    click.secho(f"✅ No secrets detected in {file}", fg="green")
