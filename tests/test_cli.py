"""
Tests for CLI commands — install, manifest check, session, global options.
"""

import json
import shutil
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from flywheel.main import cli

needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")

MANIFEST = """\
    version: 1
    name: workstation
    phases:
      - number: 1
        id: base
        name: Base
      - number: 2
        id: tools
        name: Tools
    modules:
      - id: base.ok
        phase: 1
        run_as: current
        install:
          - "true"
      - id: tools.broken
        phase: 2
        run_as: current
        install:
          - "false"
      - id: tools.after
        phase: 2
        run_as: current
        dependencies: [tools.broken]
        install:
          - "true"
      - id: tools.wizard
        phase: 2
        install:
          - description: Configured by the onboarding wizard
"""


def _write(tmp_path: Path, content: str = MANIFEST) -> Path:
    path = tmp_path / "flywheel.manifest.yaml"
    path.write_text(textwrap.dedent(content))
    return path


def _env(tmp_path: Path, **extra) -> dict:
    env = {
        "FLYWHEEL_MODE": "strict",
        "FLYWHEEL_STATE_DIR": str(tmp_path / "state"),
        "FLYWHEEL_LOG_LEVEL": "ERROR",
        "TARGET_USER": "",
        "TARGET_HOME": "",
    }
    env.update(extra)
    return env


class TestCLIGlobal:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "declarative workstation installer" in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_install_help_lists_options(self):
        result = CliRunner().invoke(cli, ["install", "--help"])
        assert result.exit_code == 0
        for option in ("--dry-run", "--only", "--only-phase", "--skip", "--list-modules", "--resume"):
            assert option in result.output


class TestManifestCheck:
    def test_valid(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(cli, ["-q", "-m", str(path), "manifest", "check"])
        assert result.exit_code == 0
        assert "Manifest is valid" in result.output
        assert "Modules: 4" in result.output

    def test_invalid(self, tmp_path):
        path = _write(tmp_path, """\
            version: 1
            modules:
              - id: x.a
                phase: 1
                dependencies: [x.b]
              - id: x.b
                phase: 1
                dependencies: [x.a]
        """)
        result = CliRunner().invoke(cli, ["-q", "-m", str(path), "manifest", "check"])
        assert result.exit_code == 1
        assert "Dependency cycle: x.a -> x.b -> x.a" in result.output

    def test_json(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(cli, ["-q", "-m", str(path), "manifest", "check", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["valid"] is True
        assert data["module_count"] == 4


class TestInstallPlanning:
    def test_list_modules(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(path), "install", "--list-modules", "--skip", "tools.after"],
            env=_env(tmp_path),
        )
        assert result.exit_code == 0
        assert "Phase 1: Base" in result.output
        assert "base.ok" in result.output
        assert "tools.wizard  (placeholder)" in result.output
        assert "excluded by skip" in result.output

    def test_list_modules_json(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(path), "install", "--list-modules", "--json"],
            env=_env(tmp_path),
        )
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["plan"]["order"] == ["base.ok", "tools.broken", "tools.after", "tools.wizard"]

    def test_invalid_phase(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(path), "install", "--only-phase", "two"], env=_env(tmp_path)
        )
        assert result.exit_code == 2
        assert "Invalid phase number" in result.output

    def test_unknown_module(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(path), "install", "--only", "nope.nope"], env=_env(tmp_path)
        )
        assert result.exit_code == 2
        assert "Unknown module id(s) in selection: nope.nope" in result.output

    def test_missing_manifest(self, tmp_path):
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(tmp_path / "absent.yaml"), "install", "--dry-run"],
            env=_env(tmp_path),
        )
        assert result.exit_code == 2
        assert "File not found" in result.output


class TestInstallDryRun:
    def test_preview_only(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-m", str(path), "install", "--dry-run"], env=_env(tmp_path)
        )
        assert result.exit_code == 0
        assert "dry-run: install: false (current)" in result.output
        assert "dry-run: note: Configured by the onboarding wizard" in result.output
        assert not (tmp_path / "state").exists()

    def test_dry_run_needs_no_contract(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(path), "install", "--dry-run"],
            env=_env(tmp_path, FLYWHEEL_MODE=""),
        )
        assert result.exit_code == 0


@needs_bash
class TestInstallLive:
    def test_partial_failure(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(cli, ["-q", "-m", str(path), "install"], env=_env(tmp_path))
        assert result.exit_code == 1
        assert "=== Error Context ===" in result.output
        assert "Module: tools.broken" in result.output
        assert "Status: partial_failure (exit 1)" in result.output
        assert (tmp_path / "state" / "current.json").is_file()
        assert (tmp_path / "state" / "audit.ndjson").is_file()

    def test_skip_broken_completes(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(path), "install", "--skip", "tools.broken"],
            env=_env(tmp_path),
        )
        assert result.exit_code == 0
        assert "Succeeded: 2" in result.output

    def test_json_report(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(path), "install", "--only", "base.ok", "--json"],
            env=_env(tmp_path),
        )
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["report"]["status"] == "completed"
        assert data["report"]["succeeded"] == 1

    def test_parallel(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(path), "install", "--parallel", "3"], env=_env(tmp_path)
        )
        assert result.exit_code == 1

    def test_missing_mode_aborts(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli, ["-q", "-m", str(path), "install"], env=_env(tmp_path, FLYWHEEL_MODE="")
        )
        assert result.exit_code == 2
        assert "missing FLYWHEEL_MODE" in result.output

    def test_mode_option_overrides(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(
            cli,
            ["-q", "-m", str(path), "install", "--mode", "permissive", "--only", "base.ok"],
            env=_env(tmp_path, FLYWHEEL_MODE=""),
        )
        assert result.exit_code == 0


class TestStatus:
    def test_nothing_recorded(self, tmp_path):
        path = _write(tmp_path)
        result = CliRunner().invoke(cli, ["-q", "-m", str(path), "status"], env=_env(tmp_path))
        assert result.exit_code == 0
        assert "No install runs recorded" in result.output

    @needs_bash
    def test_after_install(self, tmp_path):
        path = _write(tmp_path)
        env = _env(tmp_path)
        CliRunner().invoke(cli, ["-q", "-m", str(path), "install", "--only", "base.ok"], env=env)

        result = CliRunner().invoke(cli, ["-m", str(path), "status"], env=env)
        assert result.exit_code == 0
        assert "completed" in result.output
        assert "base.ok  success" in result.output
        assert "Recent runs:" in result.output

        result = CliRunner().invoke(cli, ["-q", "-m", str(path), "status", "--json"], env=env)
        data = json.loads(result.output)
        assert data["state"]["last_run"]["status"] == "completed"
        assert len(data["history"]) == 1

def _export(tmp_path: Path, **fields) -> Path:
    data = {"schema_version": 1, "session_id": "s-1", "agent": "claude-code",
            "stats": {"turns": 2}}
    data.update(fields)
    path = tmp_path / "export.json"
    path.write_text(json.dumps(data))
    return path


class TestSessionCommands:
    def test_validate(self, tmp_path):
        result = CliRunner().invoke(cli, ["-q", "session", "validate", str(_export(tmp_path))])
        assert result.exit_code == 0
        assert "Valid session export" in result.output

    def test_validate_invalid_json(self, tmp_path):
        path = tmp_path / "export.json"
        path.write_text("{")
        result = CliRunner().invoke(cli, ["-q", "session", "validate", str(path), "--json"])
        assert result.exit_code == 1
        assert json.loads(result.output)["valid"] is False

    def test_sanitize(self, tmp_path):
        path = _export(tmp_path, summary="token ghp_" + "a" * 36)
        result = CliRunner().invoke(cli, ["-q", "session", "sanitize", str(path)])
        assert result.exit_code == 0
        assert "Redacted 1 value(s)" in result.output
        assert "ghp_" not in path.read_text()

    def test_sanitize_optional_from_env(self, tmp_path):
        path = _export(tmp_path, summary="ran on 10.1.2.3")
        result = CliRunner().invoke(
            cli, ["-q", "session", "sanitize", str(path)],
            env={"FLYWHEEL_SANITIZE_OPTIONAL": "1"},
        )
        assert result.exit_code == 0
        assert "10.1.2.3" not in path.read_text()

    def test_sanitize_missing(self, tmp_path):
        result = CliRunner().invoke(cli, ["-q", "session", "sanitize", str(tmp_path / "x.json")])
        assert result.exit_code == 1

    def test_scan(self, tmp_path):
        dirty = _export(tmp_path, summary="AKIA" + "B" * 16)
        result = CliRunner().invoke(cli, ["-q", "session", "scan", str(dirty)])
        assert result.exit_code == 1

        CliRunner().invoke(cli, ["-q", "session", "sanitize", str(dirty)])
        result = CliRunner().invoke(cli, ["-q", "session", "scan", str(dirty)])
        assert result.exit_code == 0
