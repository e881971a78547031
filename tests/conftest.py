"""
Shared test fixtures and configuration.
"""

import textwrap
from pathlib import Path

import pytest

from flywheel.adapters.mock import MockRunner
from flywheel.core.models.contract import ExecutionContract, InstallMode


@pytest.fixture
def contract() -> ExecutionContract:
    """A complete execution contract for a non-root invoker."""
    return ExecutionContract(
        target_user="dev",
        target_home="/home/dev",
        mode=InstallMode.STRICT,
        sudo="sudo",
        is_root=False,
    )


@pytest.fixture
def mock_runner() -> MockRunner:
    return MockRunner()


@pytest.fixture
def sleeps() -> list[float]:
    """Records retry delays instead of sleeping."""
    return []


@pytest.fixture
def write_manifest(tmp_path: Path):
    """Write a dedented YAML manifest into tmp_path and return its path."""

    def _write(content: str, checksums: str | None = None) -> Path:
        path = tmp_path / "flywheel.manifest.yaml"
        path.write_text(textwrap.dedent(content))
        if checksums is not None:
            (tmp_path / "checksums.yaml").write_text(textwrap.dedent(checksums))
        return path

    return _write
