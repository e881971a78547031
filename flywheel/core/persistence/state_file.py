"""
State file persistence — atomic read/write for InstallState.

State lives in .state/current.json next to the manifest (or under
FLYWHEEL_STATE_DIR). Writes are atomic: temp file in the same
directory, then rename, so an interrupted run never leaves a torn file.

Only live runs write state. Dry-runs leave it untouched.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from flywheel.core.engine.orchestrator import RunReport
from flywheel.core.models.result import ModuleStatus
from flywheel.core.models.state import InstallState, RunRecord

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".state"
DEFAULT_STATE_FILE = "current.json"
STATE_DIR_ENV_VAR = "FLYWHEEL_STATE_DIR"


def default_state_dir(manifest_path: Path) -> Path:
    """FLYWHEEL_STATE_DIR if set, else .state/ beside the manifest."""
    override = os.environ.get(STATE_DIR_ENV_VAR)
    if override:
        return Path(override)
    return manifest_path.parent / DEFAULT_STATE_DIR


def default_state_path(manifest_path: Path) -> Path:
    return default_state_dir(manifest_path) / DEFAULT_STATE_FILE


def load_state(path: Path) -> InstallState:
    """Load install state; a missing or unreadable file means a fresh state."""
    if not path.is_file():
        logger.info("No state file at %s — starting fresh", path)
        return InstallState()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        state = InstallState.model_validate(data)
        logger.debug("Loaded state from %s (updated_at=%s)", path, state.updated_at)
        return state
    except json.JSONDecodeError as e:
        logger.warning("Corrupt state file %s: %s — starting fresh", path, e)
    except PydanticValidationError as e:
        logger.warning("State file %s has an unexpected shape: %s — starting fresh", path, e)
    except OSError as e:
        logger.warning("Cannot read state from %s: %s — starting fresh", path, e)
    return InstallState()


def save_state(state: InstallState, path: Path) -> None:
    """Write install state atomically.

    Raises:
        OSError: If the directory or file cannot be written.
    """
    state.touch()
    path.parent.mkdir(parents=True, exist_ok=True)

    content = json.dumps(state.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".state_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
        logger.debug("State saved to %s", path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        logger.error("Failed to save state to %s: %s", path, e)
        raise


def apply_run(state: InstallState, report: RunReport) -> InstallState:
    """Fold a finished RunReport into ``state``.

    Filtered modules keep their previous record; everything that was
    actually considered this run is overwritten.
    """
    for result in report.results:
        if result.status == ModuleStatus.SKIPPED_FILTERED:
            continue
        state.set_module_state(
            result.module_id,
            last_status=str(result.status),
            last_action=str(result.action),
            last_run_at=report.ended_at,
            attempts=result.attempts,
        )

    state.last_run = RunRecord(
        run_id=report.run_id,
        started_at=report.started_at,
        ended_at=report.ended_at,
        status=str(report.status),
        succeeded=report.succeeded,
        failed=report.failed,
        skipped=report.skipped,
    )
    return state
