"""
Redaction — strip secrets from captured output and session exports.

Two pattern sets:

    REDACT_PATTERNS           always applied (provider keys, tokens,
                              cloud access keys, key=value secrets)
    OPTIONAL_REDACT_PATTERNS  opt-in (IPv4 addresses, email addresses),
                              higher false-positive rate

Only the matched span is replaced with ``[REDACTED]``; surrounding text
is left untouched. For ``key=value`` style secrets the key and its
separator are kept and only the value is replaced.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from flywheel.core.models.session import KNOWN_AGENTS, SESSION_SCHEMA_VERSION, SessionExport

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Order matters: the Anthropic pattern runs before the broader OpenAI one.
REDACT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"sk-ant-[a-zA-Z0-9_-]{20,}"),    # Anthropic API keys
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),          # OpenAI API keys
    re.compile(r"AIza[a-zA-Z0-9_-]{35}"),        # Google API keys
    re.compile(r"ghp_[a-zA-Z0-9]{36}"),          # GitHub personal access tokens
    re.compile(r"gho_[a-zA-Z0-9]{36}"),          # GitHub OAuth tokens
    re.compile(r"ghs_[a-zA-Z0-9]{36}"),          # GitHub app tokens
    re.compile(r"ghr_[a-zA-Z0-9]{36}"),          # GitHub refresh tokens
    re.compile(r"xoxb-[a-zA-Z0-9-]+"),           # Slack bot tokens
    re.compile(r"xoxp-[a-zA-Z0-9-]+"),           # Slack user tokens
    re.compile(r"AKIA[A-Z0-9]{16}"),             # AWS access keys
)

# Generic assignments: password=..., "secret": "...", api_key: ...
_ASSIGNMENT_RE = re.compile(
    r"(?P<key>password|secret|api_key|apikey|auth_token|access_token)"
    r"(?P<sep>[\"'\s:=]+)"
    r"[^\s\"']{8,}",
    re.IGNORECASE,
)

OPTIONAL_REDACT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\b"),
    re.compile(r"\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b"),
)

# Env var that turns on the optional set by default
OPTIONAL_ENV_VAR = "FLYWHEEL_SANITIZE_OPTIONAL"


def optional_enabled_by_env() -> bool:
    return os.environ.get(OPTIONAL_ENV_VAR, "0") == "1"


def sanitize_text(text: str, include_optional: bool = False) -> str:
    """Replace every secret span in ``text`` with ``[REDACTED]``."""
    if not text:
        return text

    result = text
    for pattern in REDACT_PATTERNS:
        result = pattern.sub(REDACTED, result)
    result = _ASSIGNMENT_RE.sub(rf"\g<key>\g<sep>{REDACTED}", result)

    if include_optional:
        for pattern in OPTIONAL_REDACT_PATTERNS:
            result = pattern.sub(REDACTED, result)

    return result


def sanitize_value(value: Any, include_optional: bool = False) -> Any:
    """Recursively sanitize strings inside lists and dicts.

    Non-string scalars pass through. Dict keys are not rewritten.
    """
    if isinstance(value, str):
        return sanitize_text(value, include_optional)
    if isinstance(value, list):
        return [sanitize_value(item, include_optional) for item in value]
    if isinstance(value, dict):
        return {k: sanitize_value(v, include_optional) for k, v in value.items()}
    return value


def contains_secrets(text: str) -> bool:
    """Pre-sanitization check: does ``text`` hold anything always-redacted?"""
    if not text:
        return False
    return any(p.search(text) for p in REDACT_PATTERNS) or bool(_ASSIGNMENT_RE.search(text))


# ── Session exports ─────────────────────────────────────────────


class SessionExportError(Exception):
    """Raised when a session export cannot be read or rewritten."""


def _read_json(path: Path) -> Any:
    if not path.is_file():
        raise SessionExportError(f"Session export file not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise SessionExportError(f"Invalid JSON in session export {path}: {e}") from e
    except OSError as e:
        raise SessionExportError(f"Cannot read {path}: {e}") from e


def validate_session_export(path: Path) -> tuple[list[str], list[str]]:
    """Check a session export against the schema.

    Returns:
        (errors, warnings). Errors mean the file is not a usable export;
        warnings flag unknown agents, newer schema versions, missing stats.
    """
    errors: list[str] = []
    warnings: list[str] = []

    try:
        data = _read_json(path)
    except SessionExportError as e:
        return [str(e)], warnings

    if not isinstance(data, dict):
        return ["Session export must be a JSON object"], warnings

    missing = [k for k in ("schema_version", "session_id", "agent") if not data.get(k)]
    if missing:
        errors.append(f"Missing required fields: {', '.join(missing)}")
        return errors, warnings

    if data["schema_version"] != SESSION_SCHEMA_VERSION:
        warnings.append(
            f"Session schema version {data['schema_version']} may not be fully "
            f"compatible (expected: {SESSION_SCHEMA_VERSION})"
        )

    if data["agent"] not in KNOWN_AGENTS:
        warnings.append(
            f"Unknown agent type: {data['agent']} (expected: {', '.join(KNOWN_AGENTS)})"
        )

    try:
        export = SessionExport.model_validate(data)
    except PydanticValidationError as e:
        for err in e.errors():
            loc = ".".join(str(part) for part in err["loc"])
            errors.append(f"{loc}: {err['msg']}")
        return errors, warnings

    if export.stats is None:
        warnings.append("Session export missing stats.turns field")

    return errors, warnings


def sanitize_session_export(path: Path, include_optional: bool = False) -> int:
    """Sanitize every string in a JSON session export, in place.

    The rewrite is atomic (temp file in the same directory, then
    rename), so a crash never leaves a half-written export.

    Returns:
        Number of string values that changed.

    Raises:
        SessionExportError: If the file is missing, not JSON, or cannot
            be rewritten.
    """
    data = _read_json(path)
    changed = _count_changes(data, include_optional)
    clean = sanitize_value(data, include_optional)
    content = json.dumps(clean, indent=2, ensure_ascii=False) + "\n"

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".session_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise SessionExportError(f"Failed to rewrite {path}: {e}") from e

    logger.info("Sanitized session export %s (%d values redacted)", path, changed)
    return changed


def _count_changes(value: Any, include_optional: bool) -> int:
    if isinstance(value, str):
        return int(sanitize_text(value, include_optional) != value)
    if isinstance(value, list):
        return sum(_count_changes(v, include_optional) for v in value)
    if isinstance(value, dict):
        return sum(_count_changes(v, include_optional) for v in value.values())
    return 0
