"""
Configuration loader — reads the manifest and trust store from disk.

This is the primary entry point for loading install configuration.
It reads YAML, validates it (pydantic schemas plus the manifest
validator's graph checks), and returns typed, immutable objects.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from flywheel.core.models.manifest import Manifest
from flywheel.core.models.trust import TrustStore
from flywheel.core.services.manifest_validator import ValidationResult, validate_manifest

logger = logging.getLogger(__name__)

# Default filenames
MANIFEST_FILE = "flywheel.manifest.yaml"
CHECKSUMS_FILE = "checksums.yaml"


class ConfigError(Exception):
    """Raised when a configuration file is missing, unreadable, or malformed."""


class ManifestError(ConfigError):
    """Raised when the manifest fails validation. Carries every error."""

    def __init__(self, errors: list[str], warnings: list[str] | None = None):
        self.errors = errors
        self.warnings = warnings or []
        super().__init__(
            f"Manifest validation failed with {len(errors)} error(s):\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def find_manifest_file(start_dir: Path | None = None) -> Path | None:
    """Search for flywheel.manifest.yaml starting from a directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to the manifest, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / MANIFEST_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def default_checksums_path(manifest_path: Path) -> Path:
    """checksums.yaml sits next to the manifest."""
    return manifest_path.parent / CHECKSUMS_FILE


def read_yaml(path: Path) -> Any:
    """Read and parse a YAML file.

    Raises:
        ConfigError: If the file is missing, unreadable, or not YAML.
    """
    if not path.is_file():
        raise ConfigError(f"File not found: {path}")

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def load_trust_store(path: Path | None) -> TrustStore:
    """Load checksums.yaml into a TrustStore.

    A missing file yields an empty store: manifests without verified
    installers need none, and manifests with them fail validation.
    """
    if path is None or not path.is_file():
        logger.debug("No trust store at %s — using an empty one", path)
        return TrustStore()

    data = read_yaml(path)
    if data is None:
        return TrustStore()
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        store = TrustStore.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid trust store {path}: {e}") from e

    logger.debug("Loaded %d pinned installers from %s", len(store.installers), path)
    return store


def check_manifest_file(path: Path, trust_store: TrustStore) -> ValidationResult:
    """Validate a manifest file without raising on validation errors.

    Raises:
        ConfigError: If the file itself cannot be read or parsed.
    """
    logger.debug("Loading manifest from %s", path)
    return validate_manifest(read_yaml(path), trust_store)


def load_manifest_file(path: Path, trust_store: TrustStore) -> Manifest:
    """Load and fully validate a manifest.

    Raises:
        ConfigError: If the file cannot be read or parsed.
        ManifestError: If validation reports any error.
    """
    result = check_manifest_file(path, trust_store)
    for warning in result.warnings:
        logger.warning("manifest: %s", warning)
    if not result.valid:
        raise ManifestError(result.errors, result.warnings)
    assert result.manifest is not None
    return result.manifest
