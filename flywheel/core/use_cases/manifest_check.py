"""
Manifest check use case — validate flywheel.manifest.yaml and report issues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from flywheel.core.config.loader import (
    ConfigError,
    check_manifest_file,
    default_checksums_path,
    find_manifest_file,
    load_trust_store,
)
from flywheel.core.models.manifest import Manifest


@dataclass
class ManifestCheckResult:
    """Result of manifest validation."""

    valid: bool = False
    manifest: Manifest | None = None
    manifest_path: Path | None = None
    checksums_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "manifest_path": str(self.manifest_path) if self.manifest_path else None,
            "checksums_path": str(self.checksums_path) if self.checksums_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "manifest_name": self.manifest.name if self.manifest else None,
            "module_count": len(self.manifest.modules) if self.manifest else 0,
        }


def check_manifest(
    manifest_path: Path | None = None,
    checksums_path: Path | None = None,
) -> ManifestCheckResult:
    """Validate the manifest (and its trust store) without running anything."""
    result = ManifestCheckResult()

    if manifest_path is None:
        manifest_path = find_manifest_file()
    if manifest_path is None:
        result.errors.append("No flywheel.manifest.yaml found.")
        return result
    result.manifest_path = manifest_path

    if checksums_path is None:
        checksums_path = default_checksums_path(manifest_path)
    result.checksums_path = checksums_path

    try:
        trust_store = load_trust_store(checksums_path)
        validation = check_manifest_file(manifest_path, trust_store)
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    result.errors.extend(validation.errors)
    result.warnings.extend(validation.warnings)
    result.manifest = validation.manifest
    result.valid = validation.valid
    return result
