"""
Shared builders for tests.
"""

from flywheel.core.models.manifest import Manifest
from flywheel.core.models.trust import TrustStore
from flywheel.core.services.manifest_validator import validate_manifest


def build_manifest(modules: list[dict], phases: list[dict] | None = None,
                   trust_store: TrustStore | None = None) -> Manifest:
    """Validate raw module dicts into a Manifest (fails the test if invalid)."""
    raw = {"version": 1, "name": "test", "modules": modules}
    if phases is not None:
        raw["phases"] = phases
    result = validate_manifest(raw, trust_store)
    assert result.valid, result.errors
    assert result.manifest is not None
    return result.manifest
