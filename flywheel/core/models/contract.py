"""
Execution contract — the bindings every install run consumes.

The contract is read from the environment once per run (CLI options
override it). Missing bindings are a caller bug, not a module failure:
they are reported all at once and the run aborts before anything
executes.

    TARGET_USER     account that owns the workstation (non-root)
    TARGET_HOME     that account's home directory
    FLYWHEEL_MODE   strict | permissive (exported to every install command)
    SUDO            privilege-escalation command ("" when already root)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from flywheel.core.models.module import Module, RunAs


class InstallMode(StrEnum):
    STRICT = "strict"
    PERMISSIVE = "permissive"


class ExecutionContract(BaseModel):
    """Resolved execution-context bindings for one run."""

    model_config = ConfigDict(frozen=True)

    target_user: str | None = None
    target_home: str | None = None
    mode: InstallMode | None = None
    sudo: str | None = None          # None = unbound, "" = already root
    is_root: bool = False

    @classmethod
    def from_environ(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: str | None,
    ) -> ExecutionContract:
        """Build a contract from environment variables plus CLI overrides.

        Unknown or empty mode values leave ``mode`` unbound, which the
        contract check reports.
        """
        env = os.environ if environ is None else environ

        def _pick(key: str, env_key: str) -> str | None:
            value = overrides.get(key)
            if value is None:
                value = env.get(env_key)
            return value or None

        raw_mode = (_pick("mode", "FLYWHEEL_MODE") or "").lower()
        mode = InstallMode(raw_mode) if raw_mode in InstallMode._value2member_map_ else None

        is_root = os.geteuid() == 0
        sudo = overrides.get("sudo")
        if sudo is None:
            sudo = env.get("SUDO")
        if sudo is None and is_root:
            sudo = ""

        return cls(
            target_user=_pick("target_user", "TARGET_USER"),
            target_home=_pick("target_home", "TARGET_HOME"),
            mode=mode,
            sudo=sudo,
            is_root=is_root,
        )

    def missing_for(self, module: Module) -> list[str]:
        """Bindings ``module`` needs that this contract does not provide."""
        missing: list[str] = []
        if self.mode is None:
            missing.append("FLYWHEEL_MODE")
        if module.run_as == RunAs.TARGET_USER:
            if not self.target_user:
                missing.append("TARGET_USER")
            if not self.target_home:
                missing.append("TARGET_HOME")
        if module.run_as == RunAs.ROOT and self.sudo is None and not self.is_root:
            missing.append("SUDO")
        return missing

    def missing_for_all(self, modules: list[Module]) -> dict[str, list[str]]:
        """Exhaustive missing-binding report: module id → missing names."""
        report: dict[str, list[str]] = {}
        for module in modules:
            missing = self.missing_for(module)
            if missing:
                report[module.id] = missing
        return report
