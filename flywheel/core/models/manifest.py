"""
Manifest model — the complete, validated set of modules.

A Manifest is only ever produced by the manifest validator, after every
structural and graph check has passed. It is frozen: planning and
execution read it, nothing writes to it.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from flywheel.core.models.module import Module

SUPPORTED_MANIFEST_VERSION = 1

# Phase bounds used when a manifest declares no phases
DEFAULT_PHASE_LIMIT = 10


class Phase(BaseModel):
    """A named installation phase."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    number: int = Field(ge=1)
    id: str = Field(min_length=1)     # e.g. "cli_tools"
    name: str = ""                    # e.g. "CLI Tools"

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Manifest(BaseModel):
    """Immutable manifest: modules plus phase metadata."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: int = SUPPORTED_MANIFEST_VERSION
    name: str = ""
    phases: tuple[Phase, ...] = ()
    modules: tuple[Module, ...] = ()

    @property
    def module_ids(self) -> list[str]:
        return [m.id for m in self.modules]

    def get(self, module_id: str) -> Module | None:
        """Look up a module by id."""
        for module in self.modules:
            if module.id == module_id:
                return module
        return None

    def phase_bounds(self) -> set[int]:
        """Phase numbers a module may declare."""
        if self.phases:
            return {p.number for p in self.phases}
        return set(range(1, DEFAULT_PHASE_LIMIT + 1))

    def phase_info(self, number: int) -> Phase:
        """Phase metadata for a number, synthesized when undeclared."""
        for phase in self.phases:
            if phase.number == number:
                return phase
        return Phase(number=number, id=f"phase_{number}", name=f"Phase {number}")
