"""
Module model — one installable unit from the manifest.

Modules are declared in flywheel.manifest.yaml and never change after
load. Each one names what it installs (install steps), how to prove it
is already present (idempotent_check), and how to confirm the install
worked (verify steps).

Steps are typed at authoring time:

    install:
      - "apt-get install -y ripgrep"          # CommandStep (shorthand)
      - run: "cargo install ast-grep"         # CommandStep (full form)
        attempts: 3
        timeout: 900
      - description: "Configured by the agent wizard"   # DescriptionStep
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Dotted namespace: at least two segments, e.g. "lang.bun", "agents.claude-code"
MODULE_ID_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*(\.[a-z0-9][a-z0-9_-]*)+$")

PROCEDURE_PREFIX = "install_"


class RunAs(StrEnum):
    """Identity a module's commands execute under."""

    TARGET_USER = "target_user"
    ROOT = "root"
    CURRENT = "current"


class CommandStep(BaseModel):
    """An executable shell command."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    run: str = Field(min_length=1)
    timeout: int = Field(default=600, gt=0)     # seconds
    attempts: int = Field(default=1, ge=1, le=10)
    delay: float = Field(default=5.0, ge=0)     # seconds between attempts
    optional: bool = False

    @property
    def label(self) -> str:
        """First line of the command, for logs and previews."""
        return self.run.strip().splitlines()[0] if self.run.strip() else ""


class DescriptionStep(BaseModel):
    """Prose describing work that happens outside this installer."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    description: str = Field(min_length=1)


Step = Union[CommandStep, DescriptionStep]


class VerifiedInstaller(BaseModel):
    """Reference to a checksum-pinned upstream installer script."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tool: str = Field(min_length=1)            # key into the trust store
    runner: Literal["bash", "sh"] = "bash"
    args: tuple[str, ...] = ()


def _normalize_steps(value: object) -> object:
    """Turn bare strings into ``{"run": ...}`` so pydantic sees one shape."""
    if not isinstance(value, list):
        return value
    return [{"run": item} if isinstance(item, str) else item for item in value]


class Module(BaseModel):
    """A declared, immutable installable unit."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # ── Identity ─────────────────────────────────────────────────
    id: str
    description: str = ""
    phase: int

    # ── Graph ────────────────────────────────────────────────────
    dependencies: tuple[str, ...] = ()

    # ── Execution ────────────────────────────────────────────────
    run_as: RunAs = RunAs.TARGET_USER
    idempotent_check: str | None = None
    verified_installer: VerifiedInstaller | None = None
    install: tuple[Step, ...] = ()
    verify: tuple[Step, ...] = ()

    # ── Flags ────────────────────────────────────────────────────
    optional: bool = False
    generated: bool = True

    @field_validator("install", "verify", mode="before")
    @classmethod
    def _steps_shorthand(cls, value: object) -> object:
        return _normalize_steps(value)

    @property
    def procedure_name(self) -> str:
        return procedure_name(self.id)

    @property
    def command_steps(self) -> list[CommandStep]:
        """Install steps that actually execute."""
        return [s for s in self.install if isinstance(s, CommandStep)]

    @property
    def is_descriptive(self) -> bool:
        """True when nothing in the module would execute on install."""
        return not self.command_steps and self.verified_installer is None


def procedure_name(module_id: str) -> str:
    """Explicit id → procedure name mapping.

    ``lang.bun`` → ``install_lang_bun``. Distinct ids can collide
    (``a.b-c`` and ``a.b_c``); the manifest validator rejects that.
    """
    return PROCEDURE_PREFIX + re.sub(r"[.\-]", "_", module_id)
