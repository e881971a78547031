"""
Runner base — the protocol between the install engine and the machine.

The engine never calls subprocess directly. It hands a command and an
identity to a CommandRunner and gets a StepOutcome back.

Runners NEVER raise: a missing binary, a timeout or a non-zero exit all
come back as a StepOutcome with a non-zero exit code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from flywheel.core.models.module import RunAs
from flywheel.core.models.result import StepOutcome

# Accepted command shapes: a shell script (run through bash) or an argv list
Command = str | list[str]

DEFAULT_TIMEOUT = 600


def command_label(command: Command) -> str:
    """One-line rendering of a command for logs and previews."""
    if isinstance(command, list):
        return " ".join(command)
    stripped = command.strip()
    return stripped.splitlines()[0] if stripped else ""


class CommandRunner(ABC):
    """Abstract base class for command runners.

    To create a new runner:
        1. Subclass CommandRunner
        2. Implement name, is_available, run
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The runner identifier (e.g., 'shell', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the runner can execute anything on this machine.

        Should be fast and never raise.
        """

    @abstractmethod
    def run(
        self,
        command: Command,
        run_as: RunAs = RunAs.CURRENT,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> StepOutcome:
        """Execute ``command`` as ``run_as`` and return its outcome.

        A string is a shell script; a list is executed as-is. MUST never
        raise. A command killed by ``timeout`` reports exit code 124.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
