"""Adapters — command runners between the install engine and the machine.

Public re-exports for convenient access.
"""

from flywheel.adapters.base import CommandRunner, command_label
from flywheel.adapters.mock import MockRunner
from flywheel.adapters.shell.command import PACKAGE_MANAGER_LOCK, ShellRunner

__all__ = [
    "PACKAGE_MANAGER_LOCK",
    "CommandRunner",
    "MockRunner",
    "ShellRunner",
    "command_label",
]
