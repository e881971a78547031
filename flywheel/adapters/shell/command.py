"""
Shell runner — the single place install commands reach subprocess.

Commands run as ``bash -lc "set -euo pipefail; <exports>; <command>"``
under the identity the module declares:

    target_user   sudo -u USER -H ...   (runuser -u USER -- ... when root
                                         without a sudo handle, nothing
                                         when already USER)
    root          $SUDO ...             (nothing when already root)
    current       no wrapping

TARGET_USER, TARGET_HOME and FLYWHEEL_MODE are exported inside the
script, so they survive sudo's environment reset.

Any command that calls a system package manager holds
PACKAGE_MANAGER_LOCK for its whole run.
"""

from __future__ import annotations

import getpass
import logging
import re
import shlex
import shutil
import subprocess
import threading
import time

from flywheel.adapters.base import DEFAULT_TIMEOUT, Command, CommandRunner, command_label
from flywheel.core.models.contract import ExecutionContract
from flywheel.core.models.module import RunAs
from flywheel.core.models.result import TIMEOUT_EXIT_CODE, ErrorKind, StepOutcome

logger = logging.getLogger(__name__)

# Process-wide; held for the whole run of any package-manager command
PACKAGE_MANAGER_LOCK = threading.Lock()

PACKAGE_MANAGERS = frozenset({
    "apt-get", "apt", "dpkg", "dnf", "yum", "apk", "pacman", "zypper", "snap", "brew",
})

_TOKEN_SPLIT_RE = re.compile(r"[\s;&|()`]+")

# exit code shells use for "command not found"
_NOT_FOUND_EXIT_CODE = 127


def uses_package_manager(command: Command) -> bool:
    """Whether any word of ``command`` names a system package manager."""
    text = " ".join(command) if isinstance(command, list) else command
    return any(
        token.rsplit("/", 1)[-1] in PACKAGE_MANAGERS for token in _TOKEN_SPLIT_RE.split(text)
    )


class ShellRunner(CommandRunner):
    """Execute install commands through bash under a declared identity."""

    def __init__(self, contract: ExecutionContract, current_user: str | None = None):
        self._contract = contract
        self._current_user = current_user

    @property
    def name(self) -> str:
        return "shell"

    def is_available(self) -> bool:
        return shutil.which("bash") is not None

    # ── Command construction ────────────────────────────────────

    def _exports(self) -> dict[str, str]:
        contract = self._contract
        env: dict[str, str] = {}
        if contract.target_user:
            env["TARGET_USER"] = contract.target_user
        if contract.target_home:
            env["TARGET_HOME"] = contract.target_home
        if contract.mode:
            env["FLYWHEEL_MODE"] = str(contract.mode)
        return env

    def _inner(self, command: Command) -> list[str]:
        exports = self._exports()
        if isinstance(command, list):
            if not exports:
                return list(command)
            return ["env", *(f"{k}={v}" for k, v in exports.items()), *command]

        lines = ["set -euo pipefail"]
        if exports:
            lines.append(
                "export " + " ".join(f"{k}={shlex.quote(v)}" for k, v in exports.items())
            )
        lines.append(command)
        return ["bash", "-lc", "; ".join(lines[:-1]) + "\n" + lines[-1]]

    def build_argv(self, command: Command, run_as: RunAs) -> list[str] | None:
        """Full argv for ``command`` under ``run_as``.

        Returns:
            The argv, or None when the identity cannot be assumed with
            the current contract (missing target user or sudo handle).
        """
        contract = self._contract
        inner = self._inner(command)
        sudo = shlex.split(contract.sudo) if contract.sudo else []

        if run_as == RunAs.CURRENT:
            return inner

        if run_as == RunAs.ROOT:
            if contract.is_root:
                return inner
            if not sudo:
                return None
            return sudo + inner

        # target_user
        user = contract.target_user
        if not user:
            return None
        if user == (self._current_user or getpass.getuser()):
            return inner
        if sudo:
            return sudo + ["-u", user, "-H"] + inner
        if contract.is_root:
            return ["runuser", "-u", user, "--"] + inner
        return ["sudo", "-u", user, "-H"] + inner

    # ── Execution ───────────────────────────────────────────────

    def run(
        self,
        command: Command,
        run_as: RunAs = RunAs.CURRENT,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> StepOutcome:
        argv = self.build_argv(command, run_as)
        if argv is None:
            return StepOutcome.failure(
                f"Cannot run as {run_as}: execution contract is missing a binding",
                error_kind=ErrorKind.CONTRACT_VIOLATION,
            )

        if uses_package_manager(command):
            logger.debug("Waiting for package manager lock: %s", command_label(command))
            with PACKAGE_MANAGER_LOCK:
                return self._execute(argv, command, timeout)
        return self._execute(argv, command, timeout)

    def _execute(self, argv: list[str], command: Command, timeout: int) -> StepOutcome:
        label = command_label(command)
        logger.debug("Executing (%ss timeout): %s", timeout, label)
        start = time.monotonic()

        try:
            result = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=timeout,
                stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired as e:
            partial = e.output or ""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            return StepOutcome.failure(
                f"Command timed out after {timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
                output=partial,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except OSError as e:
            return StepOutcome.failure(
                f"Command execution error: {e}",
                exit_code=_NOT_FOUND_EXIT_CODE,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        output = result.stdout or ""
        if result.returncode == 0:
            return StepOutcome(output=output, duration_ms=elapsed_ms)

        logger.debug("Command exited %d: %s", result.returncode, label)
        return StepOutcome.failure(
            f"Command exited with code {result.returncode}",
            exit_code=result.returncode,
            output=output,
            duration_ms=elapsed_ms,
        )
