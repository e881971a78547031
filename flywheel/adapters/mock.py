"""
Mock runner — test double for command execution.

Never touches the machine. By default every command succeeds. Specific
commands can be scripted with a sequence of exit codes, consumed one
per call (the last one repeats), which is how retry behavior is tested:

    runner = MockRunner()
    runner.script("curl -fsSL https://x", 1, 1, 0)   # fails twice, then works
    runner.fail("which bun")                          # always exit 1
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from flywheel.adapters.base import DEFAULT_TIMEOUT, Command, CommandRunner, command_label
from flywheel.core.models.module import RunAs
from flywheel.core.models.result import StepOutcome


@dataclass(frozen=True)
class MockCall:
    """One recorded call."""

    command: str
    run_as: RunAs
    timeout: int


class MockRunner(CommandRunner):
    """Scriptable runner for tests."""

    def __init__(self, default_output: str = "[mock] executed", available: bool = True):
        self._default_output = default_output
        self._available = available
        self._scripts: dict[str, list[StepOutcome]] = {}
        self._call_log: list[MockCall] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "mock"

    @property
    def call_log(self) -> list[MockCall]:
        """All calls this mock has received, in order."""
        return self._call_log

    @property
    def commands(self) -> list[str]:
        """Just the command text of every call."""
        return [c.command for c in self._call_log]

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def is_available(self) -> bool:
        return self._available

    def script(self, command: str, *exit_codes: int, output: str = "") -> None:
        """Answer ``command`` with ``exit_codes`` in order; the last one repeats."""
        self._scripts[command] = [
            StepOutcome(exit_code=0, output=output or self._default_output)
            if code == 0
            else StepOutcome.failure(
                f"Command exited with code {code}", exit_code=code, output=output
            )
            for code in exit_codes
        ]

    def fail(self, command: str, exit_code: int = 1, output: str = "") -> None:
        """Make ``command`` fail on every call."""
        self.script(command, exit_code, output=output)

    def respond(self, command: str, *outcomes: StepOutcome) -> None:
        """Answer ``command`` with explicit outcomes (e.g. a timeout)."""
        self._scripts[command] = list(outcomes)

    def calls_for(self, command: str) -> int:
        return sum(1 for c in self._call_log if c.command == command)

    def run(
        self,
        command: Command,
        run_as: RunAs = RunAs.CURRENT,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> StepOutcome:
        label = command_label(command) if isinstance(command, list) else command
        with self._lock:
            self._call_log.append(MockCall(command=label, run_as=run_as, timeout=timeout))
            queue = self._scripts.get(label)
            if queue:
                return queue.pop(0) if len(queue) > 1 else queue[0]
        return StepOutcome(output=self._default_output)

    def reset(self) -> None:
        """Clear call log and scripted responses."""
        self._call_log.clear()
        self._scripts.clear()
