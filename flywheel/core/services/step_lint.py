"""
Step lint — flag command steps that read like prose.

Steps are typed when the manifest is authored: a ``run`` step is a
command, a ``description`` step is documentation. This heuristic only
produces warnings for ``run`` steps that look like someone typed a
sentence into the wrong field. It never changes what executes.
"""

from __future__ import annotations

import re

from flywheel.core.models.module import CommandStep, Module

# First tokens that are clearly commands
COMMAND_VERBS = frozenset({
    "apt", "apt-get", "dpkg", "dnf", "yum", "apk", "pacman", "zypper", "snap", "brew",
    "curl", "wget", "git", "gpg", "tar", "unzip",
    "bash", "sh", "zsh", "source", "export", "set", "eval", "exec", "env",
    "echo", "printf", "cat", "tee", "test", "command", "type", "which",
    "mkdir", "cp", "mv", "rm", "ln", "chmod", "chown", "touch", "install",
    "sudo", "runuser", "su", "systemctl", "service", "usermod", "useradd",
    "npm", "npx", "bun", "bunx", "pnpm", "yarn", "node", "deno",
    "pip", "pip3", "pipx", "uv", "uvx", "python", "python3",
    "cargo", "rustup", "go", "gem", "mise", "asdf",
    "if", "for", "while", "case", "true", "false", "cd", "[", "[[",
})

_SHELL_SYNTAX_RE = re.compile(r"[|&;<>$`(){}]|(?:^|\s)--?\w")


def looks_like_description(text: str) -> bool:
    """Heuristic: sentence-case prose with no recognizable command verb."""
    stripped = text.strip()
    if not stripped:
        return False

    first_line = stripped.splitlines()[0]
    words = first_line.split()
    first = words[0]

    if first in COMMAND_VERBS or first.startswith(("./", "/", "~", "$")):
        return False
    if "=" in first or _SHELL_SYNTAX_RE.search(first_line):
        return False
    if len(words) < 3:
        return False

    sentence_case = first[0].isupper() and (len(first) == 1 or first[1:].islower())
    return sentence_case


def lint_module(module: Module) -> list[str]:
    """Warnings for one module's command steps."""
    warnings: list[str] = []
    for section, steps in (("install", module.install), ("verify", module.verify)):
        for idx, step in enumerate(steps):
            if isinstance(step, CommandStep) and looks_like_description(step.run):
                warnings.append(
                    f"Module '{module.id}' {section}[{idx}] looks like a description, "
                    f"not a command: {step.label!r} (use 'description:' if intended)"
                )
    return warnings
