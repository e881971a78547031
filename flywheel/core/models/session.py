"""
Session export schema — shareable record of an agent session.

Exports are sanitized before they leave the machine; every free-text
field here is expected to be post-redaction. ``schema_version`` lets
the shape evolve; readers warn on versions they do not know.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

SESSION_SCHEMA_VERSION = 1
KNOWN_AGENTS = ("claude-code", "codex", "gemini")


class SessionStats(BaseModel):
    turns: int = 0
    files_created: int = 0
    files_modified: int = 0
    commands_run: int = 0


class SessionOutcome(BaseModel):
    type: Literal["file_created", "file_modified", "command_run"]
    path: str | None = None
    description: str = ""


class TranscriptTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: str = ""


class SessionExport(BaseModel):
    """Version 1 session export."""

    schema_version: int = SESSION_SCHEMA_VERSION
    exported_at: str = ""
    session_id: str
    agent: str
    model: str = ""
    summary: str = ""
    duration_minutes: float = 0
    stats: SessionStats | None = None
    outcomes: list[SessionOutcome] = Field(default_factory=list)
    key_prompts: list[str] = Field(default_factory=list)
    sanitized_transcript: list[TranscriptTurn] = Field(default_factory=list)
