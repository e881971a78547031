"""
Trust store model — pinned sources and hashes for upstream installers.

Loaded from checksums.yaml:

    installers:
      bun:
        url: https://bun.sh/install
        sha256: 3f1c...e9
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


class TrustEntry(BaseModel):
    """A single pinned installer."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str
    sha256: str

    @field_validator("url")
    @classmethod
    def _https_only(cls, value: str) -> str:
        if not value.startswith("https://"):
            raise ValueError("installer source must be an https:// URL")
        return value

    @field_validator("sha256")
    @classmethod
    def _hex_digest(cls, value: str) -> str:
        # Accept an optional "sha256:" prefix
        digest = value.strip().removeprefix("sha256:").lower()
        if not _SHA256_RE.match(digest):
            raise ValueError("sha256 must be 64 hexadecimal characters")
        return digest


class TrustStore(BaseModel):
    """Mapping of tool identifier → pinned source and hash."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    installers: dict[str, TrustEntry] = Field(default_factory=dict)

    def resolve(self, tool: str) -> TrustEntry | None:
        return self.installers.get(tool)

    def __contains__(self, tool: object) -> bool:
        return tool in self.installers
