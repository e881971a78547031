"""
Integrity verifier — run upstream installer scripts only when pinned.

Replaces ``curl ... | bash``. For a verified installer:

    1. resolve the tool in the trust store → {url, sha256}
    2. download to memory (with a timeout)
    3. SHA-256 the bytes; on mismatch STOP (nothing is written or run)
    4. write to a temp file, run ``<runner> <file> <args...>`` as the
       requested identity, delete the file

A mismatch is an integrity violation: a possible supply-chain
compromise, never retried. A failed or slow download is an ordinary
step failure and is retried by the caller's policy.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import subprocess
import tempfile
from collections.abc import Callable, Sequence

from flywheel.adapters.base import CommandRunner
from flywheel.core.models.module import RunAs
from flywheel.core.models.result import TIMEOUT_EXIT_CODE, ErrorKind, StepOutcome
from flywheel.core.models.trust import TrustEntry, TrustStore

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 30


class IntegrityViolation(Exception):
    """Downloaded content does not match its pinned hash."""

    def __init__(self, tool: str, url: str, expected: str, actual: str):
        self.tool = tool
        self.url = url
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"SHA256 mismatch for {tool} ({url})\n"
            f"Expected: {expected}\n"
            f"Got:      {actual}\n"
            "The script may have been tampered with; refusing to execute."
        )


class DownloadError(Exception):
    """The installer could not be fetched."""

    def __init__(self, message: str, timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message)


def curl_download(url: str, timeout: int = DOWNLOAD_TIMEOUT) -> bytes:
    """Fetch ``url`` with curl (HTTPS only, follows redirects).

    Raises:
        DownloadError: On any failure, including timeout.
    """
    try:
        result = subprocess.run(
            ["curl", "-fsSL", "--proto", "=https", "--max-time", str(timeout), url],
            capture_output=True,
            timeout=timeout + 5,
        )
    except subprocess.TimeoutExpired as e:
        raise DownloadError(f"Download timed out after {timeout}s: {url}", timed_out=True) from e
    except OSError as e:
        raise DownloadError(f"Download error: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace")[:200]
        # curl exit 28 = operation timed out
        raise DownloadError(
            f"Download failed (exit {result.returncode}): {stderr}",
            timed_out=result.returncode == 28,
        )
    return result.stdout


def verify_content(tool: str, entry: TrustEntry, content: bytes) -> str:
    """Hash ``content`` and compare against the pin.

    Returns:
        The actual hex digest.

    Raises:
        IntegrityViolation: On mismatch.
    """
    actual = hashlib.sha256(content).hexdigest()
    if actual != entry.sha256:
        raise IntegrityViolation(tool, entry.url, entry.sha256, actual)
    return actual


_UNSAFE_NAME_RE = re.compile(r"[^\w.-]")


def _safe_prefix(tool_ref: str) -> str:
    """Trust-store keys may contain path separators; keep temp names flat."""
    return _UNSAFE_NAME_RE.sub("_", tool_ref)


def cleanup_script(path: str) -> None:
    """Remove a temporary script file."""
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove installer temp file %s: %s", path, e)


class IntegrityVerifier:
    """Fetch, verify and run pinned installer scripts."""

    def __init__(
        self,
        trust_store: TrustStore,
        runner: CommandRunner,
        fetch: Callable[[str, int], bytes] = curl_download,
        download_timeout: int = DOWNLOAD_TIMEOUT,
    ):
        self._store = trust_store
        self._runner = runner
        self._fetch = fetch
        self._download_timeout = download_timeout

    def fetch_and_run(
        self,
        tool_ref: str,
        mode: str = "bash",
        identity: RunAs = RunAs.TARGET_USER,
        args: Sequence[str] = (),
        timeout: int = 600,
    ) -> StepOutcome:
        """Verify and execute the pinned installer for ``tool_ref``.

        Never raises. An integrity failure comes back with
        ``error_kind=integrity_violation`` and nothing executed.
        """
        entry = self._store.resolve(tool_ref)
        if entry is None:
            return StepOutcome.failure(
                f"No pinned checksum for installer '{tool_ref}'; refusing to execute",
                error_kind=ErrorKind.INTEGRITY_VIOLATION,
            )

        logger.info("Downloading %s installer from %s", tool_ref, entry.url)
        try:
            content = self._fetch(entry.url, self._download_timeout)
        except DownloadError as e:
            return StepOutcome.failure(
                str(e), exit_code=TIMEOUT_EXIT_CODE if e.timed_out else 1
            )

        try:
            digest = verify_content(tool_ref, entry, content)
        except IntegrityViolation as e:
            logger.error("%s", e)
            return StepOutcome.failure(str(e), error_kind=ErrorKind.INTEGRITY_VIOLATION)

        logger.debug("Verified %s (%d bytes, sha256 %s)", tool_ref, len(content), digest)

        try:
            prefix = f"flywheel_{_safe_prefix(tool_ref)}_"
            fd, path = tempfile.mkstemp(suffix=".sh", prefix=prefix)
        except OSError as e:
            return StepOutcome.failure(f"Could not stage installer for {tool_ref}: {e}")
        try:
            try:
                os.write(fd, content)
            finally:
                os.close(fd)
            # Readable by the target user when run through sudo -u
            os.chmod(path, 0o755)
            return self._runner.run([mode, path, *args], identity, timeout)
        except OSError as e:
            return StepOutcome.failure(f"Could not stage installer for {tool_ref}: {e}")
        finally:
            cleanup_script(path)
