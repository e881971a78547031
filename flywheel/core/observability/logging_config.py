"""
Logging setup for the flywheel CLI.

main.py calls ``setup_logging`` once at startup. Every module logs through
``logger = logging.getLogger(__name__)`` and inherits this configuration.

Level precedence:
    --debug  >  --verbose  >  --quiet  >  FLYWHEEL_LOG_LEVEL  >  WARNING

A second, usually more detailed, sink can be added with FLYWHEEL_LOG_FILE
and FLYWHEEL_LOG_FILE_LEVEL. Both sinks pass through ``RedactingFilter``.
"""

from __future__ import annotations

import logging
import sys

from flywheel.core.services.redaction import sanitize_text

# Console formats keyed by the most verbose level they apply to.
_CONSOLE_FORMATS: list[tuple[int, str, str | None]] = [
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(threadName)s %(name)s:%(lineno)d  %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(message)s", None),
]

_FILE_FORMAT = "%(asctime)s %(levelname)-5s %(threadName)s %(name)s:%(lineno)d  %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Library loggers held at WARNING below DEBUG
_NOISY_LOGGERS = ("urllib3", "charset_normalizer")


class RedactingFilter(logging.Filter):
    """Scrub secrets from every record before any handler formats it.

    Step output and command lines end up in log messages; tokens in
    them must not reach the console or the log file.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        clean = sanitize_text(message)
        if clean != message:
            record.msg = clean
            record.args = None
        return True


def resolve_level(
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    env_level: str | None = None,
) -> str:
    """Pick the console level from CLI flags, falling back to the env var."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return (env_level or "WARNING").upper()


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Configure process-wide logging.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path of an extra file sink.
        log_file_level: Level for the file sink; defaults to ``level``.
        quiet_third_party: Hold noisy library loggers at WARNING unless
            the console is at DEBUG.
    """
    console_level = _parse_level(level)
    redactor = RedactingFilter()
    handlers: list[logging.Handler] = [_console_handler(console_level)]

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
        handlers.append(fh)

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        handler.addFilter(redactor)
        root.addHandler(handler)
    root.setLevel(min(h.level for h in handlers))

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def _console_handler(level: int) -> logging.Handler:
    fmt, datefmt = _CONSOLE_FORMATS[-1][1:]
    for threshold, candidate, candidate_datefmt in _CONSOLE_FORMATS:
        if level <= threshold:
            fmt, datefmt = candidate, candidate_datefmt
            break
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _parse_level(level: str | None) -> int:
    """Level name to its numeric constant; unknown names mean WARNING."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
