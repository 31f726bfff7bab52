"""
Logging setup for the stackdeploy CLI.

The root logger gets one stderr handler whose format tracks the level:
bare messages by default, timestamps and logger names with -v, file:line
with --debug. Run output itself goes through click, not logging.

Console level precedence:
    --debug / -v / -q  >  STACKDEPLOY_LOG_LEVEL  >  WARNING

A second, always-detailed handler is added when STACKDEPLOY_LOG_FILE is
set (its level from STACKDEPLOY_LOG_FILE_LEVEL).
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Mapping

ENV_LOG_LEVEL = "STACKDEPLOY_LOG_LEVEL"
ENV_LOG_FILE = "STACKDEPLOY_LOG_FILE"
ENV_LOG_FILE_LEVEL = "STACKDEPLOY_LOG_FILE_LEVEL"

# (most verbose level it applies to, format, datefmt), checked in order
_CONSOLE_FORMATS: tuple[tuple[int, str, str | None], ...] = (
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(message)s", None),
)

_FILE_FORMAT = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# AWS SDK loggers log every request at INFO/DEBUG
_SDK_LOGGERS = ("boto3", "botocore", "urllib3", "s3transfer")


def resolve_level(
    *,
    verbose: bool = False,
    quiet: bool = False,
    debug: bool = False,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Console level name from CLI flags, falling back to the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    environ = os.environ if environ is None else environ
    return environ.get(ENV_LOG_LEVEL, "WARNING")


def _level_number(name: str | None) -> int:
    value = getattr(logging, name.upper(), None) if name else None
    return value if isinstance(value, int) else logging.WARNING


def _console_handler(level: int) -> logging.Handler:
    fmt, datefmt = next((f, d) for limit, f, d in _CONSOLE_FORMATS if level <= limit)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
    return handler


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Replace the root logger's handlers for this process.

    Args:
        level: Console level name. Unknown names mean WARNING.
        log_file: Optional log file path.
        log_file_level: Level for the file; defaults to ``level``.
        quiet_third_party: Hold the AWS SDK loggers at WARNING unless
            the console is at DEBUG.
    """
    console_level = _level_number(level)
    handlers = [_console_handler(console_level)]
    if log_file:
        file_level = _level_number(log_file_level) if log_file_level else console_level
        handlers.append(_file_handler(log_file, file_level))

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(min(h.level for h in handlers))

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _SDK_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
