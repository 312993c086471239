"""Logging setup for the linguachat console application.

Command output goes to stdout, so log records never do: the console handler
writes terse lines to stderr and the rotating file keeps the full record.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path

__all__ = ["setup_logging"]

_DEFAULT_LOG_DIR = Path.home() / ".linguachat" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "redis")
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_CONSOLE_FORMAT = "linguachat: %(levelname)s: %(message)s"
_DEBUG_CONSOLE_FORMAT = "%(relativeCreated)7.0fms %(levelname)-7s %(name)s: %(message)s"
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    console_level: int | None = None,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and an optional stderr handler.

    ``console_level`` defaults to ``level``. At DEBUG the console lines carry the
    logger name and the time since start-up; otherwise they are one short line
    per record.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "linguachat.log"

    handlers: list[logging.Handler] = []
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(fmt=_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handlers.append(file_handler)

    if console:
        effective = level if console_level is None else console_level
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(effective)
        console_handler.setFormatter(
            logging.Formatter(_DEBUG_CONSOLE_FORMAT if effective <= logging.DEBUG else _CONSOLE_FORMAT)
        )
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("LINGUACHAT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
