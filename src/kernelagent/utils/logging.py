"""Logging setup for the kernel agent: rotating log file plus optional console."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["get_log_path", "resolve_level", "setup_logging"]

_DEFAULT_LOG_DIR = Path.home() / ".kernelagent" / "logs"
_LOG_FILE_NAME = "kernelagent.log"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def resolve_level(debug: bool = False) -> int:
    """Pick the root level: ``KERNELAGENT_LOG_LEVEL`` wins, then the debug flag."""

    named = os.environ.get("KERNELAGENT_LOG_LEVEL", "").strip().upper()
    if named:
        level = logging.getLevelName(named)
        if isinstance(level, int):
            return level
        logging.getLogger(__name__).warning("Ignoring unknown KERNELAGENT_LOG_LEVEL=%s", named)
    return logging.DEBUG if debug else logging.INFO


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging once and return the log file path.

    Later calls are no-ops unless ``force`` is set.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    log_path = _resolve_log_dir(log_dir) / _LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers = _build_handlers(
        log_path,
        level=level,
        console=console,
        max_bytes=max_bytes,
        backup_count=backup_count,
    )
    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    quiet_level = max(level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    return _LOG_PATH


def _build_handlers(
    log_path: Path,
    *,
    level: int,
    console: bool,
    max_bytes: int,
    backup_count: int,
) -> list[logging.Handler]:
    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("KERNELAGENT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()
