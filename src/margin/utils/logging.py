"""Logging setup for the Margin console and engine.

The console shares stdout with the chat transcript, so log records go to a
rotating file and only warnings reach stderr. ``apply_settings`` switches the
level to DEBUG when ``Settings.debug_logging`` is on.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..services.settings import Settings

__all__ = ["LOG_FILE_NAME", "apply_settings", "get_log_path", "level_for", "setup_logging"]

LOG_FILE_NAME = "margin.log"
_LOG_DIR_ENV = "MARGIN_LOG_DIR"
_DEFAULT_LOG_DIR = Path.home() / ".margin" / "logs"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

_installed: list[logging.Handler] = []
_log_path: Path | None = None
_level: int | None = None


def level_for(settings: "Settings", *, debug: bool = False) -> int:
    return logging.DEBUG if debug or settings.debug_logging else logging.INFO


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the rotating file handler (and a stderr handler) on the root logger.

    Repeated calls are no-ops unless ``force`` is set, in which case the
    handlers installed by the previous call are replaced. Handlers added by
    anyone else are left alone.
    """

    global _log_path, _level
    if _log_path is not None and not force:
        return _log_path

    directory = Path(log_dir or os.environ.get(_LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / LOG_FILE_NAME

    _remove_installed()
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)
    file_handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    _installed.append(file_handler)
    if console:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(max(level, logging.WARNING))
        stderr_handler.setFormatter(formatter)
        _installed.append(stderr_handler)

    root = logging.getLogger()
    for handler in _installed:
        root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _log_path = path
    _level = level
    return path


def apply_settings(settings: "Settings", *, debug: bool = False, log_dir: Path | str | None = None) -> Path:
    """Reconfigure logging for ``settings`` when the required level changed."""

    level = level_for(settings, debug=debug)
    if _log_path is not None and _level == level:
        return _log_path
    logging.getLogger(__name__).debug("Switching log level to %s", logging.getLevelName(level))
    return setup_logging(level, log_dir=log_dir, force=True)


def get_log_path() -> Path | None:
    return _log_path


def _remove_installed() -> None:
    root = logging.getLogger()
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()
