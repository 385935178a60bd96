"""Logging setup for convoy."""

from __future__ import annotations

import logging
import os
from pathlib import Path

_CONFIGURED = False
_DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"
_FILE_HANDLER: logging.Handler | None = None
_FILE_HANDLER_PATH: str | None = None


def configure_logging(level: str | None = None, *, log_file: str | None = None) -> None:
    """Attach the console handler to the ``convoy`` logger and an optional file sink.

    ``CONVOY_LOG_LEVEL`` and ``CONVOY_LOG_FILE`` override the arguments when set.
    """

    global _CONFIGURED, _FILE_HANDLER, _FILE_HANDLER_PATH

    requested_level = os.getenv("CONVOY_LOG_LEVEL") or level or "INFO"
    numeric_level = _as_level(requested_level)

    logger = logging.getLogger("convoy")

    if not _CONFIGURED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT, _DEFAULT_DATEFMT))
        logger.addHandler(handler)
        logger.setLevel(numeric_level)
        logger.propagate = True
        _CONFIGURED = True
    else:
        logger.setLevel(numeric_level)

    target_path = os.getenv("CONVOY_LOG_FILE") or log_file
    if not target_path:
        return

    if _FILE_HANDLER_PATH == target_path:
        return

    if _FILE_HANDLER is not None:
        logger.removeHandler(_FILE_HANDLER)
        _FILE_HANDLER.close()
        _FILE_HANDLER = None
        _FILE_HANDLER_PATH = None

    file_path = Path(target_path)
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(file_path, encoding="utf-8")
    except OSError:
        logger.warning("Could not open log file %s; logging to console only", file_path)
        return

    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT, _DEFAULT_DATEFMT))
    logger.addHandler(handler)
    _FILE_HANDLER = handler
    _FILE_HANDLER_PATH = target_path


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the ``convoy`` namespace."""

    qualified = name if name.startswith("convoy") else f"convoy.{name}"
    return logging.getLogger(qualified)


def _as_level(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        pass

    return getattr(logging, str(value).upper(), logging.INFO)
