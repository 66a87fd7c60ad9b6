from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_FILENAME = "pipeline.log"


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create or reuse a module-level logger with a simple stdout handler."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def configure_file_logging(logs_dir: str | Path | None, level: int = logging.INFO) -> Path | None:
    """Mirror every package logger into ``<logs_dir>/pipeline.log``.

    The handler is attached to the ``exam_pipeline`` root logger so module loggers
    created through :func:`get_logger` propagate into it. Calling twice with the
    same directory does not add a second handler.
    """
    if not logs_dir:
        return None
    path = Path(logs_dir)
    path.mkdir(parents=True, exist_ok=True)
    log_file = (path / LOG_FILENAME).resolve()

    root = logging.getLogger("exam_pipeline")
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_file:
            return log_file
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
    return log_file


__all__ = ["get_logger", "configure_file_logging"]
