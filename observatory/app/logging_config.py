"""Logging setup: console, a rotating runtime log and a separate event-pipeline log."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

RUNTIME_LOG = "monitor-runtime.log"
EVENTS_LOG = "monitor-events.log"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Discards, stale-field rejections and target transitions also go to EVENTS_LOG
EVENT_PIPELINE_LOGGERS = (
    "observatory.app.normalizer",
    "observatory.app.session_machine",
)

# Third-party loggers that are too chatty at the service level
LIBRARY_LEVELS = {
    "websockets": "INFO",  # every frame at debug
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "uvicorn.access": "WARNING",
}


def _rotating_file(path: Path, level: str, retention_days: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "default",
        "level": level,
        "filename": str(path),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> Path:
    """Install handlers for the monitor and return the log directory in use."""

    log_dir = Path(log_dir if log_dir is not None else Path(__file__).resolve().parents[2] / "logs").expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    loggers: Dict[str, Dict[str, Any]] = {name: {"level": lib_level} for name, lib_level in LIBRARY_LEVELS.items()}
    for name in EVENT_PIPELINE_LOGGERS:
        # propagate as well, so pipeline messages still reach console and runtime log
        loggers[name] = {"handlers": ["events_file"], "level": "DEBUG", "propagate": True}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {"class": "logging.StreamHandler", "formatter": "default", "level": level},
                "runtime_file": _rotating_file(log_dir / RUNTIME_LOG, level, retention_days),
                "events_file": _rotating_file(log_dir / EVENTS_LOG, "DEBUG", retention_days),
            },
            "loggers": loggers,
            "root": {"level": level, "handlers": ["console", "runtime_file"]},
        }
    )
    logging.getLogger(__name__).debug("Logging configured at %s (dir=%s)", level, log_dir)
    return log_dir


__all__ = ["configure_logging", "RUNTIME_LOG", "EVENTS_LOG"]
