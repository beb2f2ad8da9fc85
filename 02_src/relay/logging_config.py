"""Structured logging for the relay process."""

import json
import logging
import logging.config
import os
from datetime import datetime, timezone
from pathlib import Path

from .config import DEFAULT_LOG_PATH

# Record attributes promoted to top-level JSON fields when present
CONTEXT_FIELDS = ("connection_id", "identity_id", "event")

# Chatty third-party loggers kept at WARNING unless LOG_LEVEL is DEBUG
QUIET_LOGGERS = ("aiosqlite", "httpx", "httpcore", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class ConnectionLogger(logging.LoggerAdapter):
    """Stamps every record with the connection (and identity, once bound)."""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **fields) -> "ConnectionLogger":
        return ConnectionLogger(self.logger, {**self.extra, **fields})


def build_logging_config(log_level: str, log_file: str | Path) -> dict:
    """dictConfig schema: JSON to a rotating file and to stdout."""
    level = log_level.upper()
    quiet_level = "DEBUG" if level == "DEBUG" else "WARNING"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": "relay.logging_config.JSONFormatter"},
        },
        "handlers": {
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "filename": str(log_file),
                "maxBytes": 10 * 1024 * 1024,  # 10 MB
                "backupCount": 5,
                "formatter": "json",
                "encoding": "utf-8",
            },
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {name: {"level": quiet_level} for name in QUIET_LOGGERS},
        "root": {"level": level, "handlers": ["file", "console"]},
    }


def setup_logging(
    log_level: str | None = None,
    log_file: str | Path | None = None,
) -> None:
    """
    Configure logging for the relay process.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
                   Defaults to the LOG_LEVEL env var, then INFO.
        log_file: Log file path. Defaults to 04_logs/app.log.
    """
    log_level = log_level or os.getenv("LOG_LEVEL", "INFO")
    log_path = Path(log_file) if log_file else DEFAULT_LOG_PATH
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(build_logging_config(log_level, log_path))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def connection_logger(name: str, connection_id: str) -> ConnectionLogger:
    """Logger whose records carry ``connection_id``."""
    return ConnectionLogger(logging.getLogger(name), {"connection_id": connection_id})
