"""JSON logging for the engine and its HTTP surface.

Every record is one JSON object per line. The request correlation id and any
engine fields passed through ``extra=`` (instance, stage, step, actor...) are
lifted to top-level keys so halted or disputed instances can be traced.
"""
import json
import logging
import os
import sys
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from ..config.settings import settings
from .time import utc_now, format_iso


correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

ENGINE_FIELDS = (
    "instance_id", "flow_chain_id", "stage_id", "step_id", "actor_id",
    "role_id", "asset_id", "outcome", "status", "error_code",
)

QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "pymongo": logging.WARNING,
    "apscheduler": logging.WARNING,
}


class JsonFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": format_iso(utc_now()),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        entry.update({
            name: getattr(record, name)
            for name in ENGINE_FIELDS
            if getattr(record, name, None) is not None
        })

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _rotating(filename: str, level: int = logging.NOTSET) -> logging.Handler:
    handler = RotatingFileHandler(
        os.path.join(settings.logs_path, filename),
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    return handler


def setup_logging() -> None:
    """Route the root logger to stdout and, unless disabled, rotating files.

    ``flowchain.log`` receives everything at the configured level and
    ``halts.log`` only errors, which is where blocked and failed instances land.
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_to_file:
        os.makedirs(settings.logs_path, exist_ok=True)
        handlers.append(_rotating("flowchain.log"))
        handlers.append(_rotating("halts.log", logging.ERROR))

    formatter = JsonFormatter()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(settings.log_level.upper())
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_correlation_id(correlation_id: Optional[str]) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()
