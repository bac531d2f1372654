"""
Logging configuration for kubedeck.

Configures the root logger once (colour console, optional JSON and rotating
file output) and routes structlog through the same stdlib handlers.
"""
import json
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

import structlog

from ..config import get_settings
from .request_context import request_id_var, cluster_id_var

_CONFIGURED = False

_RESERVED_ATTRS = {
    "args", "asctime", "created", "exc_info", "exc_text", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs", "message", "msg", "name",
    "pathname", "process", "processName", "relativeCreated", "stack_info", "thread",
    "threadName", "taskName",
}


class ContextFilter(logging.Filter):
    """Inject request_id / cluster_id into every LogRecord."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        rid = getattr(record, "request_id", None) or request_id_var.get()
        cid = getattr(record, "cluster_id", None) or cluster_id_var.get()

        if rid is not None:
            record.request_id = rid
        if cid is not None:
            record.cluster_id = cid

        if not hasattr(record, "service"):
            record.service = "kubedeck"
        return True


class ColoredFormatter(logging.Formatter):
    """Console formatter with ANSI level colours."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        log_color = self.COLORS.get(record.levelname, self.RESET)
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{log_color}{record.levelname}{self.RESET}"
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """Structured JSON formatter.

    Emits time, level, name and message, merges extra attributes and masks
    anything that looks like credential material.
    """

    REDACT_KEYS = {
        "password", "passwd", "secret", "token", "authorization", "jwt",
        "kubeconfig", "kubeconfig_data", "sealed_kubeconfig", "encryption_key", "key",
    }

    def __init__(self, datefmt: Optional[str] = None) -> None:
        super().__init__(datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        rid = getattr(record, "request_id", None) or request_id_var.get()
        if rid:
            payload["request_id"] = rid

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            safe_key = str(key)
            payload[safe_key] = self._redact(value) if safe_key.lower() in self.REDACT_KEYS else value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)

    @staticmethod
    def _redact(value: Any) -> str:
        try:
            text = str(value)
        except Exception:
            text = "<redacted>"
        return "***REDACTED***" if text else text


def _redact_event(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in list(event_dict):
        if key.lower() in JSONFormatter.REDACT_KEYS:
            event_dict[key] = "***REDACTED***"
    return event_dict


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            _redact_event,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"], sort_keys=True),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging(
    name: Optional[str] = None,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    use_color: bool = True,
) -> logging.Logger:
    """Configure the root logger (idempotent).

    Args:
        name: logger to return
        level: root level, defaults to ``LOG_LEVEL``
        log_file: optional rotating log file, defaults to ``LOG_FILE``
        use_color: colourise console output when attached to a TTY

    Returns:
        logging.Logger: the named logger
    """
    global _CONFIGURED
    logger = logging.getLogger(name or "kubedeck")

    if _CONFIGURED:
        return logger

    settings = get_settings()
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    for h in list(root.handlers):
        root.removeHandler(h)

    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.is_debug else logging.INFO)
    console_handler.addFilter(context_filter)

    if settings.log_json:
        console_formatter = JSONFormatter(datefmt=settings.log_date_format)
    elif use_color and sys.stdout.isatty():
        console_formatter = ColoredFormatter(settings.log_format, datefmt=settings.log_date_format)
    else:
        console_formatter = logging.Formatter(settings.log_format, datefmt=settings.log_date_format)

    console_handler.setFormatter(console_formatter)
    root.addHandler(console_handler)

    file_path = log_file or settings.log_file
    if file_path:
        log_path = Path(file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(context_filter)

        if settings.log_json:
            file_formatter = JSONFormatter(datefmt=settings.log_date_format)
        else:
            file_formatter = logging.Formatter(settings.log_format, datefmt=settings.log_date_format)
        file_handler.setFormatter(file_formatter)
        root.addHandler(file_handler)

    # uvicorn/fastapi go through the root handlers
    for log_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        l = logging.getLogger(log_name)
        l.handlers = []
        l.propagate = True

    # The kubernetes client logs request bodies at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    _configure_structlog()

    _CONFIGURED = True
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a stdlib logger."""
    return logging.getLogger(name)
