# queuewarden/utils/logger.py
"""
QueueWarden Logger Utilities
----------------------------
Logging setup shared by every QueueWarden component.

Features:
 - JSONFormatter for log shipping and a human-friendly formatter for terminals
 - Console handler plus optional rotating file handler
 - Contextual logger adapter for structured + contextual logging
 - Helpers to configure logging from environment variables / settings

Usage:
    from queuewarden.utils.logger import configure_logging, get_logger, StructuredLoggerAdapter
    configure_logging(app_name="queuewarden", level="INFO", json=True)
    LOG = get_logger("queuewarden.worker")
    LAD = StructuredLoggerAdapter(LOG, {"component": "worker"})
    LAD.info("Restart queued", extra={"workload": "orders-app"})
"""

from __future__ import annotations

import os
import sys
import json as _json
import socket
import logging
import logging.handlers
import pathlib
import threading
import datetime
from typing import Any, Dict, Optional

# -------------------------
# Constants & Env defaults
# -------------------------
DEFAULT_LOG_LEVEL = os.getenv("QUEUEWARDEN_LOG_LEVEL", "INFO").upper()
DEFAULT_LOG_FILE = os.getenv("QUEUEWARDEN_LOG_FILE", "queuewarden.log")
DEFAULT_MAX_BYTES = int(os.getenv("QUEUEWARDEN_LOG_MAX_BYTES", str(50 * 1024 * 1024)))  # 50MB
DEFAULT_BACKUP_COUNT = int(os.getenv("QUEUEWARDEN_LOG_BACKUPS", "7"))

# LogRecord attributes that are not user-supplied "extra" fields
_RESERVED_ATTRS = frozenset((
    "args", "msg", "levelname", "levelno", "name", "pathname", "filename", "module",
    "lineno", "funcName", "exc_info", "exc_text", "stack_info", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    "message", "asctime",
))

# -------------------------
# Utilities
# -------------------------
def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except Exception:
        return "unknown-host"

def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")

def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS and not k.startswith("_")}

# -------------------------
# Formatters
# -------------------------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter that attaches standard fields:
      - ts, level, logger, message, module, line
      - service, hostname, pid
      - any structured `extra` fields (workload, action, queue, ...)
    """
    def __init__(self, service_name: str = "queuewarden", extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.service = service_name
        self.extra_fields = extra_fields or {}
        self.hostname = _get_hostname()
        self.pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _now_iso(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "service": self.service,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        extra = _extra_fields(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(self.extra_fields)
        return _json.dumps(payload, default=str)

class HumanFormatter(logging.Formatter):
    """
    Human-friendly formatter. Appends structured fields as key=value pairs.
    """
    def __init__(self, service_name: str = "queuewarden"):
        fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        super().__init__(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")
        self.service = service_name

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extra = _extra_fields(record)
        if extra:
            base = f"{base} | " + " ".join(f"{k}={v}" for k, v in sorted(extra.items()))
        return base

# -------------------------
# Configure logging
# -------------------------
_DEFAULT_CONFIGURED = False
_LOCK = threading.Lock()

def configure_logging(
    app_name: str = "queuewarden",
    level: Optional[str] = None,
    json: bool = True,
    console: bool = True,
    log_dir: Optional[str] = None,
    extra_fields: Optional[Dict[str, Any]] = None,
    force: bool = False,
):
    """
    Configure root logging for QueueWarden.

    Parameters:
      - app_name: service name inserted into logs
      - level: logging level (e.g. "INFO")
      - json: if True use JSONFormatter for console output
      - console: enable stdout handler
      - log_dir: if given, also write JSON logs to a rotating file there
      - force: reconfigure even if already configured (tests, CLI re-entry)
    """
    global _DEFAULT_CONFIGURED
    with _LOCK:
        if _DEFAULT_CONFIGURED and not force:
            return
        level_name = (level or DEFAULT_LOG_LEVEL).upper()
        numeric_level = getattr(logging, level_name, logging.INFO)

        root = logging.getLogger()
        root.setLevel(numeric_level)
        for h in list(root.handlers):
            if getattr(h, "_queuewarden", False):
                root.removeHandler(h)

        handlers = []
        if console:
            ch = logging.StreamHandler(stream=sys.stdout)
            ch.setFormatter(JSONFormatter(app_name, extra_fields) if json else HumanFormatter(app_name))
            handlers.append(ch)

        if log_dir:
            pathlib.Path(log_dir).mkdir(parents=True, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, DEFAULT_LOG_FILE),
                maxBytes=DEFAULT_MAX_BYTES,
                backupCount=DEFAULT_BACKUP_COUNT,
                encoding="utf-8",
            )
            # files are better as JSON for log shipping
            fh.setFormatter(JSONFormatter(app_name, extra_fields))
            handlers.append(fh)

        for h in handlers:
            h.setLevel(numeric_level)
            h._queuewarden = True
            root.addHandler(h)

        # third-party chatter
        logging.getLogger("aio_pika").setLevel(logging.WARNING)
        logging.getLogger("aiormq").setLevel(logging.WARNING)
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

        _DEFAULT_CONFIGURED = True

def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Return a standard logger under the queuewarden namespace. Call configure_logging first.
    """
    return logging.getLogger(name or "queuewarden")

# -------------------------
# Structured Logger Adapter
# -------------------------
class StructuredLoggerAdapter(logging.LoggerAdapter):
    """
    Attach structured context to logs conveniently. Works well with JSONFormatter.
    Per-call `extra` wins over adapter context.
    """
    def process(self, msg, kwargs):
        extra = dict(self.extra) if isinstance(self.extra, dict) else {}
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

__all__ = [
    "configure_logging",
    "get_logger",
    "JSONFormatter",
    "HumanFormatter",
    "StructuredLoggerAdapter",
]
