# tierstore/utils/logger.py
"""
Logging setup for tierstore.

Modules own a module-level ``logging.getLogger("tierstore.<area>")``;
``get_logger`` resolves short names under the same root. Applications and the CLI
call ``configure_logging()`` once to attach a stdout handler to the ``tierstore``
root logger, either human-readable or one JSON object per line.

Usage:
    from tierstore.utils.logger import configure_logging, get_logger
    configure_logging(level="DEBUG", json_logs=True)
    log = get_logger("tierstore.router")
    log.info("stored %s", ref)
"""

from __future__ import annotations

import os
import sys
import json
import socket
import logging
from typing import Any, Dict, Optional

from tierstore.utils.common import now_iso

ROOT_LOGGER = "tierstore"
DEFAULT_LOG_LEVEL = os.getenv("TIERSTORE_LOG_LEVEL", "INFO").upper()

_STANDARD_ATTRS = frozenset((
    "args", "msg", "levelname", "levelno", "name", "pathname", "filename", "module",
    "lineno", "funcName", "exc_info", "exc_text", "stack_info", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    "message", "asctime",
))


def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown-host"


class JSONFormatter(logging.Formatter):
    """
    JSON formatter with ts, level, logger, message, module, line, hostname, pid,
    plus any ``extra={...}`` fields under ``extra``.
    """
    def __init__(self, service_name: str = "tierstore"):
        super().__init__()
        self.service = service_name
        self.hostname = _get_hostname()
        self.pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": now_iso(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "service": self.service,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        record_id = getattr(record, "record_id", None)
        if record_id:
            base = f"{base} | record={record_id}"
        return base


def configure_logging(level: Optional[str] = None, json_logs: bool = False) -> logging.Logger:
    """
    Install a single stdout handler on the tierstore root logger.
    Safe to call more than once; the previous handler is replaced.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel((level or DEFAULT_LOG_LEVEL).upper())
    for h in list(root.handlers):
        if getattr(h, "_tierstore_handler", False):
            root.removeHandler(h)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_logs else HumanFormatter())
    handler._tierstore_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not name:
        return logging.getLogger(ROOT_LOGGER)
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
