"""
Structured logging for the control plane.

- Production / staging: one JSON object per line (request_id, tenant_id, actor)
- Development: readable single-line format
- Audit fields passed via ``extra=`` (flag_key, operation, change_type, source)
  are carried into the JSON output
- DSN passwords and the rollout salt never reach the log stream
"""

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from flagops.config import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="-")
actor_ctx: ContextVar[str] = ContextVar("actor", default="-")

AUDIT_FIELDS = ("flag_key", "operation", "change_type", "source")

_DSN_PASSWORD = re.compile(r"(://[^:/@\s]+:)[^@\s]+@")


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


def redact(text: str) -> str:
    """Strip DSN passwords and the rollout salt from a log line."""
    text = _DSN_PASSWORD.sub(r"\1***@", text)
    salt = settings.FLAG_BUCKET_SALT
    if salt and len(salt) >= 4:
        text = text.replace(salt, "***")
    return text


def _context() -> Dict[str, str]:
    return {
        "request_id": request_id_ctx.get(),
        "tenant_id": tenant_id_ctx.get(),
        "actor": actor_ctx.get(),
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }
        entry.update({k: v for k, v in _context().items() if v != "-"})
        for field in AUDIT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(entry, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):
    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-22s | [%(request_id)s %(actor)s] %(message)s"

    def format(self, record: logging.LogRecord) -> str:
        ctx = _context()
        record.request_id = ctx["request_id"]
        record.actor = ctx["actor"]
        return redact(super().format(record))


def setup_logging() -> None:
    """Install the single stdout handler on the root logger."""
    structured = settings.is_deployed
    level = settings.LOG_LEVEL or ("INFO" if structured else "DEBUG")

    handler = logging.StreamHandler(sys.stdout)
    if structured:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(HumanFormatter(HumanFormatter.FORMAT, datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in ("uvicorn.access", "sqlalchemy.engine", "alembic.runtime.migration", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
