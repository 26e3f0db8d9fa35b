"""Structured JSON logging with tenant/run context propagated via contextvars."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import uuid
from datetime import datetime, timezone

# Bound inside each task-body execution; asyncio tasks copy the context on creation
_tenant_var: contextvars.ContextVar[str] = contextvars.ContextVar("tenant_id", default="-")
_run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="-")

# LogRecord attributes, stripped from the "extra" dump
_STDLIB_FIELDS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName",
})


class JsonFormatter(logging.Formatter):
    """Emit one compact JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        data: dict = {
            "ts":        datetime.fromtimestamp(record.created, tz=timezone.utc)
                         .strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level":     record.levelname,
            "logger":    record.name,
            "msg":       record.message,
            "tenant_id": _tenant_var.get(),
            "run_id":    _run_id_var.get(),
        }
        # Caller-supplied extra= fields win over the context values
        for key, val in record.__dict__.items():
            if key not in _STDLIB_FIELDS and not key.startswith("_"):
                data[key] = val

        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


def setup_json_logging(level: str = "INFO") -> None:
    """Replace root logger's handlers with a JSON formatter on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # APScheduler logs every job submission at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def bind_run_context(tenant_id: str, run_id: str | None = None) -> str:
    """Bind tenant and run ids to the current async context. Returns the run id."""
    run_id = run_id or uuid.uuid4().hex[:8]
    _tenant_var.set(tenant_id)
    _run_id_var.set(run_id)
    return run_id


def get_tenant_id() -> str:
    return _tenant_var.get()


def get_run_id() -> str:
    return _run_id_var.get()
