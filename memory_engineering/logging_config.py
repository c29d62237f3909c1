"""
JSON logging for the Memory Engineering server.

Every MCP tool runs inside `with_request_id`, which tags the call with a
short request id and the project it targets, then emits one "Tool completed"
line carrying the duration and the outcome (``ok`` or the structured error
code the tool returned). Logs go to stderr; the stdio transport owns stdout.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from functools import wraps
from typing import Any, Callable, Optional

request_id_var: ContextVar[str] = ContextVar('request_id', default='')
project_path_var: ContextVar[str] = ContextVar('project_path', default='')

_EXTRA_FIELDS = ('duration_ms', 'tool_name', 'outcome')


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
        }
        project_path = project_path_var.get()
        if project_path:
            entry["project_path"] = project_path

        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", structured: bool = True, stream=None) -> None:
    """Replace the root handlers with a single stderr (or `stream`) handler."""
    handler = logging.StreamHandler(stream or sys.stderr)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s'))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def _outcome(result: Any) -> str:
    if isinstance(result, dict) and result.get("error"):
        return str(result["error"])
    return "ok"


def with_request_id(func: Callable) -> Callable:
    """Scope a request id and project path to one tool call and log its outcome."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        request_token = request_id_var.set(uuid.uuid4().hex[:8])
        project_token = project_path_var.set(kwargs.get("project_path") or "")
        started = time.perf_counter()
        outcome = "exception"

        try:
            result = await func(*args, **kwargs)
            outcome = _outcome(result)
            return result
        finally:
            logging.getLogger(func.__module__).info(
                "Tool completed",
                extra={
                    'duration_ms': round((time.perf_counter() - started) * 1000, 2),
                    'tool_name': func.__name__,
                    'outcome': outcome,
                },
            )
            project_path_var.reset(project_token)
            request_id_var.reset(request_token)

    return wrapper


def current_request_id() -> Optional[str]:
    """Request id of the tool call in progress, if any."""
    return request_id_var.get() or None
