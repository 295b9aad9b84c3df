"""
Structured Logging - JSON log lines with request correlation.

Modules keep using ``logging.getLogger(__name__)``; this module installs a
single root handler whose formatter adds the request, user and execution ids
of the current task (set through context variables by the HTTP middleware
and the chat orchestrator).
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict

# Context variables for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")
execution_id_var: ContextVar[str] = ContextVar("execution_id", default="")

_HANDLER_NAME = "chatline"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        req_id = request_id_var.get("")
        if req_id:
            log_entry["request_id"] = req_id
        usr_id = user_id_var.get("")
        if usr_id:
            log_entry["user_id"] = usr_id
        exec_id = execution_id_var.get("")
        if exec_id:
            log_entry["execution_id"] = exec_id

        extra = getattr(record, "extra_data", None)
        if extra:
            log_entry["data"] = extra

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Install the root handler once. Safe to call repeatedly."""
    root = logging.getLogger()
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            root.setLevel(level.upper())
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        ))
    root.addHandler(handler)
    root.setLevel(level.upper())


def set_request_context(request_id: str = "", user_id: str = "", execution_id: str = ""):
    """Set context variables for the current task."""
    if request_id:
        request_id_var.set(request_id)
    if user_id:
        user_id_var.set(user_id)
    if execution_id:
        execution_id_var.set(execution_id)


def generate_request_id() -> str:
    """Generate a short unique request ID."""
    return str(uuid.uuid4())[:12]
