"""
Logging setup — plain or JSON output with request correlation.

Module code logs through ``logging.getLogger(__name__)``; this module only
installs the root handler and carries the per-request context.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar

# Context variables for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

_configured = False


class RequestContextFilter(logging.Filter):
    """Attach request_id / user_id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("")
        record.user_id = user_id_var.get("")
        return True


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        req_id = getattr(record, "request_id", "")
        if req_id:
            log_entry["request_id"] = req_id
        usr_id = getattr(record, "user_id", "")
        if usr_id:
            log_entry["user_id"] = usr_id

        bot_id = getattr(record, "bot_id", None)
        if bot_id:
            log_entry["bot_id"] = bot_id

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(log_entry)


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Install the root handler once."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter())
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s [%(name)s] %(request_id)s %(message)s"
        ))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level.upper())
    # httpx logs every request URL at INFO, which includes bot tokens for Telegram
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True


def set_request_context(request_id: str = "", user_id: str = "") -> None:
    """Set context variables for the current request."""
    if request_id:
        request_id_var.set(request_id)
    if user_id:
        user_id_var.set(user_id)


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return str(uuid.uuid4())[:12]
