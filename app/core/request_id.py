"""Request ID generation and propagation into log records."""

import logging
import uuid
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return uuid.uuid4().hex


def get_request_id() -> str:
    """Get current request ID from context."""
    return request_id_var.get("")


def set_request_id(request_id: str) -> None:
    """Set request ID in context."""
    request_id_var.set(request_id)


class RequestIdFilter(logging.Filter):
    """Attach the current request ID to every record that lacks one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True
