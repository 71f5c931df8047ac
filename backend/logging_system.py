"""
fleet-deploy - Logging setup

Standard library logging with request correlation: the HTTP middleware stores a
RequestContext in a context variable and a logging filter stamps every record
with its request id, so ledger transitions can be traced back to the check-in
or report that caused them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
import contextvars
import logging
import os
import time
import uuid

SERVICE_NAME = "fleet-deploy"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s rid=%(request_id)s %(message)s"


class LogCategory(str, Enum):
    """Logger suffixes, one per concern"""
    REQUEST = "request"
    DATABASE = "database"
    AUTH = "auth"
    SECURITY = "security"
    LEDGER = "ledger"
    CHECKIN = "checkin"
    ARTIFACTS = "artifacts"
    AUDIT = "audit"
    TELEMETRY = "telemetry"


@dataclass
class RequestContext:
    """Context for request tracing"""
    request_id: str
    correlation_id: str
    actor: Optional[str] = None
    start_time: float = field(default_factory=time.time)

    @staticmethod
    def create(request_id: Optional[str] = None, correlation_id: Optional[str] = None) -> "RequestContext":
        rid = request_id or str(uuid.uuid4())
        return RequestContext(request_id=rid, correlation_id=correlation_id or rid)

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.start_time) * 1000


# Async-safe context var (works with FastAPI/asyncio)
_context_var: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(
    "request_context", default=None
)


def get_current_context() -> Optional[RequestContext]:
    return _context_var.get()


def set_current_context(context: RequestContext) -> contextvars.Token:
    return _context_var.set(context)


def reset_current_context(token: contextvars.Token) -> None:
    _context_var.reset(token)


def current_request_id() -> Optional[str]:
    context = _context_var.get()
    return context.request_id if context else None


class RequestContextFilter(logging.Filter):
    """Stamps request_id on every record ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _context_var.get()
        record.request_id = context.request_id[:8] if context else "-"
        return True


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger(SERVICE_NAME)
    root.setLevel(getattr(logging, level_name, logging.INFO))
    # Idempotent: the app module may be imported more than once under test
    root.handlers = [handler]


def get_logger(category: Optional[LogCategory] = None) -> logging.Logger:
    if category is None:
        return logging.getLogger(SERVICE_NAME)
    return logging.getLogger(f"{SERVICE_NAME}.{category.value}")


# Convenience functions
def log_security(event_type: str, **details: Any) -> None:
    get_logger(LogCategory.SECURITY).warning(f"Security event: {event_type} {_format_details(details)}")


def log_audit(action: str, resource: str, **details: Any) -> None:
    get_logger(LogCategory.AUDIT).info(f"Audit: {action} on {resource} {_format_details(details)}")


def _format_details(details: Dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in details.items() if value is not None)
