"""
Structured JSON logging with correlation IDs.

Every log line is JSON with: timestamp, level, correlation_id, module, message,
plus pipeline identifiers passed through `extra=`.
The task processor binds a fresh correlation ID for every task it executes, so
one pipeline stage run can be followed across services.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Extra attributes copied into the JSON line when present on the record
EXTRA_FIELDS = (
    "brand_id",
    "topic_id",
    "draft_id",
    "variant_id",
    "connector_id",
    "publish_job_id",
    "platform",
    "task_type",
    "stage",
)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    """Set the correlation ID in the current context."""
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """Generate a new correlation ID (UUID4 hex, 32 chars)."""
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(cid: Optional[str] = None):
    """Bind a correlation ID for the duration of a block, then restore the previous one."""
    token = correlation_id_ctx.set(cid or generate_correlation_id())
    try:
        yield correlation_id_ctx.get()
    finally:
        correlation_id_ctx.reset(token)


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    {"timestamp": "...", "level": "INFO", "correlation_id": "...", "module": "...", "message": "...", "draft_id": "..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """
    Replace default logging with structured JSON logging.
    Call once at startup (API lifespan or script entry) before any log calls.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(StructuredJsonFormatter())
    root_logger.addHandler(stream_handler)

    # Suppress noisy third-party loggers
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "openai", "anthropic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
