"""Logging configuration for the sync service."""

from __future__ import annotations

import contextvars
import logging
import uuid

from passport_sync.config import settings

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id",
    default=None,
)
sync_run_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "sync_run",
    default=None,
)


def new_sync_run_id(variant: str, hospital_id: str) -> str:
    """Build the identifier attached to every log line of one hospital cycle."""
    return f"{variant}:{hospital_id}:{uuid.uuid4().hex[:8]}"


def _apply_context(record: logging.LogRecord) -> None:
    if not getattr(record, "request_id", None):
        record.request_id = request_id_var.get() or "-"
    if not getattr(record, "sync_run", None):
        record.sync_run = sync_run_var.get() or "-"


class ContextFilter(logging.Filter):
    """Attach request_id and sync_run from contextvars to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        _apply_context(record)
        return True


def configure_logging() -> None:
    """Configure structured logging for the service."""
    factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = factory(*args, **kwargs)
        _apply_context(record)
        return record

    logging.setLogRecordFactory(record_factory)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=(
            "%(asctime)s %(levelname)s %(name)s %(message)s "
            "request_id=%(request_id)s sync_run=%(sync_run)s"
        ),
    )
    root_logger = logging.getLogger()
    root_logger.addFilter(ContextFilter())
    for handler in root_logger.handlers:
        handler.addFilter(ContextFilter())
