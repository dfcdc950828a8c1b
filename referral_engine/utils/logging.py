"""
JSON log lines for the referral engine.

A line carries the service name and environment, the correlation id of the
request or payout run that produced it, and whichever referral identifiers
the caller passed through ``extra=`` (partner, code, click, conversion,
batch). Identifiers that are UUIDs are rendered as strings.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

SERVICE_NAME = "referral-engine"

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REFERRAL_FIELDS = (
    "partner_id",
    "code",
    "click_id",
    "conversion_id",
    "batch_id",
    "user_id",
    "error_code",
)

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(cid: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for the duration of a request or job run."""
    cid = cid or generate_correlation_id()
    token = correlation_id_ctx.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx.reset(token)


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, service: str = SERVICE_NAME, environment: Optional[str] = None):
        super().__init__()
        self.static_fields = {"service": service}
        if environment:
            self.static_fields["env"] = environment

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        line = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
            **self.static_fields,
        }
        line.update(
            (key, getattr(record, key))
            for key in REFERRAL_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def configure_structured_logging(
    log_level: str = "INFO",
    environment: Optional[str] = None,
) -> None:
    """
    Route all logging through a single JSON stream handler.
    Call once at startup of the app or a script, before any log calls.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter(environment=environment))
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
