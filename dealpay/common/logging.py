"""JSON logging bound to the notification being processed.

Webhook routes and the retry consumer enter `log_context(...)` so every record
emitted while handling one notification carries its provider, gateway order
code, and trace id.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from dealpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")
provider_ctx: ContextVar[str] = ContextVar("provider", default="")

CONTEXT_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "correlation_id": correlation_id_ctx,
    "provider": provider_ctx,
}

# Chatty client libraries; their INFO lines drown webhook logs.
QUIET_LOGGERS = ("aiokafka", "httpx", "httpcore")


class ContextFilter(logging.Filter):
    """Copy the bound context fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in CONTEXT_FIELDS.items():
            setattr(record, name, var.get())
        return True


@contextmanager
def log_context(**fields: str | None):
    """Bind context fields for the duration of the block.

    Unknown field names raise `KeyError`; `None` binds an empty string.
    """

    tokens = [(CONTEXT_FIELDS[name], CONTEXT_FIELDS[name].set(value or "")) for name, value in fields.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(level: str | None = None) -> None:
    """Route all records through one JSON stdout handler."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(provider)s %(correlation_id)s "
            "%(trace_id)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "ts"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("dealpay")
