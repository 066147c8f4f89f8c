"""
Structured JSON logging with correlation IDs.

One JSON object per line. HTTP requests get a correlation id from middleware;
dispatch workers use the Stripe event id instead, so every line written while
handling an event (audit, retries, incident fan-out) can be joined on it.
Messages pass through key redaction on the way out.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Record attributes lifted into the JSON line when a caller passes them via extra=
_EXTRA_FIELDS = (
    "event_id",
    "event_type",
    "incident_id",
    "severity",
    "channel",
    "attempt",
    "error_code",
)


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: Optional[str]) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(cid: Optional[str]) -> Iterator[Optional[str]]:
    """Bind a correlation id for the block, restoring the previous one afterwards."""
    token = correlation_id_ctx.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx.reset(token)


class StructuredJsonFormatter(logging.Formatter):
    """
    Single-line JSON records:
    {"ts": "...", "level": "WARNING", "logger": "...", "correlation_id": "...",
     "service": "...", "env": "...", "message": "...", "event_id": "...", ...}
    """

    def __init__(self, service: str = "billing-sentinel", env: Optional[str] = None, version: Optional[str] = None):
        super().__init__()
        self.static_fields = {"service": service}
        if env:
            self.static_fields["env"] = env
        if version:
            self.static_fields["version"] = version

    def format(self, record: logging.LogRecord) -> str:
        from billing_sentinel.utils.redaction import redact_value

        line = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": get_correlation_id(),
            **self.static_fields,
            "message": redact_value(record.getMessage()),
        }

        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                line[key] = val

        if record.exc_info and record.exc_info[0] is not None:
            line["exception"] = redact_value(self.formatException(record.exc_info))

        return json.dumps(line, default=str)


class _CorrelationTextFormatter(logging.Formatter):
    """Human-readable variant for local development."""

    def format(self, record: logging.LogRecord) -> str:
        from billing_sentinel.utils.redaction import redact_value
        record.correlation_id = get_correlation_id() or "-"
        return redact_value(super().format(record))


def configure_structured_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    service: str = "billing-sentinel",
    env: Optional[str] = None,
    version: Optional[str] = None,
) -> None:
    """Install a single stdout handler on the root logger. Call once at startup."""
    if json_output:
        formatter: logging.Formatter = StructuredJsonFormatter(service=service, env=env, version=version)
    else:
        formatter = _CorrelationTextFormatter(
            "%(asctime)s %(levelname)-8s [%(correlation_id)s] %(name)s: %(message)s"
        )

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Stripe and httpx log full request lines at INFO
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
