"""
Webhook ingestion pipeline - the HTTP-facing half of the trust boundary.

ingest(): verify signature -> decode envelope -> ledger.mark_seen -> enqueue.
Nothing is dispatched on the request path; the DispatchWorker does that.
An audit entry is written before every response.

process(): synchronous replay path (scripts, tests) with the same dedup
guarantee, dispatching through the retry coordinator inline.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from pydantic import ValidationError

from billing_sentinel.exceptions import KeyManagementError, TransientError
from billing_sentinel.schemas.audit import AuditEvent, Severity
from billing_sentinel.schemas.stripe_events import WebhookEvent
from billing_sentinel.services.dispatcher import DUPLICATE, DispatchResult
from billing_sentinel.utils.webhook_signatures import (
    SignatureCheck,
    compute_payload_hash,
    inspect_signature,
)

logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    MALFORMED = "malformed"
    UNAUTHORIZED = "unauthorized"
    ERROR = "error"


_HTTP_STATUS = {
    IngestStatus.ACCEPTED: 200,
    IngestStatus.DUPLICATE: 200,
    IngestStatus.MALFORMED: 400,
    IngestStatus.UNAUTHORIZED: 401,
    IngestStatus.ERROR: 500,
}


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    reason: Optional[str] = None

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.status]


class WebhookPipeline:
    def __init__(
        self,
        secret_provider: Callable[[], str],
        ledger,
        audit,
        retry,
        queue=None,
        tolerance_seconds: int = 300,
    ):
        self.secret_provider = secret_provider
        self.ledger = ledger
        self.audit = audit
        self.retry = retry
        self.queue = queue
        self.tolerance_seconds = tolerance_seconds

    async def ingest(self, raw_body: bytes, signature_header: Optional[str]) -> IngestResult:
        payload_hash = compute_payload_hash(raw_body)

        try:
            secret = self.secret_provider()
        except KeyManagementError as e:
            logger.error("Webhook secret unavailable: %s", str(e))
            await self.audit.log(
                AuditEvent.WEBHOOK_SIGNATURE_INVALID,
                {"reason": "secret_unavailable", "payload_hash": payload_hash},
                Severity.HIGH,
            )
            return IngestResult(IngestStatus.ERROR, reason="secret_unavailable")

        check = inspect_signature(
            raw_body, signature_header or "", secret, tolerance=self.tolerance_seconds,
        )
        if check != SignatureCheck.VALID:
            return await self._reject_signature(check, payload_hash)

        try:
            event = WebhookEvent.model_validate(json.loads(raw_body))
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
            logger.warning("Malformed webhook payload: %s", str(e)[:200])
            await self.audit.log(
                AuditEvent.WEBHOOK_MALFORMED,
                {"reason": type(e).__name__, "payload_hash": payload_hash},
                Severity.WARNING,
            )
            return IngestResult(IngestStatus.MALFORMED, reason="malformed_payload")

        base = {"event_id": event.id, "event_type": event.type, "payload_hash": payload_hash}
        log_extra = {"event_id": event.id, "event_type": event.type}

        try:
            newly_seen = await self.ledger.mark_seen(event.id)
        except Exception as e:
            logger.error("Dedup ledger unavailable for %s: %s", event.id, str(e), extra=log_extra)
            await self.audit.log(
                AuditEvent.WEBHOOK_ENQUEUE_FAILED,
                {**base, "reason": "ledger_unavailable", "error": str(e)},
                Severity.HIGH,
            )
            return IngestResult(IngestStatus.ERROR, event.id, event.type, "ledger_unavailable")

        if not newly_seen:
            logger.info("Duplicate webhook %s ignored", event.id, extra=log_extra)
            await self.audit.log(AuditEvent.WEBHOOK_DUPLICATE, base, Severity.INFO)
            return IngestResult(IngestStatus.DUPLICATE, event.id, event.type, DUPLICATE)

        try:
            if self.queue is None:
                raise RuntimeError("No dispatch queue configured")
            self.queue.submit(event)
        except Exception as e:
            await self.ledger.forget(event.id)
            logger.error("Failed to enqueue %s: %s", event.id, str(e), extra=log_extra)
            await self.audit.log(
                AuditEvent.WEBHOOK_ENQUEUE_FAILED,
                {**base, "reason": "enqueue_failed", "error": f"{type(e).__name__}: {e}"},
                Severity.HIGH,
            )
            return IngestResult(IngestStatus.ERROR, event.id, event.type, "enqueue_failed")

        logger.info("Stripe webhook accepted: %s %s", event.type, event.id, extra=log_extra)
        await self.audit.log(
            AuditEvent.WEBHOOK_RECEIVED, {**base, "livemode": event.livemode}, Severity.INFO,
        )
        return IngestResult(IngestStatus.ACCEPTED, event.id, event.type)

    async def _reject_signature(self, check: SignatureCheck, payload_hash: str) -> IngestResult:
        if check.is_timestamp_issue:
            event, severity = AuditEvent.WEBHOOK_TIMESTAMP_INVALID, Severity.WARNING
        else:
            event, severity = AuditEvent.WEBHOOK_SIGNATURE_INVALID, Severity.HIGH
        logger.warning("Stripe webhook signature rejected: %s", check.value)
        await self.audit.log(
            event, {"reason": check.value, "payload_hash": payload_hash}, severity,
        )
        return IngestResult(IngestStatus.UNAUTHORIZED, reason=check.value)

    async def process(self, event: WebhookEvent) -> DispatchResult:
        """Dedup, then dispatch inline with retry. A second call for the same id is ignored."""
        if not await self.ledger.mark_seen(event.id):
            await self.audit.log(
                AuditEvent.WEBHOOK_DUPLICATE,
                {"event_id": event.id, "event_type": event.type},
                Severity.INFO,
            )
            return DispatchResult.ignored(DUPLICATE)
        return await run_dispatch(self.retry, self.ledger, event)


async def run_dispatch(retry, ledger, event: WebhookEvent) -> DispatchResult:
    """
    Dispatch an already-marked event. Transient exhaustion releases the ledger
    mark so a provider redelivery or manual replay can succeed later.
    """
    result = await retry.process_with_retry(event)
    if result.is_failure and isinstance(result.error, TransientError):
        await ledger.forget(event.id)
        logger.warning(
            "Released dedup mark for %s after transient failure", event.id,
            extra={"event_id": event.id, "event_type": event.type},
        )
    return result
