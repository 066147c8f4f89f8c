"""
Event dispatcher - routes a verified Stripe event to its handler.

Every dispatch() call records exactly one audit entry:
- success: the handler's outcome (event kind, severity, details)
- failure: webhook_failed, naming missing fields or the downstream error
- ignored: webhook_ignored (unrecognized types are never errors)
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pydantic import ValidationError

from billing_sentinel.exceptions import (
    MissingRequiredFields,
    PermanentDownstreamError,
    TransientError,
    WebhookValidationError,
)
from billing_sentinel.schemas.audit import AuditEvent, Severity
from billing_sentinel.schemas.stripe_events import WebhookEvent
from billing_sentinel.services.webhook_handlers import (
    EVENT_HANDLERS,
    Handler,
    HandlerDeps,
    HandlerOutcome,
)

logger = logging.getLogger(__name__)

UNHANDLED_EVENT_TYPE = "unhandled_event_type"
DUPLICATE = "duplicate"


class DispatchStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    IGNORED = "ignored"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    message: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[Exception] = None

    @classmethod
    def success(cls, message: str) -> "DispatchResult":
        return cls(DispatchStatus.SUCCESS, message=message)

    @classmethod
    def failure(cls, error: Exception) -> "DispatchResult":
        return cls(DispatchStatus.FAILURE, message=str(error), error=error)

    @classmethod
    def ignored(cls, reason: str) -> "DispatchResult":
        return cls(DispatchStatus.IGNORED, reason=reason)

    @property
    def is_success(self) -> bool:
        return self.status == DispatchStatus.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.status == DispatchStatus.FAILURE

    @property
    def is_ignored(self) -> bool:
        return self.status == DispatchStatus.IGNORED

    @property
    def is_transient(self) -> bool:
        return isinstance(self.error, TransientError)


class EventDispatcher:
    def __init__(
        self,
        audit,
        deps: HandlerDeps,
        handlers: Optional[dict[str, Handler]] = None,
    ):
        self.audit = audit
        self.deps = deps
        self.handlers = dict(EVENT_HANDLERS if handlers is None else handlers)

    def handles(self, event_type: str) -> bool:
        return event_type in self.handlers

    async def _run_handler(self, handler: Handler, event: WebhookEvent, timeout: Optional[float]) -> HandlerOutcome:
        if timeout is None:
            return await handler(event, self.deps)
        try:
            return await asyncio.wait_for(handler(event, self.deps), timeout=timeout)
        except asyncio.TimeoutError:
            raise TransientError(
                f"Handler for {event.type} did not finish within {timeout:.1f}s"
            ) from None

    async def dispatch(
        self,
        event: Union[WebhookEvent, dict],
        attempt: int = 1,
        timeout: Optional[float] = None,
    ) -> DispatchResult:
        """
        Run the handler for one event. With a timeout, a handler that has not
        returned in time is cancelled and reported as a transient failure.
        """
        if not isinstance(event, WebhookEvent):
            try:
                event = WebhookEvent.model_validate(event)
            except ValidationError as e:
                error = WebhookValidationError(f"Malformed event envelope: {e.error_count()} errors")
                await self.audit.log(
                    AuditEvent.WEBHOOK_MALFORMED, {"error": str(error)}, Severity.WARNING,
                )
                return DispatchResult.failure(error)

        base = {"event_id": event.id, "event_type": event.type, "livemode": event.livemode}
        if attempt > 1:
            base["attempt"] = attempt
        log_extra = {"event_id": event.id, "event_type": event.type}

        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled Stripe event type: %s", event.type, extra=log_extra)
            await self.audit.log(
                AuditEvent.WEBHOOK_IGNORED, {**base, "reason": UNHANDLED_EVENT_TYPE}, Severity.INFO,
            )
            return DispatchResult.ignored(UNHANDLED_EVENT_TYPE)

        try:
            outcome = await self._run_handler(handler, event, timeout)
        except MissingRequiredFields as e:
            logger.warning("Event %s rejected: %s", event.id, str(e), extra=log_extra)
            await self.audit.log(
                AuditEvent.WEBHOOK_FAILED,
                {**base, "error_code": e.code, "missing_fields": e.fields},
                Severity.MEDIUM,
            )
            return DispatchResult.failure(e)
        except TransientError as e:
            logger.warning("Event %s transient failure: %s", event.id, str(e), extra=log_extra)
            await self.audit.log(
                AuditEvent.WEBHOOK_FAILED,
                {**base, "error_code": e.code, "error": str(e), "retryable": True},
                Severity.WARNING,
            )
            return DispatchResult.failure(e)
        except PermanentDownstreamError as e:
            logger.error("Event %s rejected downstream: %s", event.id, str(e), extra=log_extra)
            await self.audit.log(
                AuditEvent.WEBHOOK_FAILED,
                {**base, "error_code": e.code, "error": str(e)},
                Severity.HIGH,
            )
            return DispatchResult.failure(e)
        except Exception as e:
            logger.exception("Handler for %s crashed on %s", event.type, event.id, extra=log_extra)
            await self.audit.log(
                AuditEvent.WEBHOOK_FAILED,
                {**base, "error_code": "handler_error", "error": f"{type(e).__name__}: {e}"},
                Severity.HIGH,
            )
            return DispatchResult.failure(e)

        await self.audit.log(
            outcome.audit_event,
            {**base, **outcome.details, "message": outcome.message},
            outcome.severity,
            subject_id=outcome.subject_id,
        )
        return DispatchResult.success(outcome.message)
