"""
Stripe webhook handlers - one coroutine per event family.

Handlers decode data.object through the per-type schema, call the domain
collaborator, and return a HandlerOutcome. They never write audit entries
themselves: the dispatcher records exactly one entry per dispatch from the
outcome (or from the exception a handler raised).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from billing_sentinel.exceptions import MissingRequiredFields
from billing_sentinel.schemas.audit import AuditEvent, Severity
from billing_sentinel.schemas.stripe_events import (
    AccountObject,
    DisputeObject,
    InvoiceObject,
    PaymentIntentObject,
    PayoutObject,
    SubscriptionObject,
    TransferObject,
    WebhookEvent,
    decode_object,
)
from billing_sentinel.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)


@dataclass
class HandlerOutcome:
    message: str
    audit_event: AuditEvent = AuditEvent.WEBHOOK_PROCESSED
    severity: Severity = Severity.INFO
    subject_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class HandlerDeps:
    """Collaborators injected into every handler."""
    payments: Any  # PaymentService
    accounts: Any  # ConnectedAccountService
    ops_alert: Callable[..., Awaitable[bool]] = send_alert


Handler = Callable[[WebhookEvent, HandlerDeps], Awaitable[HandlerOutcome]]


def _payment_subject(event: WebhookEvent):
    """Decode invoice or payment intent. Returns (object id, subject id, decoded object)."""
    if event.type.startswith("invoice."):
        invoice = decode_object(InvoiceObject, event)
        return invoice.id, invoice.customer, invoice

    intent = decode_object(PaymentIntentObject, event)
    if not intent.subject_id:
        raise MissingRequiredFields(event.type, ["customer"])
    return intent.id, intent.subject_id, intent


async def handle_payment_succeeded(event: WebhookEvent, deps: HandlerDeps) -> HandlerOutcome:
    object_id, subject_id, _ = _payment_subject(event)
    await deps.payments.confirm_payment(object_id, subject_id=subject_id)
    logger.info(
        "Payment confirmed: %s for %s", object_id, subject_id,
        extra={"event_id": event.id, "event_type": event.type},
    )
    return HandlerOutcome(
        message=f"payment {object_id} confirmed",
        audit_event=AuditEvent.PAYMENT_CONFIRMED,
        subject_id=subject_id,
        details={"object_id": object_id},
    )


async def handle_payment_failed(event: WebhookEvent, deps: HandlerDeps) -> HandlerOutcome:
    object_id, subject_id, obj = _payment_subject(event)
    reason = None
    if isinstance(obj, PaymentIntentObject) and obj.last_payment_error:
        reason = obj.last_payment_error.get("code") or obj.last_payment_error.get("message")

    await deps.payments.mark_failed(object_id, subject_id=subject_id, reason=reason)
    await deps.ops_alert(
        AlertType.PAYMENT_FAILED,
        f"Payment {object_id} failed for {subject_id}" + (f": {reason}" if reason else ""),
        severity="warning",
        cooldown_key=f"{AlertType.PAYMENT_FAILED}:{subject_id}",
    )
    return HandlerOutcome(
        message=f"payment {object_id} marked failed",
        audit_event=AuditEvent.PAYMENT_FAILED,
        severity=Severity.WARNING,
        subject_id=subject_id,
        details={"object_id": object_id, "reason": reason},
    )


def _account_id(event: WebhookEvent) -> str:
    """Connect events carry the account on the envelope; fall back to the object id."""
    account_id = event.account or event.object.get("id")
    if not account_id:
        raise MissingRequiredFields(event.type, ["account"])
    return account_id


async def handle_account_updated(event: WebhookEvent, deps: HandlerDeps) -> HandlerOutcome:
    account_id = _account_id(event)
    if event.object:
        decode_object(AccountObject, event)
    account = await deps.accounts.refresh_account(account_id)
    return HandlerOutcome(
        message=f"account {account_id} refreshed",
        subject_id=account_id,
        details={
            "account_id": account_id,
            "charges_enabled": account.charges_enabled,
            "payouts_enabled": account.payouts_enabled,
        },
    )


async def handle_account_deauthorized(event: WebhookEvent, deps: HandlerDeps) -> HandlerOutcome:
    account_id = _account_id(event)
    await deps.accounts.deactivate_account(account_id)
    await deps.ops_alert(
        AlertType.ACCOUNT_DEAUTHORIZED,
        f"Connected account {account_id} deauthorized the platform",
        severity="warning",
        cooldown_key=f"{AlertType.ACCOUNT_DEAUTHORIZED}:{account_id}",
    )
    return HandlerOutcome(
        message=f"account {account_id} deactivated",
        severity=Severity.WARNING,
        subject_id=account_id,
        details={"account_id": account_id},
    )


async def handle_transfer_lifecycle(event: WebhookEvent, deps: HandlerDeps) -> HandlerOutcome:
    transfer = decode_object(TransferObject, event)
    transition = event.type.split(".", 1)[1]
    logger.info(
        "Transfer %s %s (destination=%s)", transfer.id, transition, transfer.destination,
        extra={"event_id": event.id, "event_type": event.type},
    )
    return HandlerOutcome(
        message=f"transfer {transfer.id} {transition}",
        severity=Severity.WARNING if transition == "failed" else Severity.INFO,
        subject_id=transfer.destination,
        details={
            "transfer_id": transfer.id,
            "transition": transition,
            "amount": transfer.amount,
            "currency": transfer.currency,
        },
    )


async def handle_payout_lifecycle(event: WebhookEvent, deps: HandlerDeps) -> HandlerOutcome:
    payout = decode_object(PayoutObject, event)
    transition = event.type.split(".", 1)[1]
    logger.info(
        "Payout %s %s", payout.id, transition,
        extra={"event_id": event.id, "event_type": event.type},
    )
    return HandlerOutcome(
        message=f"payout {payout.id} {transition}",
        severity=Severity.WARNING if transition == "failed" else Severity.INFO,
        subject_id=event.account,
        details={
            "payout_id": payout.id,
            "transition": transition,
            "amount": payout.amount,
            "currency": payout.currency,
            "failure_code": payout.failure_code,
        },
    )


async def handle_dispute_created(event: WebhookEvent, deps: HandlerDeps) -> HandlerOutcome:
    dispute = decode_object(DisputeObject, event)
    await deps.ops_alert(
        AlertType.DISPUTE_CREATED,
        f"Dispute {dispute.id} opened on charge {dispute.charge} ({dispute.reason or 'no reason'})",
        severity="error",
        extra={"amount": dispute.amount, "currency": dispute.currency},
    )
    return HandlerOutcome(
        message=f"dispute {dispute.id} raised",
        audit_event=AuditEvent.DISPUTE_CREATED,
        severity=Severity.HIGH,
        subject_id=dispute.charge,
        details={
            "dispute_id": dispute.id,
            "charge": dispute.charge,
            "reason": dispute.reason,
            "amount": dispute.amount,
        },
    )


async def handle_subscription_change(event: WebhookEvent, deps: HandlerDeps) -> HandlerOutcome:
    subscription = decode_object(SubscriptionObject, event)
    status = "canceled" if event.type.endswith(".deleted") else subscription.status
    await deps.payments.sync_subscription(subscription.id, subscription.customer, status)
    return HandlerOutcome(
        message=f"subscription {subscription.id} synced ({status})",
        subject_id=subscription.customer,
        details={"subscription_id": subscription.id, "status": status},
    )


EVENT_HANDLERS: dict[str, Handler] = {
    "invoice.payment_succeeded": handle_payment_succeeded,
    "payment_intent.succeeded": handle_payment_succeeded,
    "invoice.payment_failed": handle_payment_failed,
    "payment_intent.payment_failed": handle_payment_failed,
    "account.updated": handle_account_updated,
    "account.application.deauthorized": handle_account_deauthorized,
    "transfer.created": handle_transfer_lifecycle,
    "transfer.paid": handle_transfer_lifecycle,
    "transfer.failed": handle_transfer_lifecycle,
    "payout.created": handle_payout_lifecycle,
    "payout.paid": handle_payout_lifecycle,
    "payout.failed": handle_payout_lifecycle,
    "charge.dispute.created": handle_dispute_created,
    "customer.subscription.created": handle_subscription_change,
    "customer.subscription.updated": handle_subscription_change,
    "customer.subscription.deleted": handle_subscription_change,
}

HANDLED_EVENT_TYPES = frozenset(EVENT_HANDLERS)
