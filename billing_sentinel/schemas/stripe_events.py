"""
Stripe webhook event schemas.

The envelope is decoded once at ingestion. Handlers decode data.object into the
per-type model for their event family; a missing required field surfaces as
MissingRequiredFields, never as a silent default.
"""
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from billing_sentinel.exceptions import MissingRequiredFields


class EventData(BaseModel):
    object: dict[str, Any] = Field(default_factory=dict)
    previous_attributes: Optional[dict[str, Any]] = None


class WebhookEvent(BaseModel):
    """Stripe event envelope. Transient - only the id outlives dispatch."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int = 0
    livemode: bool = False
    account: Optional[str] = None  # Set on Connect events
    data: EventData = Field(default_factory=EventData)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.object


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class InvoiceObject(_StripeObject):
    id: str
    customer: str
    subscription: Optional[str] = None
    amount_paid: Optional[int] = None
    amount_due: Optional[int] = None
    currency: Optional[str] = None


class PaymentIntentObject(_StripeObject):
    id: str
    customer: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    last_payment_error: Optional[dict[str, Any]] = None

    @property
    def subject_id(self) -> Optional[str]:
        """Customer id, or the app session id the payment was created for."""
        return self.customer or self.metadata.get("session_id") or None


class AccountObject(_StripeObject):
    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


class TransferObject(_StripeObject):
    id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    destination: Optional[str] = None


class PayoutObject(_StripeObject):
    id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    failure_code: Optional[str] = None


class DisputeObject(_StripeObject):
    id: str
    charge: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None


class SubscriptionObject(_StripeObject):
    id: str
    customer: str
    status: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[int] = None


def decode_object(model: type[BaseModel], event: WebhookEvent) -> Any:
    """
    Decode data.object into a per-type model.
    Raises MissingRequiredFields naming every missing or unusable field.
    """
    obj = event.object
    try:
        return model.model_validate(obj)
    except ValidationError as e:
        fields = []
        for err in e.errors():
            loc = err.get("loc") or ("object",)
            fields.append(".".join(str(part) for part in loc))
        raise MissingRequiredFields(event.type, fields) from e
