"""
Error taxonomy for the webhook trust boundary.

- WebhookValidationError: malformed header or payload, rejected before dispatch
- MissingRequiredFields: permanent handler error, never retried
- TransientError: downstream unavailable, retried by the RetryCoordinator
- KeyManagementError: always surfaced to callers of key operations
"""
from typing import Iterable


class WebhookError(Exception):
    """Base class for webhook processing errors."""

    code = "webhook_error"


class WebhookValidationError(WebhookError):
    """Payload or signature header could not be validated."""

    code = "validation_error"


class MissingRequiredFields(WebhookError):
    """A recognized event type arrived without the fields its handler needs."""

    code = "missing_required_fields"

    def __init__(self, event_type: str, fields: Iterable[str]):
        self.event_type = event_type
        self.fields = sorted(set(fields))
        super().__init__(
            f"{event_type} missing required fields: {', '.join(self.fields)}"
        )


class TransientError(WebhookError):
    """Downstream dependency unreachable or overloaded. Safe to retry."""

    code = "transient_error"


class PermanentDownstreamError(WebhookError):
    """Downstream dependency rejected the request. Retrying will not help."""

    code = "downstream_rejected"


class KeyManagementError(Exception):
    """Empty, invalid or missing key material, or a secret store failure."""


class IncidentNotFound(LookupError):
    """No incident with the requested id."""


class InvalidIncidentTransition(ValueError):
    """Requested status change is not allowed from the current status."""
