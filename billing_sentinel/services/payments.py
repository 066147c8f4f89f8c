"""
Domain payment API client - confirms and fails session payments, syncs subscriptions.

The payment API owns the payment records; this service only tells it what the
provider reported. Network trouble and 5xx/429 responses surface as
TransientError so the retry coordinator can try again; other 4xx responses are
PermanentDownstreamError. A missing PAYMENTS_API_BASE_URL also raises
TransientError, so the event is released for redelivery after the retries.
"""
import logging
from typing import Any, Optional

import httpx

from billing_sentinel.exceptions import PermanentDownstreamError, TransientError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class PaymentService:
    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def confirm_payment(self, payment_id: str, subject_id: Optional[str] = None) -> dict:
        return await self._request(
            "POST", f"/payments/{payment_id}/confirm", {"subject_id": subject_id},
        )

    async def mark_failed(
        self,
        payment_id: str,
        subject_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> dict:
        return await self._request(
            "POST", f"/payments/{payment_id}/fail", {"subject_id": subject_id, "reason": reason},
        )

    async def sync_subscription(
        self, subscription_id: str, customer_id: str, status: Optional[str]
    ) -> dict:
        return await self._request(
            "PUT",
            f"/subscriptions/{subscription_id}",
            {"customer_id": customer_id, "status": status},
        )

    async def _request(self, method: str, path: str, body: dict[str, Any]) -> dict:
        if not self.configured:
            logger.error("PAYMENTS_API_BASE_URL not set - cannot %s %s", method, path)
            raise TransientError(f"Payment API not configured for {method} {path}")

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=body, headers=headers)
        except httpx.TransportError as e:
            # Covers connect errors and timeouts
            raise TransientError(f"Payment API unreachable: {e}") from e

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientError(f"Payment API returned {response.status_code} for {method} {path}")
        if response.status_code >= 400:
            raise PermanentDownstreamError(
                f"Payment API rejected {method} {path}: {response.status_code}"
            )

        logger.info("Payment API %s %s -> %d", method, path, response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}
