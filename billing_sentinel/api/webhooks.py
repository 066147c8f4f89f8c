"""
Stripe webhook endpoint. No admin auth - Stripe signature verification only.

The raw request bytes go to the verifier untouched. Callers only ever see a
coarse {received, status} body; details stay in the audit trail.
"""
import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from billing_sentinel.api.deps import get_services
from billing_sentinel.schemas.api_responses import WebhookAck
from billing_sentinel.services.container import Services

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/v1/billing/webhook")
async def stripe_webhook(
    request: Request,
    services: Services = Depends(get_services),
):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    result = await services.pipeline.ingest(payload, sig_header)

    return JSONResponse(
        status_code=result.http_status,
        content=WebhookAck(
            received=result.http_status == 200, status=result.status.value,
        ).model_dump(),
    )
