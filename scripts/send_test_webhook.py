"""
Send a signed Stripe-style test webhook to a running instance.

Usage:
    python scripts/send_test_webhook.py
    python scripts/send_test_webhook.py --type invoice.payment_failed --customer cus_123
    python scripts/send_test_webhook.py --event-id evt_fixed --repeat 2   # second delivery is a duplicate
    python scripts/send_test_webhook.py --stale                           # timestamp outside tolerance
"""
import argparse
import asyncio
import json
import logging
import time
import uuid

import httpx

from billing_sentinel.config import get_settings
from billing_sentinel.utils.webhook_signatures import generate_signature_header

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def build_event(event_type: str, event_id: str, customer: str) -> dict:
    obj: dict = {"id": f"obj_{uuid.uuid4().hex[:12]}"}
    if event_type.startswith(("invoice.", "payment_intent.", "customer.subscription.")):
        obj["customer"] = customer
    if event_type.startswith("customer.subscription."):
        obj["status"] = "active"
    return {
        "id": event_id,
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


async def send(args) -> None:
    settings = get_settings()
    secret = args.secret or settings.stripe_webhook_secret
    if not secret:
        raise SystemExit("No webhook secret: pass --secret or set STRIPE_WEBHOOK_SECRET")

    event_id = args.event_id or f"evt_{uuid.uuid4().hex[:24]}"
    raw = json.dumps(build_event(args.type, event_id, args.customer)).encode()
    timestamp = int(time.time()) - (400 if args.stale else 0)
    header = generate_signature_header(raw, secret, timestamp=timestamp)

    async with httpx.AsyncClient(timeout=30) as client:
        for attempt in range(args.repeat):
            resp = await client.post(
                f"{args.base_url}/api/v1/billing/webhook",
                content=raw,
                headers={"Content-Type": "application/json", "Stripe-Signature": header},
            )
            logger.info(
                "Delivery %d of %s (%s): %s %s",
                attempt + 1, event_id, args.type, resp.status_code, resp.text,
            )


def main():
    parser = argparse.ArgumentParser(description="Send a signed test webhook")
    parser.add_argument("--type", default="invoice.payment_succeeded")
    parser.add_argument("--event-id", default=None)
    parser.add_argument("--customer", default="cus_test_sentinel")
    parser.add_argument("--secret", default=None)
    parser.add_argument("--repeat", type=int, default=1)
    parser.add_argument("--stale", action="store_true")
    parser.add_argument("--base-url", default=BASE_URL)
    asyncio.run(send(parser.parse_args()))


if __name__ == "__main__":
    main()
