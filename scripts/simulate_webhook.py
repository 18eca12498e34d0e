"""
Simulate a signed gateway webhook against a running instance.

Usage:
    python scripts/simulate_webhook.py --checkout chk_1
    python scripts/simulate_webhook.py --checkout chk_1 --type payment.failed --reason "card_declined"
    python scripts/simulate_webhook.py --checkout chk_1 --event-id evt_1 --repeat 2
    python scripts/simulate_webhook.py --payment-intent pi_1 --nested
"""
import argparse
import asyncio
import json
import logging
import os
import time
import uuid

import httpx

from src.utils.webhook_signatures import PAYMONGO_SIGNATURE_HEADER, sign_paymongo_payload

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def build_flat_payload(args) -> dict:
    data = {"payment_id": args.payment_id, "amount": args.amount}
    if args.checkout:
        data["checkout_id"] = args.checkout
    else:
        data["payment_intent_id"] = args.payment_intent
    if args.reason:
        data["reason"] = args.reason
    if args.type == "refund.updated":
        data["status"] = "succeeded"
    return {
        "provider_event_id": args.event_id,
        "event_type": args.type,
        "livemode": args.livemode,
        "data": data,
    }


def build_nested_payload(args) -> dict:
    """PayMongo-shaped event with the payment as the inner resource."""
    attributes = {
        "amount": args.amount,
        "status": "succeeded" if args.type == "refund.updated" else "paid",
        "metadata": {},
    }
    if args.checkout:
        attributes["metadata"]["checkout_id"] = args.checkout
    else:
        attributes["payment_intent_id"] = args.payment_intent
    if args.reason:
        attributes["failed_message"] = args.reason
    resource_type = "refund" if args.type == "refund.updated" else "payment"
    if resource_type == "refund":
        attributes["payment_id"] = args.payment_id
    return {
        "data": {
            "id": args.event_id,
            "type": "event",
            "attributes": {
                "type": args.type,
                "livemode": args.livemode,
                "data": {
                    "id": args.payment_id if resource_type == "payment" else f"ref_{uuid.uuid4().hex[:12]}",
                    "type": resource_type,
                    "attributes": attributes,
                },
            },
        }
    }


async def send(body: bytes, secret: str, livemode: bool) -> httpx.Response:
    headers = {"Content-Type": "application/json"}
    if secret:
        headers[PAYMONGO_SIGNATURE_HEADER] = sign_paymongo_payload(
            secret, body, int(time.time()), livemode=livemode,
        )
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/webhooks/gateway", content=body, headers=headers)
        logger.info("Webhook response: %s %s", resp.status_code, resp.text)
        return resp


async def main():
    global BASE_URL

    parser = argparse.ArgumentParser(description="Simulate a payment gateway webhook")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--checkout", help="Checkout session id of the order")
    target.add_argument("--payment-intent", help="Payment intent id of the order")
    parser.add_argument("--type", default="payment.paid")
    parser.add_argument("--event-id", default=None, help="Provider event id (random if omitted)")
    parser.add_argument("--payment-id", default=None)
    parser.add_argument("--amount", type=int, default=15000, help="Amount in minor units")
    parser.add_argument("--reason", default=None)
    parser.add_argument("--livemode", action="store_true")
    parser.add_argument("--nested", action="store_true", help="Send the PayMongo nested envelope")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same event N times")
    parser.add_argument("--secret", default=os.environ.get("GATEWAY_WEBHOOK_SECRET", ""))
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()

    BASE_URL = args.base_url.rstrip("/")
    args.event_id = args.event_id or f"evt_{uuid.uuid4().hex[:16]}"
    args.payment_id = args.payment_id or f"pay_{uuid.uuid4().hex[:16]}"

    payload = build_nested_payload(args) if args.nested else build_flat_payload(args)
    body = json.dumps(payload).encode("utf-8")

    logger.info("Sending %s (%s) x%d", args.type, args.event_id, args.repeat)
    for _ in range(max(args.repeat, 1)):
        await send(body, args.secret, args.livemode)


if __name__ == "__main__":
    asyncio.run(main())
