"""
Simulate an inbound direct message via the platform webhook.

Builds a Graph-style envelope, signs it with WEBHOOK_APP_SECRET and posts it
to the local server.

Usage:
    python scripts/simulate_message.py --account 17841400000000 --sender 5550001 --text "Hi, can I book?"
    python scripts/simulate_message.py --platform messenger --text "Jane Doe" --repeat 3
"""
import argparse
import asyncio
import json
import logging
import time
import uuid

import httpx

from intakeflow.config import get_settings
from intakeflow.utils.webhook_signatures import SIGNATURE_HEADER, compute_signature

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def build_envelope(platform: str, account_id: str, sender_id: str, text: str, mid: str) -> dict:
    """Build a one-message webhook envelope in the platform's shape."""
    now_ms = int(time.time() * 1000)
    return {
        "object": "instagram" if platform == "instagram" else "page",
        "entry": [
            {
                "id": account_id,
                "time": now_ms,
                "messaging": [
                    {
                        "sender": {"id": sender_id},
                        "recipient": {"id": account_id},
                        "timestamp": now_ms,
                        "message": {"mid": mid, "text": text},
                    }
                ],
            }
        ],
    }


async def send_event(platform: str, account_id: str, sender_id: str, text: str, repeat: int, base_url: str):
    """Post the same signed event `repeat` times (redelivery simulation)."""
    mid = f"m_{uuid.uuid4().hex}"
    body = json.dumps(build_envelope(platform, account_id, sender_id, text, mid)).encode("utf-8")

    headers = {"Content-Type": "application/json"}
    secret = get_settings().webhook_app_secret
    if secret:
        headers[SIGNATURE_HEADER] = compute_signature(secret, body)
    else:
        logger.warning("WEBHOOK_APP_SECRET not set, sending unsigned request")

    async with httpx.AsyncClient(timeout=30) as client:
        for i in range(repeat):
            resp = await client.post(f"{base_url}/api/v1/webhooks/{platform}", content=body, headers=headers)
            logger.info("Delivery %d/%d: %s %s", i + 1, repeat, resp.status_code, resp.text)


def main():
    parser = argparse.ArgumentParser(description="Simulate an inbound direct message")
    parser.add_argument("--platform", default="instagram", choices=["instagram", "messenger"])
    parser.add_argument("--account", default="17841400000000", help="Platform account id of the business")
    parser.add_argument("--sender", default="5550001", help="External id of the customer")
    parser.add_argument("--text", default="Hi, I'd like to book an appointment")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same event N times")
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()

    asyncio.run(send_event(args.platform, args.account, args.sender, args.text, args.repeat, args.base_url))


if __name__ == "__main__":
    main()
