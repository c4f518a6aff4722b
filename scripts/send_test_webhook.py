"""Sign a provider event JSON file and post it to a webhook endpoint.

Uses the same `t=<ts>,v1=<hmac>` header scheme the provider uses, so the
service verifies it like a real delivery.
"""

import argparse
import hashlib
import hmac
import time
from pathlib import Path

import httpx


def sign(payload: str, secret: str, timestamp: int) -> str:
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def main() -> None:
    """CLI entrypoint for local webhook replays."""

    parser = argparse.ArgumentParser(description="Post a signed webhook event to the reconciliation service.")
    parser.add_argument("event_file", type=Path)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--vertical", required=True)
    parser.add_argument("--secret", required=True, help="endpoint secret (whsec_...)")
    parser.add_argument("--discount", action="store_true", help="post to the discount webhook")
    parser.add_argument("--repeat", type=int, default=1, help="deliver the same event N times")
    args = parser.parse_args()

    payload = args.event_file.read_text(encoding="utf-8")
    path = f"/webhooks/{args.vertical}/discounts" if args.discount else f"/webhooks/{args.vertical}"
    with httpx.Client(base_url=args.base_url, timeout=10.0) as client:
        for attempt in range(1, args.repeat + 1):
            headers = {
                "Stripe-Signature": sign(payload, args.secret, int(time.time())),
                "Content-Type": "application/json",
            }
            resp = client.post(path, content=payload.encode("utf-8"), headers=headers)
            print(f"delivery={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
