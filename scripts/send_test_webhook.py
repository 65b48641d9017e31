"""Send a sample gateway notification to a running payments service.

Useful for exercising reconciliation against a staging database, then reading
the order back.
"""

import argparse
import json

import httpx

PROVIDERS = {
    "mypos": ("/webhooks/mypos", lambda code, status: {"order_id": code, "status": status}),
    "viva-wallet": ("/webhooks/viva-wallet", lambda code, status: {"OrderCode": code, "StatusId": status}),
}


def main() -> None:
    """Post one notification and print the response plus the stored order status."""

    parser = argparse.ArgumentParser(description="Post a sample payment notification.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--provider", choices=sorted(PROVIDERS), required=True)
    parser.add_argument("--order-code", required=True)
    parser.add_argument("--status", required=True, help="Gateway status, e.g. success or F")
    parser.add_argument("--form", action="store_true", help="Send form-encoded instead of JSON")
    args = parser.parse_args()

    path, build = PROVIDERS[args.provider]
    body = build(args.order_code, args.status)
    if args.form:
        resp = httpx.post(f"{args.base_url}{path}", data=body, timeout=10.0)
    else:
        resp = httpx.post(f"{args.base_url}{path}", json=body, timeout=10.0)
    print(f"{resp.status_code} {resp.text}")

    order = httpx.get(f"{args.base_url}/orders/{args.order_code}", timeout=10.0)
    if order.status_code == 200:
        print(json.dumps(order.json(), indent=2))
    else:
        print(f"order lookup returned {order.status_code}")


if __name__ == "__main__":
    main()
