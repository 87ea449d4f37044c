#!/usr/bin/env python3
"""
Send a signed test delivery to the webhook receiver.

Usage:
  python -m salesboard.scripts.send_test_webhook --connection-id <id> \\
      --payload '{"data": {"customer": [{"email": "a@b.com"}]}}' \\
      --scheme hmac_sha256 --secret s3cret

Schemes: none, hmac_sha256, header_token, stripe (t=<ts>,v1=<hex>), whop.
The body is sent exactly as serialized here so the signature matches.
"""

import argparse
import hashlib
import hmac
import json
import os
import sys
import time

import httpx

DEFAULT_URL = os.getenv("SALESBOARD_WEBHOOK_URL", "http://localhost:8300")


def sign_headers(scheme: str, secret: str, body: bytes, now: int | None = None) -> dict[str, str]:
    """Headers a sender using `scheme` would attach to `body`."""
    if scheme == "none" or not secret:
        return {}
    if scheme == "header_token":
        return {"X-Webhook-Token": secret}

    if scheme == "stripe":
        ts = str(now if now is not None else int(time.time()))
        digest = hmac.new(secret.encode(), ts.encode() + b"." + body, hashlib.sha256).hexdigest()
        return {"Stripe-Signature": f"t={ts},v1={digest}"}

    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if scheme == "whop":
        return {"X-Whop-Signature": digest}
    return {"X-Webhook-Signature": f"sha256={digest}"}


def send(base_url: str, connection_id: str, body: bytes, headers: dict[str, str], force: bool = False) -> httpx.Response:
    params = {"connection_id": connection_id}
    if force:
        params["force"] = "true"
    return httpx.post(
        f"{base_url.rstrip('/')}/webhook",
        params=params,
        content=body,
        headers={"Content-Type": "application/json", **headers},
        timeout=30.0,
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Send a signed test webhook delivery")
    parser.add_argument("--connection-id", required=True)
    parser.add_argument("--payload", default='{"event": "test"}', help="JSON body (or @path/to/file.json)")
    parser.add_argument("--scheme", default="none",
                        choices=["none", "hmac_sha256", "header_token", "stripe", "whop"])
    parser.add_argument("--secret", default=os.getenv("SALESBOARD_WEBHOOK_SECRET", ""))
    parser.add_argument("--url", default=DEFAULT_URL)
    parser.add_argument("--force", action="store_true", help="bypass deduplication")
    args = parser.parse_args(argv)

    raw = args.payload
    if raw.startswith("@"):
        with open(raw[1:], encoding="utf-8") as fh:
            raw = fh.read()
    try:
        body = json.dumps(json.loads(raw), separators=(",", ":")).encode("utf-8")
    except ValueError as exc:
        print(f"ERROR: payload is not valid JSON: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        resp = send(args.url, args.connection_id, body, sign_headers(args.scheme, args.secret, body), args.force)
    except httpx.HTTPError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"HTTP {resp.status_code}")
    print(json.dumps(resp.json(), indent=2) if resp.content else "")
    if resp.status_code >= 400:
        sys.exit(1)


if __name__ == "__main__":
    main()
