"""
Webhook signature verification.

Every verifier takes the exact raw request body (bytes, before JSON parsing)
and returns a SignatureResult. Policy on top of the result:
  - reason "no_key_configured" / "no_token_configured" → fail-open (accept, warn)
  - any other invalid result → reject with 401
  - "verification_error" is always a reject

Schemes:
  hmac_sha256   HMAC-SHA256(secret, body), hex, optional "sha256=" / "v1=" prefix
  timestamped   "t=<unix>,v1=<hex>" over "<t>.<body>", 300s replay window (Stripe)
  header_token  X-Webhook-Token or "Authorization: Bearer <token>", exact match
"""

import hashlib
import hmac
import os
import re
import time
from dataclasses import dataclass
from typing import Mapping, Optional

import structlog

from salesboard.services.shared.models import ConnectionType, SignatureType

logger = structlog.get_logger()

SIGNATURE_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_SIGNATURE_TOLERANCE_SECONDS", "300"))

# Header names consulted for the generic HMAC scheme, in priority order
HMAC_SIGNATURE_HEADERS = ("x-webhook-signature", "x-signature", "x-hub-signature-256")
STRIPE_SIGNATURE_HEADER = "stripe-signature"
WHOP_SIGNATURE_HEADER = "x-whop-signature"

_PREFIX_RE = re.compile(r"^(sha256=|v1=)")

# Reasons that callers treat as "accepted without verification"
FAIL_OPEN_REASONS = frozenset({"no_key_configured", "no_token_configured"})


@dataclass(frozen=True)
class SignatureResult:
    valid: bool
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.valid or self.reason in FAIL_OPEN_REASONS


def _hex_hmac(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_hmac_sha256(
    raw_body: bytes,
    signature: Optional[str],
    secret: Optional[str],
    header_name: str = "x-webhook-signature",
) -> SignatureResult:
    if not secret:
        logger.warning("signature_check_skipped_no_secret", scheme="hmac_sha256")
        return SignatureResult(True, "no_key_configured")

    if not signature:
        logger.error("signature_missing", scheme="hmac_sha256", header=header_name)
        return SignatureResult(False, "missing_signature")

    try:
        expected = _hex_hmac(secret, raw_body)
        provided = _PREFIX_RE.sub("", signature.strip()).lower()
        if hmac.compare_digest(expected, provided):
            return SignatureResult(True)
        logger.error("signature_mismatch", scheme="hmac_sha256")
        return SignatureResult(False, "signature_mismatch")
    except Exception as exc:
        logger.error("signature_verification_error", scheme="hmac_sha256", error=str(exc))
        return SignatureResult(False, "verification_error")


def verify_timestamped_hmac(
    raw_body: bytes,
    signature: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> SignatureResult:
    """
    Stripe-style signature: the header carries "t=<unix seconds>,v1=<hex>".
    A stale timestamp is rejected even when the digest matches.
    """
    if not secret:
        logger.warning("signature_check_skipped_no_secret", scheme="timestamped_hmac")
        return SignatureResult(True, "no_key_configured")

    if not signature:
        logger.error("signature_missing", scheme="timestamped_hmac", header=STRIPE_SIGNATURE_HEADER)
        return SignatureResult(False, "missing_signature")

    try:
        parts = [p.strip() for p in signature.split(",")]
        timestamp = next((p[2:] for p in parts if p.startswith("t=")), None)
        provided = next((p[3:] for p in parts if p.startswith("v1=")), None)
        if not timestamp or not provided:
            return SignatureResult(False, "invalid_signature_format")

        current = time.time() if now is None else now
        if abs(current - int(timestamp)) > tolerance_seconds:
            logger.error("signature_timestamp_expired", scheme="timestamped_hmac")
            return SignatureResult(False, "timestamp_expired")

        expected = _hex_hmac(secret, timestamp.encode("utf-8") + b"." + raw_body)
        if hmac.compare_digest(expected, provided.lower()):
            return SignatureResult(True)
        logger.error("signature_mismatch", scheme="timestamped_hmac")
        return SignatureResult(False, "signature_mismatch")
    except Exception as exc:
        logger.error("signature_verification_error", scheme="timestamped_hmac", error=str(exc))
        return SignatureResult(False, "verification_error")


def verify_header_token(headers: Mapping[str, str], expected_token: Optional[str]) -> SignatureResult:
    if not expected_token:
        logger.warning("signature_check_skipped_no_secret", scheme="header_token")
        return SignatureResult(True, "no_token_configured")

    provided = headers.get("x-webhook-token")
    if not provided:
        authorization = headers.get("authorization") or ""
        if authorization.startswith("Bearer "):
            provided = authorization[len("Bearer "):]

    if not provided:
        logger.error("signature_missing", scheme="header_token")
        return SignatureResult(False, "missing_token")

    if hmac.compare_digest(provided.encode("utf-8"), expected_token.encode("utf-8")):
        return SignatureResult(True)

    logger.error("signature_mismatch", scheme="header_token")
    return SignatureResult(False, "token_mismatch")


def _first_header(headers: Mapping[str, str], names) -> Optional[str]:
    for name in names:
        value = headers.get(name)
        if value:
            return value
    return None


def verify_delivery(
    connection,
    raw_body: bytes,
    headers: Mapping[str, str],
    now: Optional[float] = None,
) -> SignatureResult:
    """
    Pick the scheme for `connection` and verify one delivery.

    The connection's own signature_type wins. With signature_type=none, stripe
    and whop connections still verify against their platform header using the
    connection secret; every other kind is accepted unverified.
    `headers` must be a case-insensitive mapping or use lower-case keys.
    """
    sig_type = connection.signature_type or SignatureType.none
    secret = connection.signature_secret

    if sig_type == SignatureType.hmac_sha256:
        return verify_hmac_sha256(raw_body, _first_header(headers, HMAC_SIGNATURE_HEADERS), secret)
    if sig_type == SignatureType.header_token:
        return verify_header_token(headers, secret)

    if connection.connection_type == ConnectionType.stripe:
        return verify_timestamped_hmac(raw_body, headers.get(STRIPE_SIGNATURE_HEADER), secret, now=now)
    if connection.connection_type == ConnectionType.whop:
        return verify_hmac_sha256(
            raw_body, headers.get(WHOP_SIGNATURE_HEADER), secret, header_name=WHOP_SIGNATURE_HEADER,
        )

    return SignatureResult(True, "not_required")
