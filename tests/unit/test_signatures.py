"""
Unit tests for webhook signature verification.
Pure functions: no database involved.
"""

import hashlib
import hmac

from salesboard.services.shared.models import ConnectionType, SignatureType, WebhookConnection
from salesboard.services.webhooks.signatures import (
    verify_delivery, verify_header_token, verify_hmac_sha256, verify_timestamped_hmac,
)

SECRET = "whsec_test"
BODY = b'{"id":"evt_1","amount":4200}'
NOW = 1_760_000_000


def _hex(message: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _stripe_header(ts: int, body: bytes = BODY) -> str:
    return f"t={ts},v1={_hex(str(ts).encode() + b'.' + body)}"


def make_connection(**kwargs) -> WebhookConnection:
    defaults = {
        "connection_type":  ConnectionType.generic,
        "signature_type":   SignatureType.none,
        "signature_secret": None,
    }
    defaults.update(kwargs)
    return WebhookConnection(**defaults)


# ── Generic HMAC ──────────────────────────────────────────────────────────────

def test_hmac_valid_plain_hex():
    assert verify_hmac_sha256(BODY, _hex(BODY), SECRET).valid


def test_hmac_valid_with_prefix_and_uppercase():
    assert verify_hmac_sha256(BODY, "sha256=" + _hex(BODY).upper(), SECRET).valid
    assert verify_hmac_sha256(BODY, "v1=" + _hex(BODY), SECRET).valid


def test_hmac_mismatch_rejected():
    result = verify_hmac_sha256(BODY + b" ", _hex(BODY), SECRET)
    assert not result.valid
    assert result.reason == "signature_mismatch"
    assert not result.accepted


def test_hmac_missing_signature_rejected():
    result = verify_hmac_sha256(BODY, None, SECRET)
    assert result.reason == "missing_signature"
    assert not result.accepted


def test_hmac_no_secret_fails_open():
    result = verify_hmac_sha256(BODY, "garbage", None)
    assert result.reason == "no_key_configured"
    assert result.accepted


# ── Timestamped HMAC ──────────────────────────────────────────────────────────

def test_timestamped_valid_inside_window():
    result = verify_timestamped_hmac(BODY, _stripe_header(NOW - 100), SECRET, now=NOW)
    assert result.valid


def test_timestamped_replay_rejected_even_with_correct_digest():
    result = verify_timestamped_hmac(BODY, _stripe_header(NOW - 301), SECRET, now=NOW)
    assert not result.valid
    assert result.reason == "timestamp_expired"


def test_timestamped_future_timestamp_outside_window_rejected():
    result = verify_timestamped_hmac(BODY, _stripe_header(NOW + 600), SECRET, now=NOW)
    assert result.reason == "timestamp_expired"


def test_timestamped_missing_component_rejected():
    assert verify_timestamped_hmac(BODY, f"t={NOW}", SECRET, now=NOW).reason == "invalid_signature_format"
    assert verify_timestamped_hmac(BODY, "v1=abc", SECRET, now=NOW).reason == "invalid_signature_format"


def test_timestamped_non_numeric_timestamp_is_verification_error():
    result = verify_timestamped_hmac(BODY, "t=yesterday,v1=abc", SECRET, now=NOW)
    assert result.reason == "verification_error"
    assert not result.accepted


# ── Header token ──────────────────────────────────────────────────────────────

def test_header_token_custom_header():
    assert verify_header_token({"x-webhook-token": SECRET}, SECRET).valid


def test_header_token_bearer():
    assert verify_header_token({"authorization": f"Bearer {SECRET}"}, SECRET).valid


def test_header_token_mismatch_and_missing():
    assert verify_header_token({"x-webhook-token": "nope"}, SECRET).reason == "token_mismatch"
    assert verify_header_token({"authorization": "Basic abc"}, SECRET).reason == "missing_token"


def test_header_token_not_configured_fails_open():
    result = verify_header_token({}, "")
    assert result.accepted
    assert result.reason == "no_token_configured"


# ── Scheme dispatch ───────────────────────────────────────────────────────────

def test_dispatch_hmac_reads_any_known_header():
    conn = make_connection(signature_type=SignatureType.hmac_sha256, signature_secret=SECRET)
    assert verify_delivery(conn, BODY, {"x-hub-signature-256": "sha256=" + _hex(BODY)}).valid
    assert verify_delivery(conn, BODY, {"x-signature": _hex(BODY)}).valid
    assert not verify_delivery(conn, BODY, {"x-signature": "0" * 64}).accepted


def test_dispatch_generic_without_scheme_not_required():
    result = verify_delivery(make_connection(), BODY, {})
    assert result.valid
    assert result.reason == "not_required"


def test_dispatch_stripe_override_uses_connection_secret():
    conn = make_connection(connection_type=ConnectionType.stripe, signature_secret=SECRET)
    assert verify_delivery(conn, BODY, {"stripe-signature": _stripe_header(NOW)}, now=NOW).valid
    assert verify_delivery(conn, BODY, {}, now=NOW).reason == "missing_signature"


def test_dispatch_whop_override():
    conn = make_connection(connection_type=ConnectionType.whop, signature_secret=SECRET)
    assert verify_delivery(conn, BODY, {"x-whop-signature": _hex(BODY)}).valid
    assert not verify_delivery(conn, BODY, {"x-whop-signature": _hex(b"other")}).accepted
