"""
Webhook signature schemes.

Every verifier is a pure function of (payload, header value(s), secret, now)
that returns a bool. Parse failures return False; nothing here raises on
attacker-controlled input. Secrets and signature values are never logged.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Optional, Union

import structlog

logger = structlog.get_logger()

BytesLike = Union[bytes, str]


def _as_bytes(value: BytesLike) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def constant_time_equals(left: BytesLike, right: BytesLike) -> bool:
    """Compare two digests without leaking where they first differ."""
    a, b = _as_bytes(left), _as_bytes(right)
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


def hmac_sha256(secret: BytesLike, message: bytes) -> bytes:
    return hmac.new(_as_bytes(secret), message, hashlib.sha256).digest()


def _parse_timestamp(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    raw = raw.strip()
    # str.isdigit also accepts non-ASCII digits that int() rejects.
    if not (raw.isascii() and raw.isdigit()):
        return None
    return int(raw)


def is_fresh(timestamp: int, now: float, tolerance_seconds: int) -> bool:
    """True when `timestamp` lies within +/- tolerance of `now`."""
    return abs(now - timestamp) <= tolerance_seconds


def _split_pairs(header: str, separator: str) -> list[tuple[str, str]]:
    pairs = []
    for part in header.split(separator):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        pairs.append((key.strip(), value.strip()))
    return pairs


def verify_stripe_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    now: float,
    tolerance_seconds: int,
) -> bool:
    """`Stripe-Signature: t=<unix>,v1=<hex>[,v1=<hex>...]` over `"{t}.{payload}"`."""
    if not header or not secret:
        return False
    pairs = _split_pairs(header, ",")
    timestamp = _parse_timestamp(next((v for k, v in pairs if k == "t"), None))
    candidates = [v for k, v in pairs if k == "v1" and v]
    if timestamp is None or not candidates:
        return False
    if not is_fresh(timestamp, now, tolerance_seconds):
        logger.info("webhook_signature_stale", scheme="stripe")
        return False
    expected = hmac_sha256(secret, f"{timestamp}.".encode() + payload).hex()
    return any(constant_time_equals(expected, candidate) for candidate in candidates)


def verify_paddle_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    now: float,
    tolerance_seconds: int,
) -> bool:
    """`Paddle-Signature: ts=<unix>;h1=<hex>` over `"{ts}:{payload}"`."""
    if not header or not secret:
        return False
    pairs = _split_pairs(header, ";")
    timestamp = _parse_timestamp(next((v for k, v in pairs if k == "ts"), None))
    candidates = [v for k, v in pairs if k == "h1" and v]
    if timestamp is None or not candidates:
        return False
    if not is_fresh(timestamp, now, tolerance_seconds):
        logger.info("webhook_signature_stale", scheme="paddle")
        return False
    expected = hmac_sha256(secret, f"{timestamp}:".encode() + payload).hex()
    return any(constant_time_equals(expected, candidate) for candidate in candidates)


def decode_standard_webhook_secret(secret: str) -> bytes:
    """Strip the optional `whsec_` prefix and base64-decode the key."""
    raw = secret[len("whsec_"):] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        # Plain-text secrets are accepted as-is.
        return raw.encode("utf-8")


def verify_standard_webhook(
    payload: bytes,
    message_id: Optional[str],
    timestamp_header: Optional[str],
    signature_header: Optional[str],
    secret: str,
    now: float,
    tolerance_seconds: int,
) -> bool:
    """
    Standard Webhooks (`webhook-id`, `webhook-timestamp`, `webhook-signature`).

    The signed content is `"{id}.{timestamp}.{payload}"`; the signature header
    is a space-delimited list of `<version>,<base64>` entries, of which only
    `v1` is understood.
    """
    if not message_id or not signature_header or not secret:
        return False
    timestamp = _parse_timestamp(timestamp_header)
    if timestamp is None:
        return False
    if not is_fresh(timestamp, now, tolerance_seconds):
        logger.info("webhook_signature_stale", scheme="standard_webhooks")
        return False

    signed = f"{message_id}.{timestamp}.".encode() + payload
    expected = base64.b64encode(
        hmac_sha256(decode_standard_webhook_secret(secret), signed)
    ).decode("ascii")

    for entry in signature_header.split():
        version, sep, value = entry.partition(",")
        if sep and version == "v1" and constant_time_equals(expected, value):
            return True
    return False


def verify_plain_hmac(payload: bytes, header: Optional[str], secret: str) -> bool:
    """Hex HMAC-SHA256 of the raw payload with no timestamp (LemonSqueezy)."""
    if not header or not secret:
        return False
    expected = hmac_sha256(secret, payload).hex()
    return constant_time_equals(expected, header.strip().lower())
