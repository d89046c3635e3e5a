"""Signature scheme tests: integrity, wrong secret, freshness."""
import base64
import hashlib
import hmac

import pytest

from app.modules.billing.domain.billing.providers.signatures import (
    constant_time_equals,
    decode_standard_webhook_secret,
    is_fresh,
    verify_paddle_signature,
    verify_plain_hmac,
    verify_standard_webhook,
    verify_stripe_signature,
)

NOW = 1_760_000_000
PAYLOAD = b'{"event_id":"evt_1","event_type":"subscription.updated"}'


def _paddle_header(secret: str, ts: int, payload: bytes = PAYLOAD) -> str:
    digest = hmac.new(secret.encode(), f"{ts}:".encode() + payload, hashlib.sha256)
    return f"ts={ts};h1={digest.hexdigest()}"


def _stripe_header(secret: str, ts: int, payload: bytes = PAYLOAD) -> str:
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256)
    return f"t={ts},v1={digest.hexdigest()}"


def _standard_signature(key: bytes, msg_id: str, ts: int, payload: bytes = PAYLOAD) -> str:
    digest = hmac.new(key, f"{msg_id}.{ts}.".encode() + payload, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode()


def test_constant_time_equals_handles_length_mismatch():
    assert constant_time_equals("abc", "abc")
    assert not constant_time_equals("abc", "abcd")
    assert constant_time_equals(b"abc", "abc")


@pytest.mark.parametrize(
    "timestamp,expected",
    [(NOW, True), (NOW - 300, True), (NOW + 300, True), (NOW - 301, False), (NOW + 301, False)],
)
def test_is_fresh_window_is_symmetric(timestamp, expected):
    assert is_fresh(timestamp, NOW, 300) is expected


def test_paddle_signature_accepts_correct_secret():
    header = _paddle_header("correct", NOW)
    assert verify_paddle_signature(PAYLOAD, header, "correct", NOW, 300)


def test_paddle_signature_rejects_wrong_secret():
    """A payload signed with "correct" does not verify against "wrong"."""
    header = _paddle_header("correct", NOW)
    assert not verify_paddle_signature(PAYLOAD, header, "wrong", NOW, 300)


def test_paddle_signature_rejects_single_byte_mutation():
    header = _paddle_header("correct", NOW)
    mutated = PAYLOAD.replace(b"evt_1", b"evt_2")
    assert not verify_paddle_signature(mutated, header, "correct", NOW, 300)


def test_paddle_signature_rejects_altered_timestamp():
    header = _paddle_header("correct", NOW)
    tampered = header.replace(f"ts={NOW}", f"ts={NOW + 1}")
    assert not verify_paddle_signature(PAYLOAD, tampered, "correct", NOW, 300)


def test_paddle_signature_rejects_stale_timestamp():
    """Correct HMAC, timestamp 3700s old, 300s tolerance."""
    header = _paddle_header("correct", NOW - 3700)
    assert not verify_paddle_signature(PAYLOAD, header, "correct", NOW, 300)


@pytest.mark.parametrize(
    "header",
    [None, "", "garbage", "ts=abc;h1=deadbeef", "ts=1760000000", "h1=deadbeef"],
)
def test_paddle_signature_rejects_malformed_headers(header):
    assert not verify_paddle_signature(PAYLOAD, header, "correct", NOW, 300)


def test_stripe_signature_accepts_any_matching_v1_candidate():
    good = _stripe_header("whsec_x", NOW)
    header = f"t={NOW},v1={'0' * 64}," + good.split(",", 1)[1]
    assert verify_stripe_signature(PAYLOAD, header, "whsec_x", NOW, 300)


def test_stripe_signature_rejects_wrong_secret_and_stale():
    assert not verify_stripe_signature(
        PAYLOAD, _stripe_header("whsec_x", NOW), "whsec_y", NOW, 300
    )
    assert not verify_stripe_signature(
        PAYLOAD, _stripe_header("whsec_x", NOW - 3700), "whsec_x", NOW, 300
    )


def test_stripe_signature_rejects_mutated_payload():
    header = _stripe_header("whsec_x", NOW)
    assert not verify_stripe_signature(PAYLOAD + b" ", header, "whsec_x", NOW, 300)


def test_decode_standard_webhook_secret_strips_prefix():
    key = b"polar-test-signing-key"
    encoded = base64.b64encode(key).decode()
    assert decode_standard_webhook_secret(f"whsec_{encoded}") == key
    assert decode_standard_webhook_secret(encoded) == key


def test_decode_standard_webhook_secret_falls_back_to_plain_text():
    assert decode_standard_webhook_secret("not base64!") == b"not base64!"


def test_standard_webhook_round_trip_and_tampering():
    key = b"polar-test-signing-key"
    secret = "whsec_" + base64.b64encode(key).decode()
    signature = _standard_signature(key, "msg_1", NOW)

    assert verify_standard_webhook(PAYLOAD, "msg_1", str(NOW), signature, secret, NOW, 300)
    # Space-delimited list: an unknown version entry is skipped.
    assert verify_standard_webhook(
        PAYLOAD, "msg_1", str(NOW), f"v2,abc {signature}", secret, NOW, 300
    )
    assert not verify_standard_webhook(
        PAYLOAD, "msg_2", str(NOW), signature, secret, NOW, 300
    )
    assert not verify_standard_webhook(
        PAYLOAD, "msg_1", str(NOW + 1), signature, secret, NOW, 300
    )
    assert not verify_standard_webhook(
        PAYLOAD[:-1], "msg_1", str(NOW), signature, secret, NOW, 300
    )


def test_standard_webhook_rejects_stale_and_missing_headers():
    key = b"polar-test-signing-key"
    secret = "whsec_" + base64.b64encode(key).decode()
    stale = NOW - 3700
    signature = _standard_signature(key, "msg_1", stale)

    assert not verify_standard_webhook(PAYLOAD, "msg_1", str(stale), signature, secret, NOW, 300)
    assert not verify_standard_webhook(PAYLOAD, None, str(NOW), signature, secret, NOW, 300)
    assert not verify_standard_webhook(PAYLOAD, "msg_1", None, signature, secret, NOW, 300)
    assert not verify_standard_webhook(PAYLOAD, "msg_1", str(NOW), None, secret, NOW, 300)


def test_plain_hmac_verification():
    digest = hmac.new(b"ls_secret", PAYLOAD, hashlib.sha256).hexdigest()
    assert verify_plain_hmac(PAYLOAD, digest, "ls_secret")
    assert verify_plain_hmac(PAYLOAD, digest.upper(), "ls_secret")
    assert not verify_plain_hmac(PAYLOAD, digest, "other")
    assert not verify_plain_hmac(PAYLOAD + b"x", digest, "ls_secret")
    assert not verify_plain_hmac(PAYLOAD, None, "ls_secret")


@pytest.mark.parametrize("timestamp", ["²", "١٧٦٠٠٠٠٠٠٠", "１７６０"])
def test_non_ascii_digit_timestamps_are_rejected(timestamp):
    assert not verify_stripe_signature(PAYLOAD, f"t={timestamp},v1=abcd", "s", NOW, 300)
    assert not verify_paddle_signature(PAYLOAD, f"ts={timestamp};h1=abcd", "s", NOW, 300)
    assert not verify_standard_webhook(
        PAYLOAD, "msg_1", timestamp, "v1,abcd", "whsec_c2VjcmV0", NOW, 300
    )
