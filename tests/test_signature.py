from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from payrecon.adapters.signature import (
    RejectReason,
    SignatureVerifier,
    build_signature_headers,
    compute_signature,
)

SECRET = "whsec_test_secret"
NOW = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)
BODY = b'{"event":"payment.completed","payment_id":"pay_1"}'


def _verifier() -> SignatureVerifier:
    return SignatureVerifier(secret=SECRET, now_fn=lambda: NOW)


def _timestamp(offset: timedelta = timedelta(0)) -> str:
    return (NOW + offset).isoformat().replace("+00:00", "Z")


def test_valid_signature_is_accepted() -> None:
    headers = build_signature_headers(SECRET, _timestamp(), BODY)

    result = _verifier().verify(BODY, headers)

    assert result.ok is True
    assert result.reason is None


def test_signature_covers_timestamp_and_body() -> None:
    ts = _timestamp()
    assert compute_signature(SECRET, ts, BODY) != compute_signature(SECRET, ts, BODY + b" ")
    later = _timestamp(timedelta(seconds=1))
    assert compute_signature(SECRET, ts, BODY) != compute_signature(SECRET, later, BODY)


def test_alternate_header_names_and_uppercase_hex_are_accepted() -> None:
    ts = _timestamp()
    headers = {
        "X-PayzCore-Signature": compute_signature(SECRET, ts, BODY).upper(),
        "X-PayzCore-Timestamp": ts,
    }

    assert _verifier().verify(BODY, headers).ok is True


@pytest.mark.parametrize("drop", ["X-Signature", "X-Timestamp"])
def test_missing_header_is_rejected(drop: str) -> None:
    headers = build_signature_headers(SECRET, _timestamp(), BODY)
    del headers[drop]

    assert _verifier().verify(BODY, headers).reason is RejectReason.MISSING_HEADER


@pytest.mark.parametrize("offset", [timedelta(minutes=-10), timedelta(minutes=10)])
def test_timestamp_outside_window_is_rejected(offset: timedelta) -> None:
    headers = build_signature_headers(SECRET, _timestamp(offset), BODY)

    assert _verifier().verify(BODY, headers).reason is RejectReason.STALE_TIMESTAMP


def test_timestamp_inside_window_is_accepted() -> None:
    headers = build_signature_headers(SECRET, _timestamp(timedelta(minutes=-4)), BODY)

    assert _verifier().verify(BODY, headers).ok is True


def test_unparseable_timestamp_is_rejected() -> None:
    headers = build_signature_headers(SECRET, "not-a-time", BODY)

    assert _verifier().verify(BODY, headers).reason is RejectReason.STALE_TIMESTAMP


def test_non_hex_signature_is_rejected_by_format() -> None:
    headers = {"X-Signature": "z" * 64, "X-Timestamp": _timestamp()}

    assert _verifier().verify(BODY, headers).reason is RejectReason.BAD_SIGNATURE_FORMAT


def test_flipped_body_character_fails() -> None:
    headers = build_signature_headers(SECRET, _timestamp(), BODY)
    tampered = BODY.replace(b"pay_1", b"pay_2")

    assert _verifier().verify(tampered, headers).reason is RejectReason.INVALID_SIGNATURE


def test_flipped_timestamp_character_fails() -> None:
    headers = build_signature_headers(SECRET, _timestamp(), BODY)
    headers["X-Timestamp"] = _timestamp(timedelta(seconds=1))

    assert _verifier().verify(BODY, headers).reason is RejectReason.INVALID_SIGNATURE


def test_wrong_secret_fails() -> None:
    headers = build_signature_headers("other-secret", _timestamp(), BODY)

    assert _verifier().verify(BODY, headers).reason is RejectReason.INVALID_SIGNATURE
