import time

import pytest

from tour_booking.webhook_security import (
    WebhookSignatureError,
    create_stripe_signature,
    parse_stripe_signature_header,
    verify_stripe_signature,
)

SECRET = "whsec_unit"
PAYLOAD = b'{"id": "evt_1", "type": "checkout.session.completed"}'


def test_valid_signature_passes() -> None:
    header = create_stripe_signature(SECRET, PAYLOAD)

    verify_stripe_signature(PAYLOAD, header, SECRET)


def test_tampered_payload_fails() -> None:
    header = create_stripe_signature(SECRET, PAYLOAD)

    with pytest.raises(WebhookSignatureError):
        verify_stripe_signature(PAYLOAD + b" ", header, SECRET)


def test_wrong_secret_fails() -> None:
    header = create_stripe_signature("whsec_other", PAYLOAD)

    with pytest.raises(WebhookSignatureError):
        verify_stripe_signature(PAYLOAD, header, SECRET)


def test_old_timestamp_fails() -> None:
    old = int(time.time()) - 3600
    header = create_stripe_signature(SECRET, PAYLOAD, timestamp=old)

    with pytest.raises(WebhookSignatureError, match="tolerance"):
        verify_stripe_signature(PAYLOAD, header, SECRET, tolerance=300)


def test_missing_header_or_secret_fails() -> None:
    with pytest.raises(WebhookSignatureError):
        verify_stripe_signature(PAYLOAD, None, SECRET)
    with pytest.raises(WebhookSignatureError):
        verify_stripe_signature(PAYLOAD, create_stripe_signature(SECRET, PAYLOAD), "")


def test_any_v1_signature_may_match_during_secret_rotation() -> None:
    timestamp = int(time.time())
    good = create_stripe_signature(SECRET, PAYLOAD, timestamp=timestamp).split("v1=")[1]
    header = f"t={timestamp},v1=deadbeef,v1={good}"

    verify_stripe_signature(PAYLOAD, header, SECRET)


def test_parse_header_collects_all_v1_entries() -> None:
    timestamp, signatures = parse_stripe_signature_header("t=123, v1=a, v0=z, v1=b")

    assert timestamp == "123"
    assert signatures == ["a", "b"]
