"""Unit tests for webhook parsing, dedupe keys and signature verification"""

from datetime import datetime, timezone
from settle_gateway.domain.models import Notification, PaymentInfo
from settle_gateway.domain.notifications import (
    MERCHANT_ORDER,
    PAYMENT,
    HmacSignatureVerifier,
    dedupe_key,
    parse_notification,
)


def test_parse_query_type_and_data_id():
    notification = parse_notification(None, {"type": "payment", "data.id": "123"})
    assert notification.notification_type == PAYMENT
    assert notification.external_id == "123"


def test_parse_json_body():
    body = {"id": 987, "type": "payment", "action": "payment.updated", "data": {"id": "555"}}
    notification = parse_notification(body, {})
    assert notification == Notification(
        notification_type=PAYMENT, external_id="555", notification_id="987", action="payment.updated"
    )


def test_query_takes_precedence_over_body():
    body = {"id": 1, "type": "payment", "data": {"id": "from-body"}}
    notification = parse_notification(body, {"type": "payment", "data.id": "from-query"})
    assert notification.external_id == "from-query"
    assert notification.notification_id == "1"


def test_parse_legacy_topic_query():
    notification = parse_notification(None, {"topic": "merchant_order", "id": "42"})
    assert notification.notification_type == MERCHANT_ORDER
    assert notification.external_id == "42"
    assert notification.notification_id is None


def test_parse_legacy_body_resource_url():
    """Legacy bodies may carry the resource URL instead of the bare id"""
    body = {"topic": "payment", "resource": "https://api.processor.test/v1/payments/777"}
    notification = parse_notification(body, {})
    assert notification.notification_type == PAYMENT
    assert notification.external_id == "777"


def test_parse_unrecognised_shapes():
    assert parse_notification(None, {}) is None
    assert parse_notification({"type": "payment"}, {}) is None
    assert parse_notification({"hello": "world"}, {"type": "payment"}) is None
    assert parse_notification(["not", "a", "dict"], {}) is None


def test_dedupe_key_prefers_notification_id():
    notification = Notification(notification_type=PAYMENT, external_id="555", notification_id="abc")
    payment = PaymentInfo(payment_id="555", status="approved", amount_cents=100, currency="ARS", external_reference="x")
    assert dedupe_key(notification, payment) == "abc"


def test_dedupe_key_for_legacy_notifications_tracks_payment_state():
    notification = Notification(notification_type=PAYMENT, external_id="555")
    modified = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    pending = PaymentInfo("555", "pending", 100, "ARS", "x", last_modified=modified)
    approved = PaymentInfo("555", "approved", 100, "ARS", "x", last_modified=modified)

    assert dedupe_key(notification, pending) == f"payment:555:pending:{modified.isoformat()}"
    assert dedupe_key(notification, pending) != dedupe_key(notification, approved)


def _signed_headers(verifier: HmacSignatureVerifier, data_id: str, request_id: str = "req-1", ts: str = "1700000000"):
    return {
        "x-signature": f"ts={ts},v1={verifier.sign(data_id, request_id, ts)}",
        "x-request-id": request_id,
    }


def test_signature_manifest_format():
    assert HmacSignatureVerifier.manifest("ABC123", "req-1", "17") == "id:abc123;request-id:req-1;ts:17;"
    assert HmacSignatureVerifier.manifest(None, None, "17") == "ts:17;"


def test_valid_signature_from_body_data_id():
    verifier = HmacSignatureVerifier("s3cret")
    body = {"type": "payment", "data": {"id": "555"}}
    assert verifier.verify(_signed_headers(verifier, "555"), {}, body) == (True, None)


def test_valid_signature_from_query_data_id():
    verifier = HmacSignatureVerifier("s3cret")
    headers = {k.upper(): v for k, v in _signed_headers(verifier, "555").items()}
    assert verifier.verify(headers, {"data.id": "555"}, {}) == (True, None)


def test_tampered_data_id_fails():
    verifier = HmacSignatureVerifier("s3cret")
    body = {"type": "payment", "data": {"id": "556"}}
    assert verifier.verify(_signed_headers(verifier, "555"), {}, body) == (False, "INVALID_SIGNATURE")


def test_wrong_secret_fails():
    signer = HmacSignatureVerifier("other")
    verifier = HmacSignatureVerifier("s3cret")
    body = {"data": {"id": "555"}}
    assert verifier.verify(_signed_headers(signer, "555"), {}, body) == (False, "INVALID_SIGNATURE")


def test_missing_and_malformed_signature():
    verifier = HmacSignatureVerifier("s3cret")
    assert verifier.verify({}, {}, {}) == (False, "MISSING_SIGNATURE")
    assert verifier.verify({"x-signature": "v1=abc"}, {}, {}) == (False, "MALFORMED_SIGNATURE")


def test_unconfigured_secret_rejects_everything():
    verifier = HmacSignatureVerifier("")
    headers = {"x-signature": "ts=1,v1=abc"}
    assert verifier.verify(headers, {}, {}) == (False, "WEBHOOK_SECRET_NOT_CONFIGURED")
