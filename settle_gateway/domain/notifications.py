"""Inbound processor notification parsing and signature verification"""

import hashlib
import hmac
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from settle_gateway.domain.models import Notification, PaymentInfo

PAYMENT = "payment"
MERCHANT_ORDER = "merchant_order"


def _get(container: Mapping[str, Any] | None, key: str) -> Optional[str]:
    if not container:
        return None
    value = container.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_notification(body: Dict[str, Any] | None, query: Dict[str, Any] | None) -> Optional[Notification]:
    """
    Extract (type, external id) from a processor notification.

    Recognised shapes, first match wins:
    - query string ``?type=payment&data.id=123``
    - JSON body ``{"id": ..., "type": "payment", "data": {"id": "123"}}``
    - legacy query string ``?topic=payment&id=123``
    - legacy JSON body ``{"topic": "payment", "resource": "123"}``

    Returns None when none of them parse.
    """
    body = body if isinstance(body, dict) else {}
    query = query or {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    notification_id = _get(body, "id") if "type" in body else None
    action = _get(body, "action")

    if _get(query, "type") and _get(query, "data.id"):
        return Notification(
            notification_type=_get(query, "type"),
            external_id=_get(query, "data.id"),
            notification_id=notification_id,
            action=action,
        )

    if _get(body, "type") and _get(data, "id"):
        return Notification(
            notification_type=_get(body, "type"),
            external_id=_get(data, "id"),
            notification_id=notification_id,
            action=action,
        )

    if _get(query, "topic") and _get(query, "id"):
        return Notification(notification_type=_get(query, "topic"), external_id=_get(query, "id"))

    if _get(body, "topic") and (_get(body, "resource") or _get(body, "id")):
        resource = _get(body, "resource") or _get(body, "id")
        # legacy bodies sometimes carry the full resource URL
        return Notification(notification_type=_get(body, "topic"), external_id=resource.rstrip("/").rsplit("/", 1)[-1])

    return None


def dedupe_key(notification: Notification, payment: PaymentInfo) -> str:
    """
    Key used to detect redelivery of the same notification.

    Legacy notifications carry no id of their own, so the key falls back to the
    payment state they announced.
    """
    if notification.notification_id:
        return notification.notification_id
    modified = payment.last_modified.isoformat() if payment.last_modified else "-"
    return f"{notification.notification_type}:{payment.payment_id}:{payment.status}:{modified}"


class SignatureVerifier(Protocol):
    def verify(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, Any],
        body: Mapping[str, Any],
    ) -> Tuple[bool, Optional[str]]: ...


class HmacSignatureVerifier:
    """
    Verify ``x-signature: ts=<ts>,v1=<hex>`` against the manifest
    ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;`` signed with HMAC-SHA256.
    """

    def __init__(self, secret: str):
        self.secret = secret

    @staticmethod
    def manifest(data_id: str | None, request_id: str | None, ts: str) -> str:
        parts = []
        if data_id:
            parts.append(f"id:{data_id.lower()};")
        if request_id:
            parts.append(f"request-id:{request_id};")
        parts.append(f"ts:{ts};")
        return "".join(parts)

    def sign(self, data_id: str | None, request_id: str | None, ts: str) -> str:
        message = self.manifest(data_id, request_id, ts).encode("utf-8")
        return hmac.new(self.secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def verify(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, Any],
        body: Mapping[str, Any],
    ) -> Tuple[bool, Optional[str]]:
        if not self.secret or not self.secret.strip():
            return False, "WEBHOOK_SECRET_NOT_CONFIGURED"

        lowered = {k.lower(): v for k, v in headers.items()}
        header = (lowered.get("x-signature") or "").strip()
        if not header:
            return False, "MISSING_SIGNATURE"

        fields = {}
        for part in header.split(","):
            key, _, value = part.partition("=")
            fields[key.strip()] = value.strip()
        ts, received = fields.get("ts"), fields.get("v1")
        if not ts or not received:
            return False, "MALFORMED_SIGNATURE"

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        data_id = _get(query, "data.id") or _get(data, "id")
        expected = self.sign(data_id, lowered.get("x-request-id"), ts)
        if not hmac.compare_digest(expected, received):
            return False, "INVALID_SIGNATURE"

        return True, None
