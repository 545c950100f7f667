"""Payment processor HTTP client with bounded retries for transient failures"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from settle_gateway.config import settings
from settle_gateway.domain.exceptions import GatewayError
from settle_gateway.domain.models import CheckoutRequest, CheckoutSession, PaymentInfo, RefundInfo
from settle_gateway.infrastructure.observability.metrics import gateway_failure_counter, gateway_latency_histogram
from settle_gateway.utils.date_utils import parse_iso_datetime, utcnow
from settle_gateway.utils.money import from_cents, reported_cents

logger = logging.getLogger(__name__)

CATEGORY_MAP = {
    "service": "services",
    "product": "others",
    "subscription": "services",
    "fine": "tickets",
    "other": "others",
}


class ProcessorClient:
    """Client for the external payment processor REST API"""

    def __init__(
        self,
        base_url: str | None = None,
        access_token: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.processor_api_base
        self.access_token = access_token or settings.processor_access_token
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = max_retries or settings.gateway_max_retries
        self.backoff_base = settings.gateway_backoff_base if backoff_base is None else backoff_base
        self.transport = transport

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        """
        Open a checkout session for one obligation payment.

        The external reference doubles as the idempotency key so a retried
        request never opens a second session at the processor.

        Raises:
            GatewayError: processor rejected the request or stayed unavailable
        """
        now = utcnow()
        back_url = f"{settings.frontend_url}/payment/{{outcome}}?external_reference={request.external_reference}"
        payer: Dict[str, Any] = {
            "name": request.payer.name,
            "surname": request.payer.surname,
            "email": request.payer.email,
        }
        if request.payer.identification_type and request.payer.identification_number:
            payer["identification"] = {
                "type": request.payer.identification_type,
                "number": request.payer.identification_number,
            }

        body = {
            "items": [
                {
                    "id": request.metadata.get("obligation_id", request.external_reference),
                    "title": request.title,
                    "category_id": CATEGORY_MAP.get(request.category, "others"),
                    "quantity": 1,
                    "currency_id": request.currency,
                    "unit_price": float(from_cents(request.amount_cents)),
                }
            ],
            "payer": payer,
            "back_urls": {
                outcome: back_url.format(outcome=outcome) for outcome in ("success", "failure", "pending")
            },
            "auto_return": "approved",
            "notification_url": f"{settings.public_base_url}/v1/webhooks/processor",
            "external_reference": request.external_reference,
            "statement_descriptor": settings.processor_statement_descriptor,
            "expires": True,
            "expiration_date_from": now.isoformat(),
            "expiration_date_to": (now + timedelta(hours=settings.checkout_expiration_hours)).isoformat(),
            "metadata": request.metadata,
        }

        data = await self._request(
            "create_checkout",
            "POST",
            "/checkout/preferences",
            json=body,
            idempotency_key=request.external_reference,
        )
        try:
            return CheckoutSession(
                session_id=str(data["id"]),
                redirect_url=data["init_point"],
                external_reference=request.external_reference,
            )
        except (KeyError, TypeError) as e:
            raise GatewayError(f"Invalid checkout response from processor: {e}") from e

    async def fetch_payment(self, payment_id: str) -> PaymentInfo:
        """
        Fetch the authoritative state of a payment.

        Raises:
            GatewayError: on timeout, HTTP errors, or invalid response
        """
        data = await self._request("fetch_payment", "GET", f"/v1/payments/{payment_id}")
        try:
            payer = data.get("payer") or {}
            return PaymentInfo(
                payment_id=str(data["id"]),
                status=data["status"],
                amount_cents=reported_cents(data.get("transaction_amount")),
                currency=data.get("currency_id"),
                external_reference=data.get("external_reference"),
                status_detail=data.get("status_detail"),
                payer_email=payer.get("email"),
                last_modified=parse_iso_datetime(data.get("date_last_updated")),
                raw_detail=data,
            )
        except (KeyError, ValueError, TypeError, ArithmeticError) as e:
            raise GatewayError(f"Invalid payment data from processor: {e}") from e

    async def refund(self, payment_id: str, amount_cents: Optional[int] = None) -> RefundInfo:
        """Refund a payment in full, or partially when amount_cents is given"""
        body: Dict[str, Any] = {}
        if amount_cents is not None:
            body["amount"] = float(from_cents(amount_cents))

        data = await self._request(
            "refund",
            "POST",
            f"/v1/payments/{payment_id}/refunds",
            json=body,
            idempotency_key=str(uuid.uuid4()),
        )
        try:
            return RefundInfo(
                refund_id=str(data["id"]),
                amount_cents=reported_cents(data.get("amount")),
                status=data.get("status", "approved"),
            )
        except (KeyError, ValueError, TypeError, ArithmeticError) as e:
            raise GatewayError(f"Invalid refund data from processor: {e}") from e

    async def cancel_session(self, session_id: str) -> None:
        """Expire a checkout session. Best effort: failures are logged, not raised."""
        try:
            await self._request(
                "cancel_session",
                "PUT",
                f"/checkout/preferences/{session_id}",
                json={"expires": True, "expiration_date_to": utcnow().isoformat()},
            )
        except GatewayError as e:
            logger.warning(
                f"Could not cancel checkout session remotely: {e}",
                extra={"session_id": session_id, "status_code": e.status_code},
            )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a request with retry logic.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base ... (base * 2^(attempt-1))
        - Retries timeouts, network failures, 429 and 5xx responses
        - 4xx responses are rejections and fail immediately
        """
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key

        attempt = 0
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            while True:
                attempt += 1
                try:
                    return await self._send(client, operation, method, path, json, headers)
                except GatewayError as e:
                    gateway_failure_counter.labels(operation=operation, retryable=str(e.retryable).lower()).inc()
                    if not e.retryable or attempt >= self.max_retries:
                        raise

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    logger.warning(
                        f"Processor call failed, retrying in {backoff}s: {e}",
                        extra={"operation": operation, "attempt": attempt},
                    )
                    await asyncio.sleep(backoff)

    async def _send(
        self,
        client: httpx.AsyncClient,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Dict[str, Any]:
        try:
            with gateway_latency_histogram.labels(operation=operation).time():
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise GatewayError(f"Processor timeout after {self.timeout}s", retryable=True) from e
        except httpx.RequestError as e:
            raise GatewayError(f"Processor unreachable: {e}", retryable=True) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise GatewayError(f"Processor error: {status}", retryable=True, status_code=status)
        if status >= 400:
            raise GatewayError(f"Processor rejected {operation}: {status} {response.text[:200]}", status_code=status)

        try:
            return response.json() if response.content else {}
        except ValueError as e:
            raise GatewayError(f"Invalid JSON from processor: {e}", status_code=status) from e
