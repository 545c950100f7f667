"""Payment processor interface consumed by the orchestrator and reconciler"""

from typing import Optional, Protocol

from settle_gateway.domain.models import CheckoutRequest, CheckoutSession, PaymentInfo, RefundInfo


class GatewayClient(Protocol):
    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession: ...

    async def fetch_payment(self, payment_id: str) -> PaymentInfo: ...

    async def refund(self, payment_id: str, amount_cents: Optional[int] = None) -> RefundInfo: ...

    async def cancel_session(self, session_id: str) -> None: ...
