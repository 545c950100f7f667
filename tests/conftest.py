"""Pytest fixtures for testing"""

import uuid
import pytest
from datetime import timedelta
from typing import Dict, Generator, List, Optional, Tuple
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from settle_gateway.api.dependencies import get_gateway_client, get_reconciler
from settle_gateway.api.main import create_app
from settle_gateway.domain.exceptions import GatewayError
from settle_gateway.domain.models import CheckoutRequest, CheckoutSession, PayerInfo, PaymentInfo, RefundInfo
from settle_gateway.infrastructure.database.models import Base, Obligation, PaymentAttempt
from settle_gateway.infrastructure.database.session import get_db
from settle_gateway.services.ledger import ObligationLedger
from settle_gateway.services.orchestrator import AttemptOrchestrator
from settle_gateway.services.reconciler import WebhookReconciler
from settle_gateway.utils.date_utils import utcnow


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeGateway:
    """In-memory processor: records every call and serves payments registered by tests"""

    def __init__(self):
        self.checkouts: List[CheckoutRequest] = []
        self.cancelled_sessions: List[str] = []
        self.refunds: List[Tuple[str, Optional[int]]] = []
        self.payments: Dict[str, PaymentInfo] = {}
        self.checkout_error: Optional[GatewayError] = None
        self.fetch_error: Optional[GatewayError] = None

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        if self.checkout_error:
            raise self.checkout_error
        self.checkouts.append(request)
        session_id = f"sess-{len(self.checkouts)}"
        return CheckoutSession(
            session_id=session_id,
            redirect_url=f"https://checkout.test/{session_id}",
            external_reference=request.external_reference,
        )

    async def fetch_payment(self, payment_id: str) -> PaymentInfo:
        if self.fetch_error:
            raise self.fetch_error
        if payment_id not in self.payments:
            raise GatewayError("Processor rejected fetch_payment: 404", status_code=404)
        return self.payments[payment_id]

    async def refund(self, payment_id: str, amount_cents: Optional[int] = None) -> RefundInfo:
        self.refunds.append((payment_id, amount_cents))
        payment = self.payments.get(payment_id)
        amount = amount_cents if amount_cents is not None else (payment.amount_cents if payment else 0)
        return RefundInfo(refund_id=f"ref-{len(self.refunds)}", amount_cents=amount, status="approved")

    async def cancel_session(self, session_id: str) -> None:
        self.cancelled_sessions.append(session_id)

    def report_payment(
        self,
        attempt: PaymentAttempt,
        status: str,
        payment_id: Optional[str] = None,
        status_detail: Optional[str] = None,
        external_reference: Optional[str] = None,
    ) -> PaymentInfo:
        """Make the processor hold a payment for attempt's current checkout"""
        payment_id = payment_id or f"{len(self.payments) + 1000001}"
        payment = PaymentInfo(
            payment_id=payment_id,
            status=status,
            amount_cents=attempt.amount_cents,
            currency=attempt.currency,
            external_reference=external_reference or attempt.external_reference,
            status_detail=status_detail,
            payer_email="payer@example.com",
            last_modified=utcnow(),
        )
        self.payments[payment_id] = payment
        return payment


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ledger(db: Session) -> ObligationLedger:
    return ObligationLedger(db)


@pytest.fixture
def orchestrator(db: Session, gateway: FakeGateway) -> AttemptOrchestrator:
    return AttemptOrchestrator(db, gateway)


@pytest.fixture
def reconciler(gateway: FakeGateway) -> WebhookReconciler:
    """Reconciler without signature checks; signature tests build their own"""
    return WebhookReconciler(gateway, verifier=None, enforce_signature=False)


@pytest.fixture
def payer() -> PayerInfo:
    return PayerInfo(email="payer@example.com", name="Ana", surname="Lopez")


@pytest.fixture
def obligation(db: Session, ledger: ObligationLedger) -> Obligation:
    """ARS 1000.00 obligation due in five days"""
    obligation = ledger.create(
        owner_id="owner_1",
        amount="1000",
        currency="ARS",
        due_date=utcnow().date() + timedelta(days=5),
        category="service",
        description="Monthly maintenance fee",
    )
    db.commit()
    return obligation


@pytest.fixture
def deliver(db: Session, reconciler: WebhookReconciler):
    """Push a payment notification through intake and reconciliation, return the queue status"""

    async def _deliver(payment_id: str, notification_id: Optional[str] = None, notification_type: str = "payment"):
        body = {
            "id": notification_id or uuid.uuid4().hex,
            "type": notification_type,
            "action": "payment.updated",
            "data": {"id": payment_id},
        }
        webhook = reconciler.accept(db, {}, {"content-type": "application/json"}, body)
        return await reconciler.process(db, webhook.id)

    return _deliver


@pytest.fixture
def client(db: Session, gateway: FakeGateway) -> TestClient:
    """Create FastAPI test client with test database and in-memory processor"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    def override_get_reconciler():
        return WebhookReconciler(
            gateway,
            verifier=None,
            enforce_signature=False,
            session_factory=TestingSessionLocal,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    app.dependency_overrides[get_reconciler] = override_get_reconciler
    return TestClient(app)
