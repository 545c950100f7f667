"""Data access layer for obligations, payment attempts and inbound webhooks"""

import uuid
from datetime import date, datetime
from typing import Iterable, List, Optional
from sqlalchemy.orm import Session
from settle_gateway.infrastructure.database.models import (
    AttemptNotification,
    AttemptReference,
    InboundWebhook,
    Obligation,
    PaymentAttempt,
)
from settle_gateway.domain.state_machine import ATTEMPT_ACTIVE, OBLIGATION_TERMINAL, PENDING, OVERDUE


class ObligationRepository:
    """Repository for obligations"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, obligation: Obligation) -> Obligation:
        self.db.add(obligation)
        self.db.flush()  # Get ID without committing
        return obligation

    def get_by_id(self, obligation_id: uuid.UUID) -> Optional[Obligation]:
        return self.db.get(Obligation, obligation_id)

    def list_by_owner(self, owner_id: str, status: Optional[str] = None, limit: int = 50) -> List[Obligation]:
        """Fetch an owner's obligations, newest first"""
        query = self.db.query(Obligation).filter(Obligation.owner_id == owner_id)
        if status:
            query = query.filter(Obligation.status == status)
        return query.order_by(Obligation.created_at.desc()).limit(limit).all()

    def list_past_due(self, today: date) -> List[Obligation]:
        """Pending obligations whose due date has passed"""
        return (
            self.db.query(Obligation)
            .filter(Obligation.status == PENDING, Obligation.due_date < today)
            .all()
        )

    def list_payable_due_before(self, horizon: date) -> List[Obligation]:
        """Pending or overdue obligations due on or before horizon"""
        return (
            self.db.query(Obligation)
            .filter(Obligation.status.in_([PENDING, OVERDUE]), Obligation.due_date <= horizon)
            .order_by(Obligation.due_date)
            .all()
        )

    def list_dormant(self, updated_before: datetime) -> List[Obligation]:
        """Terminal, not yet archived obligations untouched since updated_before"""
        return (
            self.db.query(Obligation)
            .filter(
                Obligation.status.in_(list(OBLIGATION_TERMINAL)),
                Obligation.archived_at.is_(None),
                Obligation.updated_at < updated_before,
            )
            .all()
        )


class PaymentAttemptRepository:
    """Repository for payment attempts and their notification log"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, attempt: PaymentAttempt) -> PaymentAttempt:
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def get_by_id(self, attempt_id: uuid.UUID) -> Optional[PaymentAttempt]:
        return self.db.get(PaymentAttempt, attempt_id)

    def get_by_processor_payment_id(self, payment_id: str) -> Optional[PaymentAttempt]:
        return (
            self.db.query(PaymentAttempt)
            .filter(PaymentAttempt.processor_payment_id == payment_id)
            .order_by(PaymentAttempt.created_at.desc())
            .first()
        )

    def get_by_external_reference(self, external_reference: str) -> Optional[PaymentAttempt]:
        return (
            self.db.query(PaymentAttempt)
            .filter(PaymentAttempt.external_reference == external_reference)
            .first()
        )

    def get_by_past_reference(self, external_reference: str) -> Optional[PaymentAttempt]:
        """Attempt that used external_reference for an earlier checkout"""
        return (
            self.db.query(PaymentAttempt)
            .join(AttemptReference, AttemptReference.attempt_id == PaymentAttempt.id)
            .filter(AttemptReference.external_reference == external_reference)
            .first()
        )

    def list_active_for_obligation(self, obligation_id: uuid.UUID) -> List[PaymentAttempt]:
        return (
            self.db.query(PaymentAttempt)
            .filter(
                PaymentAttempt.obligation_id == obligation_id,
                PaymentAttempt.status.in_(list(ATTEMPT_ACTIVE)),
            )
            .order_by(PaymentAttempt.created_at.desc())
            .all()
        )

    def list_for_obligation(self, obligation_id: uuid.UUID) -> List[PaymentAttempt]:
        return (
            self.db.query(PaymentAttempt)
            .filter(PaymentAttempt.obligation_id == obligation_id)
            .order_by(PaymentAttempt.created_at.desc())
            .all()
        )

    def list_by_owner(self, owner_id: str, status: Optional[str] = None, limit: int = 50) -> List[PaymentAttempt]:
        query = self.db.query(PaymentAttempt).filter(PaymentAttempt.owner_id == owner_id)
        if status:
            query = query.filter(PaymentAttempt.status == status)
        return query.order_by(PaymentAttempt.created_at.desc()).limit(limit).all()

    def list_stale(self, statuses: Iterable[str], created_before: datetime) -> List[PaymentAttempt]:
        return (
            self.db.query(PaymentAttempt)
            .filter(
                PaymentAttempt.status.in_(list(statuses)),
                PaymentAttempt.created_at < created_before,
            )
            .all()
        )

    def has_notification(self, attempt_id: uuid.UUID, notification_id: str) -> bool:
        return (
            self.db.query(AttemptNotification.id)
            .filter(
                AttemptNotification.attempt_id == attempt_id,
                AttemptNotification.notification_id == notification_id,
            )
            .first()
            is not None
        )


class InboundWebhookRepository:
    """Repository for the inbound webhook queue"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, webhook: InboundWebhook) -> InboundWebhook:
        self.db.add(webhook)
        self.db.flush()
        return webhook

    def get_by_id(self, webhook_id: uuid.UUID) -> Optional[InboundWebhook]:
        return self.db.get(InboundWebhook, webhook_id)

    def list_redeliverable(self, max_attempts: int, limit: int = 100) -> List[InboundWebhook]:
        """Webhooks never processed or failed on a transient error"""
        return (
            self.db.query(InboundWebhook)
            .filter(
                InboundWebhook.status.in_(["received", "failed"]),
                InboundWebhook.attempts < max_attempts,
            )
            .order_by(InboundWebhook.created_at)
            .limit(limit)
            .all()
        )
