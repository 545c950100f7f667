"""Payment attempt store: persistence, lookups and the attempt state machine"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from settle_gateway.domain import state_machine as sm
from settle_gateway.domain.exceptions import NotFoundError
from settle_gateway.domain.models import CheckoutSession, PaymentInfo
from settle_gateway.infrastructure.database.models import (
    AttemptNotification,
    AttemptReference,
    AttemptStatusChange,
    Obligation,
    PaymentAttempt,
)
from settle_gateway.infrastructure.database.repositories import PaymentAttemptRepository
from settle_gateway.infrastructure.observability.logging import log_transition
from settle_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


class PaymentAttemptStore:
    """Owns PaymentAttempt records. Never commits; callers own the transaction."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.repo = PaymentAttemptRepository(db)
        self.clock = clock

    def create(self, obligation: Obligation, session: CheckoutSession, actor: str) -> PaymentAttempt:
        """Persist a fresh pending attempt for a checkout session"""
        now = self.clock()
        attempt = PaymentAttempt(
            obligation_id=obligation.id,
            owner_id=obligation.owner_id,
            amount_cents=obligation.amount_cents,
            currency=obligation.currency,
            status=sm.PENDING,
            checkout_session_id=session.session_id,
            checkout_url=session.redirect_url,
            external_reference=session.external_reference,
            attempts_count=1,
            refunded_amount_cents=0,
            created_at=now,
            updated_at=now,
        )
        self.repo.add(attempt)
        attempt.history.append(
            AttemptStatusChange(
                from_status=None,
                to_status=sm.PENDING,
                actor=actor,
                reason="Checkout session created",
                details={"checkout_session_id": session.session_id},
                created_at=now,
            )
        )
        self._remember_reference(attempt, session)
        return attempt

    def get(self, attempt_id: uuid.UUID) -> PaymentAttempt:
        attempt = self.repo.get_by_id(attempt_id)
        if attempt is None:
            raise NotFoundError(f"Payment attempt {attempt_id} not found")
        return attempt

    def find_active_for_obligation(self, obligation_id: uuid.UUID) -> Optional[PaymentAttempt]:
        active = self.repo.list_active_for_obligation(obligation_id)
        return active[0] if active else None

    def list_active_for_obligation(self, obligation_id: uuid.UUID) -> List[PaymentAttempt]:
        return self.repo.list_active_for_obligation(obligation_id)

    def list_for_obligation(self, obligation_id: uuid.UUID) -> List[PaymentAttempt]:
        return self.repo.list_for_obligation(obligation_id)

    def list_by_owner(self, owner_id: str, status: Optional[str] = None) -> List[PaymentAttempt]:
        return self.repo.list_by_owner(owner_id, status)

    def list_stale_pending(self, created_before: datetime) -> List[PaymentAttempt]:
        return self.repo.list_stale([sm.PENDING], created_before)

    def resolve(self, payment_id: Optional[str], external_reference: Optional[str]) -> Optional[PaymentAttempt]:
        """
        Find the attempt a processor payment belongs to.

        Payment id first, then the current external reference, then any
        reference the attempt used before a retry replaced its checkout.
        """
        attempt = self.repo.get_by_processor_payment_id(payment_id) if payment_id else None
        if attempt is None and external_reference:
            attempt = self.repo.get_by_external_reference(external_reference)
            if attempt is None:
                attempt = self.repo.get_by_past_reference(external_reference)
        return attempt

    def transition(
        self,
        attempt: PaymentAttempt,
        new_status: str,
        actor: str,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Move the attempt to new_status. Returns the previous status."""
        old_status = attempt.status
        sm.assert_attempt_transition(old_status, new_status)
        attempt.status = new_status
        attempt.updated_at = self.clock()
        attempt.history.append(
            AttemptStatusChange(
                from_status=old_status,
                to_status=new_status,
                actor=actor,
                reason=reason,
                details=details,
                created_at=self.clock(),
            )
        )
        log_transition("payment_attempt", attempt.id, old_status, new_status, actor, reason)
        return old_status

    def reopen_for_retry(self, attempt: PaymentAttempt, session: CheckoutSession, actor: str) -> None:
        """Point a failed attempt at a new checkout session and put it back to pending"""
        previous = {
            "previous_checkout_session_id": attempt.checkout_session_id,
            "previous_external_reference": attempt.external_reference,
            "checkout_session_id": session.session_id,
        }
        attempt.attempts_count += 1
        attempt.checkout_session_id = session.session_id
        attempt.checkout_url = session.redirect_url
        attempt.external_reference = session.external_reference
        attempt.status_detail = None
        self.transition(attempt, sm.PENDING, actor, f"Retry #{attempt.attempts_count}", previous)
        self._remember_reference(attempt, session)

    def record_notification(
        self,
        attempt: PaymentAttempt,
        notification_id: str,
        notification_type: str,
        processor_status: Optional[str],
        payload: Optional[Dict[str, Any]],
    ) -> bool:
        """
        Append a notification to the attempt's log.

        Returns False if this notification id was already recorded. The
        UNIQUE(attempt_id, notification_id) constraint catches concurrent
        inserts that both pass the lookup.
        """
        if self.repo.has_notification(attempt.id, notification_id):
            return False
        attempt.notifications.append(
            AttemptNotification(
                notification_id=notification_id,
                notification_type=notification_type,
                processor_status=processor_status,
                payload=payload,
                received_at=self.clock(),
            )
        )
        self.db.flush()
        return True

    def apply_payment_info(self, attempt: PaymentAttempt, payment: PaymentInfo) -> None:
        """
        Copy processor-side identifiers and details onto the attempt.

        A settled attempt keeps tracking the payment that settled it; refunds
        go to that payment.
        """
        if attempt.processor_payment_id != payment.payment_id:
            if self.tracks_other_settled_payment(attempt, payment.payment_id):
                return
            if attempt.processor_payment_id:
                logger.info(
                    "Attempt now tracks a new processor payment",
                    extra={
                        "attempt_id": str(attempt.id),
                        "previous_payment_id": attempt.processor_payment_id,
                        "payment_id": payment.payment_id,
                    },
                )
            attempt.processor_payment_id = payment.payment_id
        if payment.status_detail:
            attempt.status_detail = payment.status_detail
        if payment.payer_email:
            attempt.payer_email = payment.payer_email

    def tracks_other_settled_payment(self, attempt: PaymentAttempt, payment_id: str) -> bool:
        """True when money was already taken for the attempt under a different payment"""
        return (
            attempt.status in sm.ATTEMPT_SETTLED
            and attempt.processor_payment_id is not None
            and attempt.processor_payment_id != payment_id
        )

    def _remember_reference(self, attempt: PaymentAttempt, session: CheckoutSession) -> None:
        attempt.references.append(
            AttemptReference(
                external_reference=session.external_reference,
                checkout_session_id=session.session_id,
                created_at=self.clock(),
            )
        )
