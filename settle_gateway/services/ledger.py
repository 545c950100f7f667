"""Obligation ledger: creation, lazy overdue evaluation and explicit status transitions"""

import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from settle_gateway.domain import state_machine as sm
from settle_gateway.domain.exceptions import InvalidStateTransition, NotFoundError, ValidationError
from settle_gateway.infrastructure.database.models import Obligation, ObligationStatusChange
from settle_gateway.infrastructure.database.repositories import ObligationRepository
from settle_gateway.infrastructure.observability.logging import log_transition
from settle_gateway.infrastructure.observability.metrics import obligation_transition_counter
from settle_gateway.utils.date_utils import utcnow
from settle_gateway.utils.money import to_cents

logger = logging.getLogger(__name__)

CURRENCIES = frozenset({"ARS", "USD"})
CATEGORIES = frozenset({"service", "product", "subscription", "fine", "other"})

SYSTEM = "system"


class ObligationLedger:
    """
    Owns Obligation records and their state machine.

    Every transition is an explicit method that appends to the status history.
    Nothing here commits; callers wrap calls in run_in_transaction.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.repo = ObligationRepository(db)
        self.clock = clock

    def today(self) -> date:
        return self.clock().date()

    def create(
        self,
        owner_id: str,
        amount: Decimal | int | str,
        currency: str,
        due_date: date,
        category: str = "other",
        description: str = "",
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Obligation:
        """
        Register a new obligation in pending status.

        Raises:
            ValidationError: bad amount, currency, category, description or due date
        """
        if not owner_id or not str(owner_id).strip():
            raise ValidationError("Owner is required")
        amount_cents = to_cents(amount)

        currency = (currency or "").strip().upper()
        if currency not in CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency!r}")
        if category not in CATEGORIES:
            raise ValidationError(f"Unsupported category: {category!r}")

        description = (description or "").strip()
        if not description:
            raise ValidationError("Description is required")
        if len(description) > 500:
            raise ValidationError("Description must be at most 500 characters")
        if notes and len(notes) > 1000:
            raise ValidationError("Notes must be at most 1000 characters")

        if not isinstance(due_date, date):
            raise ValidationError("Due date must be a date")
        if due_date < self.today():
            raise ValidationError("Due date must be today or in the future")

        obligation = Obligation(
            owner_id=owner_id,
            description=description,
            amount_cents=amount_cents,
            currency=currency,
            due_date=due_date,
            category=category,
            notes=notes,
            status=sm.PENDING,
            reminders_sent=0,
            payment_attempts=0,
            created_by=created_by,
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        self.repo.add(obligation)
        self._append_history(obligation, None, sm.PENDING, created_by or "operator", "Obligation created")
        return obligation

    def get(self, obligation_id: uuid.UUID) -> Obligation:
        """
        Load an obligation, flipping it to overdue if its due date has passed.

        Raises:
            NotFoundError: no obligation with that id
        """
        obligation = self.repo.get_by_id(obligation_id)
        if obligation is None:
            raise NotFoundError(f"Obligation {obligation_id} not found")
        self.refresh_overdue(obligation)
        return obligation

    def list_by_owner(self, owner_id: str, status: Optional[str] = None) -> List[Obligation]:
        obligations = self.repo.list_by_owner(owner_id)
        for obligation in obligations:
            self.refresh_overdue(obligation)
        if status:
            obligations = [o for o in obligations if o.status == status]
        return obligations

    def refresh_overdue(self, obligation: Obligation) -> bool:
        """Apply the pending -> overdue rule. Returns True if it changed the record."""
        if sm.is_past_due(obligation.status, obligation.due_date, self.today()):
            self._transition(obligation, sm.OVERDUE, SYSTEM, "Due date elapsed")
            return True
        return False

    def can_be_settled(self, obligation: Obligation) -> bool:
        return obligation.status in sm.SETTLEABLE

    def mark_processing(
        self,
        obligation: Obligation,
        attempt_id: Optional[uuid.UUID] = None,
        actor: str = SYSTEM,
    ) -> None:
        """pending/overdue -> processing, recording which attempt is in flight"""
        self.refresh_overdue(obligation)
        if obligation.status not in (sm.PENDING, sm.OVERDUE):
            raise InvalidStateTransition(
                f"Obligation cannot enter processing from {obligation.status}",
                current_status=obligation.status,
            )
        obligation.active_attempt_id = attempt_id
        obligation.payment_attempts = (obligation.payment_attempts or 0) + 1
        obligation.last_payment_attempt_at = self.clock()
        self._transition(obligation, sm.PROCESSING, actor, "Payment attempt started", attempt_id)

    def mark_paid(self, obligation: Obligation, attempt_id: uuid.UUID, actor: str = SYSTEM) -> bool:
        """
        Settle the obligation with the given attempt.

        Returns False when it was already settled by this same attempt.

        Raises:
            InvalidStateTransition: cancelled, or paid by a different attempt
        """
        if obligation.status == sm.PAID:
            if obligation.paid_attempt_id == attempt_id:
                return False
            raise InvalidStateTransition(
                f"Obligation already paid by attempt {obligation.paid_attempt_id}",
                current_status=obligation.status,
            )
        if obligation.status not in sm.SETTLEABLE:
            raise InvalidStateTransition(
                f"Obligation cannot be paid from {obligation.status}",
                current_status=obligation.status,
            )
        obligation.paid_attempt_id = attempt_id
        obligation.active_attempt_id = None
        self._transition(obligation, sm.PAID, actor, "Payment approved", attempt_id)
        return True

    def mark_cancelled(self, obligation: Obligation, reason: str, actor: str = SYSTEM) -> bool:
        """Cancel the obligation. A second cancel is a no-op returning False."""
        if obligation.status == sm.CANCELLED:
            return False
        if obligation.status == sm.PAID:
            raise InvalidStateTransition("A paid obligation cannot be cancelled", current_status=obligation.status)
        obligation.active_attempt_id = None
        self._transition(obligation, sm.CANCELLED, actor, reason or "Cancelled")
        return True

    def revert_to_pending(self, obligation: Obligation, reason: str, actor: str = SYSTEM) -> str:
        """
        processing -> payable after a failed or abandoned attempt.

        The obligation lands on overdue instead of pending when its due date
        has already passed. Returns the new status.
        """
        if obligation.status != sm.PROCESSING:
            raise InvalidStateTransition(
                f"Only a processing obligation can be reverted, not {obligation.status}",
                current_status=obligation.status,
            )
        target = sm.payable_status(obligation.due_date, self.today())
        attempt_id = obligation.active_attempt_id
        obligation.active_attempt_id = None
        self._transition(obligation, target, actor, reason, attempt_id)
        return target

    def reopen_after_refund(self, obligation: Obligation, attempt_id: uuid.UUID, actor: str = SYSTEM) -> str:
        """paid -> payable after the settling payment was refunded in full"""
        if obligation.status != sm.PAID or obligation.paid_attempt_id != attempt_id:
            raise InvalidStateTransition(
                "Only an obligation paid by the refunded attempt can be reopened",
                current_status=obligation.status,
            )
        target = sm.payable_status(obligation.due_date, self.today())
        obligation.paid_attempt_id = None
        self._transition(obligation, target, actor, "Payment refunded", attempt_id)
        return target

    def sweep_overdue(self) -> int:
        """Flip every past-due pending obligation to overdue"""
        flipped = 0
        for obligation in self.repo.list_past_due(self.today()):
            if self.refresh_overdue(obligation):
                flipped += 1
        return flipped

    def archive_dormant(self, older_than: timedelta) -> int:
        """Stamp archived_at on terminal obligations untouched for older_than"""
        archived = 0
        now = self.clock()
        for obligation in self.repo.list_dormant(now - older_than):
            obligation.archived_at = now
            archived += 1
        return archived

    def _transition(
        self,
        obligation: Obligation,
        new_status: str,
        actor: str,
        reason: Optional[str],
        attempt_id: Optional[uuid.UUID] = None,
    ) -> None:
        old_status = obligation.status
        sm.assert_obligation_transition(old_status, new_status)
        obligation.status = new_status
        obligation.updated_at = self.clock()
        self._append_history(obligation, old_status, new_status, actor, reason, attempt_id)
        obligation_transition_counter.labels(to_status=new_status).inc()
        log_transition("obligation", obligation.id, old_status, new_status, actor, reason)

    def _append_history(
        self,
        obligation: Obligation,
        old_status: Optional[str],
        new_status: str,
        actor: str,
        reason: Optional[str],
        attempt_id: Optional[uuid.UUID] = None,
    ) -> None:
        obligation.history.append(
            ObligationStatusChange(
                from_status=old_status,
                to_status=new_status,
                actor=actor,
                reason=reason,
                attempt_id=attempt_id,
                created_at=self.clock(),
            )
        )
