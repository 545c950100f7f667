"""Attempt orchestrator: create, retry, cancel and refund payment attempts"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from settle_gateway.config import settings
from settle_gateway.domain import state_machine as sm
from settle_gateway.domain.exceptions import (
    GatewayError,
    InvalidStateTransition,
    PaymentRetryLimitError,
    ValidationError,
)
from settle_gateway.domain.models import CheckoutRequest, CheckoutSession, PayerInfo, RefundInfo
from settle_gateway.infrastructure.clients.base import GatewayClient
from settle_gateway.infrastructure.database.models import Obligation, PaymentAttempt
from settle_gateway.infrastructure.database.session import run_in_transaction
from settle_gateway.infrastructure.observability.metrics import record_attempt
from settle_gateway.services.attempts import PaymentAttemptStore
from settle_gateway.services.ledger import ObligationLedger
from settle_gateway.utils.date_utils import utcnow
from settle_gateway.utils.money import to_cents

logger = logging.getLogger(__name__)


@dataclass
class _Outcome:
    attempt: Optional[PaymentAttempt]
    orphaned_sessions: List[str]


class AttemptOrchestrator:
    """
    Workflow over ObligationLedger and PaymentAttemptStore.

    Processor calls happen outside database transactions; the attempt write
    and the ledger write it triggers are committed together.
    """

    def __init__(
        self,
        db: Session,
        gateway: GatewayClient,
        clock: Callable[[], datetime] = utcnow,
        dedupe_window: timedelta | None = None,
        max_attempts: int | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.ledger = ObligationLedger(db, clock)
        self.attempts = PaymentAttemptStore(db, clock)
        self.dedupe_window = dedupe_window or timedelta(minutes=settings.attempt_dedupe_window_minutes)
        self.max_attempts = max_attempts or settings.attempt_max_count

    # Read accessors

    def get_attempt(self, attempt_id: uuid.UUID) -> PaymentAttempt:
        return self.attempts.get(attempt_id)

    def list_attempts_by_owner(self, owner_id: str, status: Optional[str] = None) -> List[PaymentAttempt]:
        return self.attempts.list_by_owner(owner_id, status)

    def list_attempts_for_obligation(self, obligation_id: uuid.UUID) -> List[PaymentAttempt]:
        self._load_obligation(obligation_id)
        return self.attempts.list_for_obligation(obligation_id)

    # Workflow

    async def create_attempt(self, obligation_id: uuid.UUID, payer: PayerInfo, actor: str = "payer") -> PaymentAttempt:
        """
        Open a checkout for an obligation, or return the one already in flight.

        Raises:
            NotFoundError: unknown obligation
            InvalidStateTransition: obligation is paid or cancelled
            GatewayError: processor refused or stayed unavailable
        """
        obligation = self._load_obligation(obligation_id)
        if not self.ledger.can_be_settled(obligation):
            record_attempt("create", "rejected")
            raise InvalidStateTransition(
                f"Obligation cannot be paid in its current status: {obligation.status}",
                current_status=obligation.status,
            )

        existing = self._reusable_attempt(obligation.id)
        if existing is not None:
            record_attempt("create", "reused")
            logger.info(
                "Reusing active payment attempt",
                extra={"attempt_id": str(existing.id), "obligation_id": str(obligation.id)},
            )
            return existing

        try:
            session = await self.gateway.create_checkout_session(self._checkout_request(obligation, payer))
        except GatewayError:
            record_attempt("create", "gateway_error")
            raise

        def work() -> _Outcome:
            obligation = self.ledger.get(obligation_id)
            if not self.ledger.can_be_settled(obligation):
                raise InvalidStateTransition(
                    f"Obligation cannot be paid in its current status: {obligation.status}",
                    current_status=obligation.status,
                )
            # a concurrent caller may have won the race while we talked to the processor
            winner = self._reusable_attempt(obligation.id)
            if winner is not None:
                return _Outcome(attempt=winner, orphaned_sessions=[session.session_id])

            orphaned = self._supersede_active(obligation, actor)
            attempt = self.attempts.create(obligation, session, actor)
            self.ledger.mark_processing(obligation, attempt.id, actor)
            return _Outcome(attempt=attempt, orphaned_sessions=orphaned)

        try:
            outcome = run_in_transaction(self.db, work)
        except Exception:
            await self._cancel_remote(session.session_id)
            raise

        for session_id in outcome.orphaned_sessions:
            await self._cancel_remote(session_id)
        record_attempt("create", "created" if outcome.attempt.checkout_session_id == session.session_id else "reused")
        return outcome.attempt

    async def retry(self, attempt_id: uuid.UUID, payer: Optional[PayerInfo] = None, actor: str = "payer") -> PaymentAttempt:
        """
        Re-open a rejected or cancelled attempt with a fresh checkout session.

        Raises:
            InvalidStateTransition: attempt not failed, obligation not payable, or another attempt active
            PaymentRetryLimitError: attempt already used its retry budget
        """
        attempt = self.attempts.get(attempt_id)
        self._load_obligation(attempt.obligation_id)
        obligation = self._check_retryable(attempt)

        payer = payer or PayerInfo(email=attempt.payer_email or "")
        session = await self.gateway.create_checkout_session(self._checkout_request(obligation, payer))

        def work() -> PaymentAttempt:
            attempt = self.attempts.get(attempt_id)
            obligation = self._check_retryable(attempt)
            self.attempts.reopen_for_retry(attempt, session, actor)
            self.ledger.mark_processing(obligation, attempt.id, actor)
            return attempt

        try:
            attempt = run_in_transaction(self.db, work)
        except Exception:
            record_attempt("retry", "failed")
            await self._cancel_remote(session.session_id)
            raise

        record_attempt("retry", "retried")
        return attempt

    async def cancel(self, attempt_id: uuid.UUID, reason: Optional[str] = None, actor: str = "payer") -> PaymentAttempt:
        """
        Cancel an in-flight attempt locally, then best-effort at the processor.

        Raises:
            InvalidStateTransition: attempt is approved or otherwise not in flight
        """
        reason = reason or "Cancelled by user"

        def work() -> PaymentAttempt:
            attempt = self.attempts.get(attempt_id)
            if attempt.status not in sm.ATTEMPT_ACTIVE:
                raise InvalidStateTransition(
                    f"Only pending or processing attempts can be cancelled, not {attempt.status}",
                    current_status=attempt.status,
                )
            self._cancel_locally(attempt, reason, actor)
            return attempt

        attempt = run_in_transaction(self.db, work)
        if attempt.checkout_session_id:
            await self._cancel_remote(attempt.checkout_session_id)
        record_attempt("cancel", "cancelled")
        return attempt

    async def request_refund(
        self,
        attempt_id: uuid.UUID,
        amount: Decimal | int | str | None = None,
        reason: Optional[str] = None,
        actor: str = "operator",
    ) -> RefundInfo:
        """
        Refund an approved attempt in full or in part.

        A refund covering the whole obligation amount makes the obligation
        payable again.

        Raises:
            InvalidStateTransition: attempt not approved or without processor payment id
            ValidationError: amount not positive or above the attempt amount
            GatewayError: processor refused or stayed unavailable
        """
        attempt = self.attempts.get(attempt_id)
        if attempt.status != sm.APPROVED:
            raise InvalidStateTransition(
                f"Only approved attempts can be refunded, not {attempt.status}",
                current_status=attempt.status,
            )
        if not attempt.processor_payment_id:
            raise InvalidStateTransition("Attempt has no processor payment to refund", current_status=attempt.status)

        amount_cents = to_cents(amount) if amount is not None else None
        if amount_cents is not None and amount_cents > attempt.amount_cents:
            raise ValidationError("Refund amount exceeds the paid amount")

        try:
            refund = await self.gateway.refund(attempt.processor_payment_id, amount_cents)
        except GatewayError:
            record_attempt("refund", "gateway_error")
            raise
        refunded_cents = refund.amount_cents or amount_cents or attempt.amount_cents

        def work() -> None:
            attempt = self.attempts.get(attempt_id)
            if attempt.status == sm.REFUNDED:
                # the processor's refund webhook got here first
                attempt.refunded_amount_cents = max(attempt.refunded_amount_cents, refunded_cents)
            else:
                attempt.refunded_amount_cents = refunded_cents
                self.attempts.transition(
                    attempt,
                    sm.REFUNDED,
                    actor,
                    reason or "Refund requested",
                    {"refund_id": refund.refund_id, "amount_cents": refunded_cents, "status": refund.status},
                )
            obligation = self.ledger.get(attempt.obligation_id)
            if refunded_cents >= obligation.amount_cents and obligation.paid_attempt_id == attempt.id:
                self.ledger.reopen_after_refund(obligation, attempt.id, actor)

        run_in_transaction(self.db, work)
        record_attempt("refund", "refunded")
        return refund

    async def cancel_obligation(self, obligation_id: uuid.UUID, reason: str, actor: str = "operator") -> Obligation:
        """Cancel the obligation together with any attempt still in flight"""
        sessions: List[str] = []

        def work() -> Obligation:
            sessions.clear()
            obligation = self.ledger.get(obligation_id)
            if obligation.status == sm.PAID:
                raise InvalidStateTransition("A paid obligation cannot be cancelled", current_status=obligation.status)
            for attempt in self.attempts.list_active_for_obligation(obligation.id):
                self.attempts.transition(attempt, sm.CANCELLED, actor, reason)
                if attempt.checkout_session_id:
                    sessions.append(attempt.checkout_session_id)
            self.ledger.mark_cancelled(obligation, reason, actor)
            return obligation

        obligation = run_in_transaction(self.db, work)
        for session_id in sessions:
            await self._cancel_remote(session_id)
        return obligation

    async def sweep_stale_attempts(self, max_age: timedelta | None = None) -> int:
        """Cancel pending attempts older than max_age that never heard from the processor"""
        max_age = max_age or timedelta(days=settings.stale_attempt_days)
        cutoff = self.clock() - max_age
        stale_ids = [a.id for a in self.attempts.list_stale_pending(cutoff)]

        swept = 0
        for attempt_id in stale_ids:

            def work() -> Optional[PaymentAttempt]:
                attempt = self.attempts.get(attempt_id)
                if attempt.status != sm.PENDING or attempt.created_at >= cutoff:
                    return None
                self._cancel_locally(attempt, "Expired without processor confirmation", "sweeper")
                return attempt

            attempt = run_in_transaction(self.db, work)
            if attempt is None:
                continue
            swept += 1
            if attempt.checkout_session_id:
                await self._cancel_remote(attempt.checkout_session_id)

        if swept:
            record_attempt("sweep", "cancelled")
            logger.info("Stale payment attempts cancelled", extra={"count": swept})
        return swept

    # Helpers

    def _reusable_attempt(self, obligation_id: uuid.UUID) -> Optional[PaymentAttempt]:
        existing = self.attempts.find_active_for_obligation(obligation_id)
        if existing is not None and existing.created_at >= self.clock() - self.dedupe_window:
            return existing
        return None

    def _supersede_active(self, obligation: Obligation, actor: str) -> List[str]:
        """Cancel attempts still active past the dedupe window. Returns their session ids."""
        sessions = []
        for attempt in self.attempts.list_active_for_obligation(obligation.id):
            self._cancel_locally(attempt, "Superseded by a new checkout", actor, obligation)
            if attempt.checkout_session_id:
                sessions.append(attempt.checkout_session_id)
        # the partial unique index must see the cancellation before the insert
        self.db.flush()
        return sessions

    def _cancel_locally(
        self,
        attempt: PaymentAttempt,
        reason: str,
        actor: str,
        obligation: Optional[Obligation] = None,
    ) -> None:
        self.attempts.transition(attempt, sm.CANCELLED, actor, reason)
        obligation = obligation or self.ledger.get(attempt.obligation_id)
        if obligation.status == sm.PROCESSING and obligation.active_attempt_id in (attempt.id, None):
            self.ledger.revert_to_pending(obligation, reason, actor)

    def _load_obligation(self, obligation_id: uuid.UUID) -> Obligation:
        # commits a lazy overdue flip so it is recorded once
        return run_in_transaction(self.db, lambda: self.ledger.get(obligation_id))

    def _check_retryable(self, attempt: PaymentAttempt) -> Obligation:
        if attempt.status not in sm.ATTEMPT_RETRYABLE:
            raise InvalidStateTransition(
                f"Only rejected or cancelled attempts can be retried, not {attempt.status}",
                current_status=attempt.status,
            )
        if attempt.attempts_count >= self.max_attempts:
            record_attempt("retry", "limit_reached")
            raise PaymentRetryLimitError(
                f"Payment attempt reached the limit of {self.max_attempts} tries",
                attempts_count=attempt.attempts_count,
            )
        obligation = self.ledger.get(attempt.obligation_id)
        if not self.ledger.can_be_settled(obligation):
            raise InvalidStateTransition(
                f"Obligation cannot be paid in its current status: {obligation.status}",
                current_status=obligation.status,
            )
        other = self.attempts.find_active_for_obligation(obligation.id)
        if other is not None and other.id != attempt.id:
            raise InvalidStateTransition(
                f"Another payment attempt ({other.id}) is already in flight",
                current_status=obligation.status,
            )
        return obligation

    def _checkout_request(self, obligation: Obligation, payer: PayerInfo) -> CheckoutRequest:
        return CheckoutRequest(
            amount_cents=obligation.amount_cents,
            currency=obligation.currency,
            external_reference=f"OBL-{obligation.id.hex}-{uuid.uuid4().hex[:12]}",
            title=obligation.description,
            category=obligation.category,
            payer=payer,
            metadata={"obligation_id": str(obligation.id), "owner_id": obligation.owner_id},
        )

    async def _cancel_remote(self, session_id: str) -> None:
        try:
            await self.gateway.cancel_session(session_id)
        except GatewayError as e:
            logger.warning(
                f"Remote checkout cancellation failed: {e}",
                extra={"session_id": session_id},
            )
