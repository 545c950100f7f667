"""
Webhook reconciler: durable intake of processor notifications and the
asynchronous pipeline that turns each one into at most one state transition.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from settle_gateway.config import settings
from settle_gateway.domain import state_machine as sm
from settle_gateway.domain.exceptions import (
    DuplicateNotification,
    GatewayError,
    InvalidStateTransition,
    UnmappedProcessorStatus,
    UnresolvedNotification,
)
from settle_gateway.domain.models import Notification, PaymentInfo
from settle_gateway.domain.notifications import PAYMENT, SignatureVerifier, dedupe_key, parse_notification
from settle_gateway.infrastructure.clients.base import GatewayClient
from settle_gateway.infrastructure.database.models import InboundWebhook, PaymentAttempt
from settle_gateway.infrastructure.database.repositories import InboundWebhookRepository
from settle_gateway.infrastructure.database.session import run_in_transaction
from settle_gateway.infrastructure.observability.logging import log_security_event
from settle_gateway.infrastructure.observability.metrics import record_webhook, webhook_signature_failure_counter
from settle_gateway.services.attempts import PaymentAttemptStore
from settle_gateway.services.ledger import ObligationLedger
from settle_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

PROCESSOR = "processor"

# Webhook queue statuses
RECEIVED = "received"
PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNRESOLVED = "unresolved"
UNPARSEABLE = "unparseable"
INVALID_SIGNATURE = "invalid_signature"
FAILED = "failed"
DEAD = "dead"

FINAL_STATUSES = frozenset({PROCESSED, DUPLICATE, IGNORED, UNRESOLVED, UNPARSEABLE, INVALID_SIGNATURE, DEAD})

# Headers worth keeping for audit and signature checks
_KEPT_HEADERS = ("x-signature", "x-request-id", "user-agent", "content-type")


class WebhookReconciler:
    """
    Maps inbound processor notifications onto local attempt and obligation state.

    accept() only enqueues. process() runs the reconciliation for one queued
    notification and never raises: every outcome is recorded on the queue row.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        verifier: Optional[SignatureVerifier] = None,
        enforce_signature: bool | None = None,
        session_factory: Optional[Callable[[], Session]] = None,
        clock: Callable[[], datetime] = utcnow,
        max_processing_attempts: int | None = None,
    ):
        self.gateway = gateway
        self.verifier = verifier
        self.enforce_signature = (
            settings.webhook_enforce_signature if enforce_signature is None else enforce_signature
        )
        self.session_factory = session_factory
        self.clock = clock
        self.max_processing_attempts = max_processing_attempts or settings.webhook_max_processing_attempts

    def accept(
        self,
        db: Session,
        query: Mapping[str, Any],
        headers: Mapping[str, str],
        body: Optional[Dict[str, Any]],
    ) -> InboundWebhook:
        """Durably enqueue a raw notification. Commits."""
        lowered = {k.lower(): v for k, v in headers.items()}
        webhook = InboundWebhook(
            query=dict(query),
            headers={k: lowered[k] for k in _KEPT_HEADERS if k in lowered},
            body=body if isinstance(body, dict) else None,
            status=RECEIVED,
            attempts=0,
            created_at=self.clock(),
        )
        notification = parse_notification(webhook.body, webhook.query)
        if notification is not None:
            webhook.notification_type = notification.notification_type
            webhook.external_id = notification.external_id
            webhook.notification_id = notification.notification_id
        InboundWebhookRepository(db).add(webhook)
        db.commit()
        record_webhook("received")
        return webhook

    async def process_in_background(self, webhook_id: uuid.UUID) -> None:
        """Entry point for background tasks: own session, never raises"""
        if self.session_factory is None:
            raise RuntimeError("process_in_background requires a session_factory")
        db = self.session_factory()
        try:
            await self.process(db, webhook_id)
        except Exception:
            logger.exception("Webhook processing crashed", extra={"webhook_id": str(webhook_id)})
        finally:
            db.close()

    async def process_pending(self, db: Session, limit: int = 100) -> int:
        """Re-drive notifications left received or failed. Returns how many were handled."""
        repo = InboundWebhookRepository(db)
        ids = [w.id for w in repo.list_redeliverable(self.max_processing_attempts, limit)]
        for webhook_id in ids:
            await self.process(db, webhook_id)
        return len(ids)

    async def process(self, db: Session, webhook_id: uuid.UUID) -> str:
        """Reconcile one queued notification. Returns the final queue status."""
        repo = InboundWebhookRepository(db)
        webhook = repo.get_by_id(webhook_id)
        if webhook is None:
            logger.warning("Queued webhook vanished", extra={"webhook_id": str(webhook_id)})
            return UNRESOLVED
        if webhook.status in FINAL_STATUSES:
            return webhook.status

        webhook.attempts += 1
        webhook.last_attempt_at = self.clock()

        # 1. signature pre-check
        if self.verifier is not None:
            valid, reason = self.verifier.verify(webhook.headers or {}, webhook.query or {}, webhook.body or {})
            webhook.signature_valid = valid
            if not valid:
                webhook_signature_failure_counter.inc()
                log_security_event(
                    "Webhook signature verification failed",
                    webhook_id=str(webhook.id),
                    reason=reason,
                    enforced=self.enforce_signature,
                )
                if self.enforce_signature:
                    return self._finish(db, webhook, INVALID_SIGNATURE, reason)

        # 2. parse
        notification = parse_notification(webhook.body, webhook.query)
        if notification is None:
            logger.warning("Unrecognised webhook format", extra={"webhook_id": str(webhook.id)})
            return self._finish(db, webhook, UNPARSEABLE, "No (type, data.id) or (topic, id) found")

        webhook.notification_type = notification.notification_type
        webhook.external_id = notification.external_id
        webhook.notification_id = notification.notification_id

        # 3. only payment notifications drive state
        if notification.notification_type != PAYMENT:
            logger.info(
                "Ignoring non-payment notification",
                extra={"webhook_id": str(webhook.id), "notification_type": notification.notification_type},
            )
            return self._finish(db, webhook, IGNORED, f"type={notification.notification_type}")

        db.commit()

        # 4. authoritative payment data
        try:
            payment = await self.gateway.fetch_payment(notification.external_id)
        except GatewayError as e:
            return self._fail(db, webhook_id, f"fetch_payment: {e}")

        # 5-11. resolve, dedupe, map and apply in one transaction
        try:
            status, outcome, sessions = run_in_transaction(
                db, lambda: self._apply(db, webhook_id, notification, payment)
            )
        except UnresolvedNotification as e:
            logger.warning(str(e), extra={"webhook_id": str(webhook_id), "payment_id": payment.payment_id})
            return self._finish(db, InboundWebhookRepository(db).get_by_id(webhook_id), UNRESOLVED, str(e))
        except DuplicateNotification as e:
            logger.info(str(e), extra={"webhook_id": str(webhook_id)})
            return self._finish(db, InboundWebhookRepository(db).get_by_id(webhook_id), DUPLICATE, str(e))
        except UnmappedProcessorStatus as e:
            logger.error(str(e), extra={"webhook_id": str(webhook_id), "payment_id": payment.payment_id})
            return self._fail(db, webhook_id, str(e))
        except Exception as e:
            logger.exception("Webhook reconciliation failed", extra={"webhook_id": str(webhook_id)})
            return self._fail(db, webhook_id, f"{type(e).__name__}: {e}")

        for session_id in sessions:
            await self._cancel_remote(session_id)
        record_webhook(status)
        logger.info(
            "Webhook reconciled",
            extra={"webhook_id": str(webhook_id), "queue_status": status, "outcome": outcome},
        )
        return status

    def _apply(
        self,
        db: Session,
        webhook_id: uuid.UUID,
        notification: Notification,
        payment: PaymentInfo,
    ) -> tuple[str, str, List[str]]:
        webhook = InboundWebhookRepository(db).get_by_id(webhook_id)
        attempts = PaymentAttemptStore(db, self.clock)
        ledger = ObligationLedger(db, self.clock)

        # 5. resolve
        attempt = attempts.resolve(payment.payment_id, payment.external_reference)
        if attempt is None:
            raise UnresolvedNotification(
                f"No attempt for payment {payment.payment_id} or reference {payment.external_reference}"
            )

        # 6. dedupe
        key = dedupe_key(notification, payment)
        recorded = attempts.record_notification(
            attempt,
            key,
            notification.notification_type,
            payment.status,
            {"query": webhook.query, "body": webhook.body, "status_detail": payment.status_detail},
        )
        if not recorded:
            raise DuplicateNotification(f"Notification {key} already applied to attempt {attempt.id}")

        # 7. map
        new_status = sm.map_processor_status(payment.status)

        # a settled attempt keeps its payment; anything else is a second charge or noise about one
        if attempts.tracks_other_settled_payment(attempt, payment.payment_id):
            if new_status == sm.APPROVED:
                log_security_event(
                    "Second payment approved for an already settled attempt; manual refund required",
                    attempt_id=str(attempt.id),
                    obligation_id=str(attempt.obligation_id),
                    settled_payment_id=attempt.processor_payment_id,
                    payment_id=payment.payment_id,
                    amount_cents=payment.amount_cents,
                )
                self._mark(webhook, PROCESSED, f"second_settlement:{payment.payment_id}")
                return PROCESSED, "second_settlement", []
            logger.info(
                "Skipping status of a payment the attempt does not track",
                extra={"attempt_id": str(attempt.id), "payment_id": payment.payment_id, "processor_status": payment.status},
            )
            self._mark(webhook, PROCESSED, f"untracked_payment:{payment.payment_id}")
            return PROCESSED, "untracked_payment", []

        # a retried attempt only listens to its current checkout, except for money actually taken
        superseded_checkout = (
            payment.external_reference is not None and payment.external_reference != attempt.external_reference
        )
        if superseded_checkout and new_status != sm.APPROVED:
            logger.info(
                "Skipping status from a superseded checkout",
                extra={"attempt_id": str(attempt.id), "external_reference": payment.external_reference},
            )
            self._mark(webhook, PROCESSED, f"superseded:{payment.external_reference}")
            return PROCESSED, "superseded", []

        attempts.apply_payment_info(attempt, payment)
        if payment.amount_cents and payment.amount_cents != attempt.amount_cents:
            logger.warning(
                "Processor amount differs from attempt amount",
                extra={
                    "attempt_id": str(attempt.id),
                    "expected_cents": attempt.amount_cents,
                    "reported_cents": payment.amount_cents,
                },
            )

        # 8. only apply new information
        previous = attempt.status
        if new_status == previous:
            self._mark(webhook, PROCESSED, f"unchanged:{previous}")
            return PROCESSED, "unchanged", []
        if not sm.can_transition_attempt(previous, new_status):
            logger.info(
                "Skipping out-of-order processor status",
                extra={"attempt_id": str(attempt.id), "from_status": previous, "to_status": new_status},
            )
            self._mark(webhook, PROCESSED, f"stale:{previous}->{new_status}")
            return PROCESSED, "stale", []

        attempts.transition(
            attempt,
            new_status,
            PROCESSOR,
            payment.status_detail or f"Processor reported {payment.status}",
            {"payment_id": payment.payment_id, "processor_status": payment.status},
        )

        sessions: List[str] = []
        obligation = ledger.get(attempt.obligation_id)

        # 9. settle the obligation once
        if new_status == sm.APPROVED:
            try:
                ledger.mark_paid(obligation, attempt.id, PROCESSOR)
            except InvalidStateTransition as e:
                log_security_event(
                    "Payment approved for an obligation that cannot be settled; manual refund required",
                    attempt_id=str(attempt.id),
                    obligation_id=str(obligation.id),
                    obligation_status=obligation.status,
                    error=str(e),
                )
            else:
                sessions = self._cancel_siblings(attempts, attempt)
            if superseded_checkout and attempt.checkout_session_id:
                # the checkout opened by the retry is still payable
                sessions.append(attempt.checkout_session_id)

        # 10. a failed attempt leaves the obligation payable
        elif new_status in (sm.REJECTED, sm.CANCELLED):
            if obligation.status == sm.PROCESSING and obligation.active_attempt_id in (attempt.id, None):
                ledger.revert_to_pending(obligation, f"Payment {new_status}: {payment.status_detail or '-'}", PROCESSOR)

        self._mark(webhook, PROCESSED, f"{previous}->{new_status}")
        return PROCESSED, f"{previous}->{new_status}", sessions

    def _cancel_siblings(self, attempts: PaymentAttemptStore, approved: PaymentAttempt) -> List[str]:
        sessions = []
        for sibling in attempts.list_active_for_obligation(approved.obligation_id):
            if sibling.id == approved.id:
                continue
            attempts.transition(sibling, sm.CANCELLED, PROCESSOR, f"Superseded by approved attempt {approved.id}")
            if sibling.checkout_session_id:
                sessions.append(sibling.checkout_session_id)
        return sessions

    def _mark(self, webhook: InboundWebhook, status: str, outcome: Optional[str]) -> None:
        webhook.status = status
        webhook.outcome = outcome
        webhook.last_error = None
        webhook.processed_at = self.clock()

    def _finish(self, db: Session, webhook: InboundWebhook, status: str, outcome: Optional[str]) -> str:
        self._mark(webhook, status, outcome)
        db.commit()
        record_webhook(status)
        return status

    def _fail(self, db: Session, webhook_id: uuid.UUID, error: str) -> str:
        """Record a failure; the row stays redeliverable until attempts run out"""
        db.rollback()
        webhook = InboundWebhookRepository(db).get_by_id(webhook_id)
        status = DEAD if webhook.attempts >= self.max_processing_attempts else FAILED
        webhook.status = status
        webhook.last_error = error[:1000]
        db.commit()
        record_webhook(status)
        logger.warning(
            "Webhook processing failed",
            extra={"webhook_id": str(webhook_id), "queue_status": status, "error": error},
        )
        return status

    async def _cancel_remote(self, session_id: str) -> None:
        try:
            await self.gateway.cancel_session(session_id)
        except GatewayError as e:
            logger.warning(f"Remote checkout cancellation failed: {e}", extra={"session_id": session_id})
