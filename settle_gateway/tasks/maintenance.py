"""Trigger calls issued by the external scheduler, plus a one-shot CLI"""

import argparse
import asyncio
import logging
from datetime import timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from settle_gateway.config import settings
from settle_gateway.domain.notifications import HmacSignatureVerifier
from settle_gateway.infrastructure.clients.base import GatewayClient
from settle_gateway.infrastructure.clients.processor import ProcessorClient
from settle_gateway.infrastructure.database.models import Obligation
from settle_gateway.infrastructure.database.session import SessionLocal, run_in_transaction
from settle_gateway.infrastructure.observability.logging import setup_logging
from settle_gateway.services.ledger import ObligationLedger
from settle_gateway.services.orchestrator import AttemptOrchestrator
from settle_gateway.services.reconciler import WebhookReconciler
from settle_gateway.services.reminders import ReminderPolicy

logger = logging.getLogger(__name__)

JOBS = ("overdue", "stale-attempts", "webhooks", "reminders", "archive")


def sweep_overdue(db: Session) -> int:
    ledger = ObligationLedger(db)
    return run_in_transaction(db, ledger.sweep_overdue)


def archive_dormant(db: Session, older_than: timedelta | None = None) -> int:
    ledger = ObligationLedger(db)
    older_than = older_than or timedelta(days=settings.archive_after_days)
    return run_in_transaction(db, lambda: ledger.archive_dormant(older_than))


def send_reminders(
    db: Session,
    notify: Callable[[Obligation], None],
    policy: Optional[ReminderPolicy] = None,
) -> int:
    """
    Hand every obligation due for a reminder to notify, then record it.

    A failing notify() skips that obligation without recording a reminder.
    """
    policy = policy or ReminderPolicy()
    sent = 0
    for obligation_id in [o.id for o in policy.select_due_for_reminder(db)]:

        def work() -> bool:
            obligation = db.get(Obligation, obligation_id)
            if not policy.can_send_reminder(obligation):
                return False
            notify(obligation)
            policy.record_reminder_sent(obligation)
            return True

        try:
            if run_in_transaction(db, work):
                sent += 1
        except Exception:
            logger.exception("Reminder delivery failed", extra={"obligation_id": str(obligation_id)})
    return sent


def log_reminder(obligation: Obligation) -> None:
    """Default notifier: delivery channels live outside this service"""
    logger.info(
        "Payment reminder due",
        extra={
            "obligation_id": str(obligation.id),
            "owner_id": obligation.owner_id,
            "due_date": obligation.due_date.isoformat(),
            "amount_cents": obligation.amount_cents,
        },
    )


async def run_jobs(db: Session, gateway: GatewayClient, jobs: tuple[str, ...] = JOBS) -> Dict[str, int]:
    """Run the requested maintenance jobs in order and return a count per job"""
    results: Dict[str, int] = {}
    if "overdue" in jobs:
        results["overdue"] = sweep_overdue(db)
    if "stale-attempts" in jobs:
        orchestrator = AttemptOrchestrator(db, gateway)
        results["stale-attempts"] = await orchestrator.sweep_stale_attempts()
    if "webhooks" in jobs:
        reconciler = WebhookReconciler(gateway, verifier=HmacSignatureVerifier(settings.webhook_secret))
        results["webhooks"] = await reconciler.process_pending(db)
    if "reminders" in jobs:
        results["reminders"] = send_reminders(db, log_reminder)
    if "archive" in jobs:
        results["archive"] = archive_dormant(db)
    logger.info("Maintenance run finished", extra={"results": results})
    return results


def main() -> None:
    parser = argparse.ArgumentParser(description="Run settle-gateway maintenance jobs once.")
    parser.add_argument("--job", action="append", choices=JOBS, help="Job to run (repeatable, default: all)")
    args = parser.parse_args()

    setup_logging(settings.log_level)
    jobs = tuple(args.job) if args.job else JOBS

    db = SessionLocal()
    try:
        results = asyncio.run(run_jobs(db, ProcessorClient(), jobs))
    finally:
        db.close()

    for job, count in results.items():
        print(f"{job}: {count}")


if __name__ == "__main__":
    main()
