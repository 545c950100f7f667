"""Reminder policy: cooldown and max-count rules for payment reminders"""

from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy.orm import Session

from settle_gateway.config import settings
from settle_gateway.domain import state_machine as sm
from settle_gateway.infrastructure.database.models import Obligation
from settle_gateway.infrastructure.database.repositories import ObligationRepository
from settle_gateway.utils.date_utils import reminder_dates, utcnow


class ReminderPolicy:
    """
    Decides whether an obligation may get another reminder.

    Only touches the reminder counters; never the obligation status.
    """

    def __init__(
        self,
        max_reminders: int | None = None,
        cooldown: timedelta | None = None,
        days_before_due: List[int] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.max_reminders = max_reminders or settings.reminder_max_count
        self.cooldown = cooldown or timedelta(hours=settings.reminder_cooldown_hours)
        self.days_before_due = days_before_due or list(settings.reminder_days_before_due)
        self.clock = clock

    def can_send_reminder(self, obligation: Obligation) -> bool:
        if obligation.status in sm.OBLIGATION_TERMINAL:
            return False
        if (obligation.reminders_sent or 0) >= self.max_reminders:
            return False
        if obligation.last_reminder_at is not None and self.clock() - obligation.last_reminder_at < self.cooldown:
            return False
        return True

    def record_reminder_sent(self, obligation: Obligation) -> None:
        obligation.reminders_sent = (obligation.reminders_sent or 0) + 1
        obligation.last_reminder_at = self.clock()

    def is_reminder_day(self, obligation: Obligation) -> bool:
        """Overdue obligations, or one of the configured days ahead of the due date"""
        today = self.clock().date()
        if obligation.due_date < today or obligation.status == sm.OVERDUE:
            return True
        return today in reminder_dates(obligation.due_date, self.days_before_due)

    def select_due_for_reminder(self, db: Session) -> List[Obligation]:
        """Payable obligations inside the reminder horizon that the policy allows"""
        horizon = self.clock().date() + timedelta(days=max(self.days_before_due))
        candidates = ObligationRepository(db).list_payable_due_before(horizon)
        return [o for o in candidates if self.is_reminder_day(o) and self.can_send_reminder(o)]
