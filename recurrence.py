import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import atomic, write_lock
from errors import NotFound
from models import DueState, Frequency, RecurringRule, Transaction


logger = logging.getLogger(__name__)

# Upper bound on occurrences posted for one rule in a single pass.
MAX_CATCH_UP = 1000


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Same day of month ``months`` later, clamped to the target month's end."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def calculate_next_date(frequency: Frequency, from_date: date) -> date:
    if frequency == Frequency.weekly:
        return from_date + timedelta(weeks=1)
    if frequency == Frequency.monthly:
        return add_months(from_date, 1)
    return add_months(from_date, 12)


def due_state(rule: RecurringRule, today: date, window_days: int = 7) -> DueState:
    if rule.next_due_date <= today:
        return DueState.due
    if rule.auto_pay and rule.next_due_date <= today + timedelta(days=window_days):
        return DueState.upcoming
    return DueState.dormant


class RecurringEngine:
    """Turns recurring rules into ledger entries.

    ``next_due_date`` only moves forward, one period at a time, and only in the
    same unit of work that posts (or skips) the occurrence it points at.
    """

    def __init__(self, session: Session, window_days: Optional[int] = None) -> None:
        self.session = session
        self.window_days = (
            window_days
            if window_days is not None
            else get_settings().upcoming_window_days
        )

    def get_rule(self, rule_id: str) -> RecurringRule:
        rule = self.session.get(RecurringRule, rule_id)
        if not rule:
            raise NotFound(f"Recurring rule not found: {rule_id}")
        return rule

    def catch_up_rule(self, rule: RecurringRule, today: Optional[date] = None) -> int:
        today = today or local_today()
        posted = 0
        iterations = 0
        while rule.auto_pay and rule.next_due_date <= today:
            if iterations >= MAX_CATCH_UP:
                logger.warning(
                    "catch_up_limit_reached: rule=%s next_due_date=%s",
                    rule.id,
                    rule.next_due_date,
                )
                break
            with atomic(self.session):
                rule = self.get_rule(rule.id)
                if rule.next_due_date > today:
                    break
                if self.post_occurrence(rule, rule.next_due_date):
                    posted += 1
                rule.next_due_date = calculate_next_date(
                    rule.frequency, rule.next_due_date
                )
            iterations += 1
        return posted

    def post_due_rules(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        with write_lock:
            stmt = (
                select(RecurringRule.id)
                .where(
                    RecurringRule.auto_pay.is_(True),
                    RecurringRule.next_due_date <= today,
                )
                .order_by(RecurringRule.next_due_date, RecurringRule.id)
            )
            rule_ids = self.session.scalars(stmt).all()
            count = 0
            for rule_id in rule_ids:
                count += self.catch_up_rule(self.get_rule(rule_id), today)
        return count

    def post_occurrence(
        self,
        rule: RecurringRule,
        occurrence_date: date,
        amount_cents: Optional[int] = None,
    ) -> Optional[Transaction]:
        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.origin_rule_id == rule.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        existing = self.session.execute(exists_stmt).scalar_one_or_none()
        if existing:
            return None

        txn = Transaction(
            description=rule.description,
            amount_cents=rule.amount_cents if amount_cents is None else amount_cents,
            date=occurrence_date,
            type=rule.type,
            category_id=rule.category_id,
            subcategory_id=rule.subcategory_id,
            is_recurring=True,
            origin_rule_id=rule.id,
            occurrence_date=occurrence_date,
        )
        txn.tags = list(rule.tags)
        self.session.add(txn)
        self.session.flush()
        return txn

    def process(
        self, rule_id: str, amount_cents: Optional[int] = None
    ) -> Optional[Transaction]:
        """Post the rule's current occurrence and advance it by one period."""
        with atomic(self.session):
            rule = self.get_rule(rule_id)
            txn = self.post_occurrence(rule, rule.next_due_date, amount_cents)
            rule.next_due_date = calculate_next_date(rule.frequency, rule.next_due_date)
        return txn

    def skip(self, rule_id: str) -> date:
        with atomic(self.session):
            rule = self.get_rule(rule_id)
            rule.next_due_date = calculate_next_date(rule.frequency, rule.next_due_date)
            next_due = rule.next_due_date
        return next_due

    def _rules_in_state(
        self, auto_pay: bool, state: DueState, today: Optional[date]
    ) -> list[RecurringRule]:
        today = today or local_today()
        horizon = today + timedelta(days=self.window_days)
        stmt = (
            select(RecurringRule)
            .where(
                RecurringRule.auto_pay.is_(auto_pay),
                RecurringRule.next_due_date <= horizon,
            )
            .order_by(RecurringRule.next_due_date, RecurringRule.id)
        )
        return [
            rule
            for rule in self.session.scalars(stmt).all()
            if due_state(rule, today, self.window_days) == state
        ]

    def due_for_approval(self, today: Optional[date] = None) -> list[RecurringRule]:
        return self._rules_in_state(False, DueState.due, today)

    def upcoming_auto(self, today: Optional[date] = None) -> list[RecurringRule]:
        return self._rules_in_state(True, DueState.upcoming, today)
