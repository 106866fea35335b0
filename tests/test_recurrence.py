from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import DueState, Frequency, RecurringRule, Transaction, TransactionType
from recurrence import RecurringEngine, add_months, calculate_next_date, due_state
from schemas import CategoryIn, RecurringRuleIn
from services import CategoryService, RecurringRuleService


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _rule(
    session: Session,
    next_due: date,
    frequency: Frequency = Frequency.monthly,
    auto_pay: bool = True,
    description: str = "Rent",
) -> RecurringRule:
    category = CategoryService(session).create(
        CategoryIn(
            name=f"Housing {description}",
            type=TransactionType.expense,
            subcategories=["Rent"],
        )
    )
    return RecurringRuleService(session, window_days=7).create(
        RecurringRuleIn(
            description=description,
            amount_cents=120000,
            type=TransactionType.expense,
            frequency=frequency,
            next_due_date=next_due,
            auto_pay=auto_pay,
            category_id=category.id,
            subcategory_id=category.subcategories[0].id,
            tags=["home"],
        )
    )


def test_monthly_period_clamps_to_month_end():
    assert calculate_next_date(Frequency.monthly, date(2024, 1, 31)) == date(2024, 2, 29)
    assert calculate_next_date(Frequency.monthly, date(2023, 1, 31)) == date(2023, 2, 28)
    assert calculate_next_date(Frequency.monthly, date(2024, 12, 15)) == date(2025, 1, 15)


def test_yearly_period_from_leap_day():
    assert calculate_next_date(Frequency.yearly, date(2024, 2, 29)) == date(2025, 2, 28)
    assert add_months(date(2024, 2, 29), 48) == date(2028, 2, 29)


def test_weekly_period_adds_seven_days():
    assert calculate_next_date(Frequency.weekly, date(2024, 12, 30)) == date(2025, 1, 6)


def test_weekly_catch_up_posts_every_missed_occurrence():
    with _session() as session:
        rule = _rule(session, date(2024, 1, 1), Frequency.weekly)

        posted = RecurringEngine(session).catch_up_rule(rule, today=date(2024, 1, 22))

        assert posted == 4
        rule = session.get(RecurringRule, rule.id)
        assert rule.next_due_date == date(2024, 1, 29)
        txns = session.scalars(
            select(Transaction)
            .where(Transaction.origin_rule_id == rule.id)
            .order_by(Transaction.date)
        ).all()
        assert [t.date for t in txns] == [
            date(2024, 1, 1),
            date(2024, 1, 8),
            date(2024, 1, 15),
            date(2024, 1, 22),
        ]
        assert all(t.is_recurring for t in txns)
        assert all(t.tag_names == ["home"] for t in txns)
        assert all(t.subcategory_id == rule.subcategory_id for t in txns)


def test_catch_up_is_idempotent():
    with _session() as session:
        rule = _rule(session, date(2024, 1, 1))
        service = RecurringRuleService(session)

        assert service.catch_up_all(today=date(2024, 3, 1)) == 3
        assert service.catch_up_all(today=date(2024, 3, 1)) == 0

        count = session.scalars(
            select(Transaction).where(Transaction.origin_rule_id == rule.id)
        ).all()
        assert len(count) == 3
        assert session.get(RecurringRule, rule.id).next_due_date == date(2024, 4, 1)


def test_catch_up_leaves_manual_rules_alone():
    with _session() as session:
        rule = _rule(session, date(2024, 1, 1), auto_pay=False)

        assert RecurringRuleService(session).catch_up_all(today=date(2024, 3, 1)) == 0
        assert session.get(RecurringRule, rule.id).next_due_date == date(2024, 1, 1)


def test_catch_up_stops_at_iteration_guard(monkeypatch):
    monkeypatch.setattr("recurrence.MAX_CATCH_UP", 5)
    with _session() as session:
        rule = _rule(session, date(2020, 1, 6), Frequency.weekly)

        posted = RecurringEngine(session).catch_up_rule(rule, today=date(2024, 1, 1))

        assert posted == 5
        assert session.get(RecurringRule, rule.id).next_due_date == date(2020, 2, 10)


def test_post_occurrence_skips_existing_occurrence():
    with _session() as session:
        rule = _rule(session, date(2024, 5, 1))
        engine = RecurringEngine(session)

        first = engine.post_occurrence(rule, date(2024, 5, 1))
        second = engine.post_occurrence(rule, date(2024, 5, 1))

        assert first is not None
        assert second is None


def test_process_uses_override_amount_and_advances_one_period():
    with _session() as session:
        rule = _rule(session, date(2024, 1, 31), auto_pay=False)

        txn = RecurringRuleService(session).process(rule.id, amount_cents=9900)

        assert txn.amount_cents == 9900
        assert txn.date == date(2024, 1, 31)
        assert txn.origin_rule_id == rule.id
        assert session.get(RecurringRule, rule.id).next_due_date == date(2024, 2, 29)


def test_process_defaults_to_rule_amount():
    with _session() as session:
        rule = _rule(session, date(2024, 3, 10), auto_pay=False)

        txn = RecurringRuleService(session).process(rule.id)

        assert txn.amount_cents == 120000
        assert txn.description == "Rent"


def test_skip_advances_without_posting():
    with _session() as session:
        rule = _rule(session, date(2024, 3, 10), auto_pay=False)

        next_due = RecurringRuleService(session).skip(rule.id)

        assert next_due == date(2024, 4, 10)
        assert session.scalars(select(Transaction)).all() == []


def test_due_and_upcoming_views():
    today = date(2024, 3, 10)
    with _session() as session:
        overdue = _rule(session, date(2024, 2, 1), auto_pay=False, description="Dentist")
        manual_due = _rule(session, date(2024, 3, 10), auto_pay=False, description="Gym")
        _rule(session, date(2024, 3, 11), auto_pay=False, description="Later")
        auto_soon = _rule(session, date(2024, 3, 15), description="Internet")
        _rule(session, date(2024, 3, 20), description="Insurance")
        _rule(session, date(2024, 3, 10), description="Due today")

        service = RecurringRuleService(session, window_days=7)

        assert [r.id for r in service.due_for_approval(today)] == [
            overdue.id,
            manual_due.id,
        ]
        assert [r.id for r in service.upcoming_auto(today)] == [auto_soon.id]


def test_due_state_classification():
    rule = RecurringRule(next_due_date=date(2024, 3, 12), auto_pay=True)
    assert due_state(rule, date(2024, 3, 12)) == DueState.due
    assert due_state(rule, date(2024, 3, 10)) == DueState.upcoming
    assert due_state(rule, date(2024, 3, 1)) == DueState.dormant

    rule.auto_pay = False
    assert due_state(rule, date(2024, 3, 10)) == DueState.dormant
