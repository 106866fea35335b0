import random
import threading
from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from config import FallbackConfig
from database import Base
from errors import NotFound, ValidationError
from models import Category, RecurringRule, Subcategory, Transaction, TransactionType
from reconciler import IntegrityReconciler
from schemas import CategoryIn, RecurringRuleIn, TransactionIn
from services import (
    BulkService,
    CategoryService,
    RecurringRuleService,
    TransactionService,
)


FALLBACKS = FallbackConfig(
    income_category_id="other_income", expense_category_id="other_expense"
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _category(session: Session, name: str, kind=TransactionType.expense, subs=()):
    return CategoryService(session, FALLBACKS).create(
        CategoryIn(name=name, type=kind, subcategories=list(subs))
    )


def _txn(session: Session, category, subcategory_id=None, amount=1000, day=1):
    return TransactionService(session, FALLBACKS).create(
        TransactionIn(
            description=f"Entry {day}",
            amount_cents=amount,
            date=date(2024, 1, day),
            type=category.type,
            category_id=category.id,
            subcategory_id=subcategory_id,
        )
    )


def test_resolve_subcategory_creates_other_once():
    with _session() as session:
        food = _category(session, "Food", subs=["Groceries"])
        reconciler = IntegrityReconciler(session, FALLBACKS)

        first = reconciler.resolve_subcategory(food.id)
        second = reconciler.resolve_subcategory(food.id)

        assert first == second
        names = [s.name for s in session.get(Category, food.id).subcategories]
        assert names == ["Groceries", "Other"]


def test_resolve_subcategory_reuses_other_case_insensitively():
    with _session() as session:
        food = _category(session, "Food", subs=["OTHER", "Groceries"])

        resolved = IntegrityReconciler(session, FALLBACKS).resolve_subcategory(food.id)

        assert resolved == food.subcategories[0].id
        assert len(session.get(Category, food.id).subcategories) == 2


def test_resolve_subcategory_keeps_provided_id():
    with _session() as session:
        food = _category(session, "Food", subs=["Groceries"])
        sub_id = food.subcategories[0].id

        assert IntegrityReconciler(session, FALLBACKS).resolve_subcategory(
            food.id, sub_id
        ) == sub_id


def test_resolve_subcategory_unknown_category():
    with _session() as session:
        with pytest.raises(NotFound):
            IntegrityReconciler(session, FALLBACKS).resolve_subcategory("missing")


def test_transaction_without_subcategory_gets_other():
    with _session() as session:
        food = _category(session, "Food", subs=["Groceries"])

        txn = _txn(session, food)

        other = session.get(Subcategory, txn.subcategory_id)
        assert other.name == "Other"
        assert other.category_id == food.id


def test_delete_category_moves_entries_to_fallback():
    with _session() as session:
        food = _category(session, "Food", subs=["Groceries"])
        first = _txn(session, food, food.subcategories[0].id, day=1)
        second = _txn(session, food, day=2)

        result = CategoryService(session, FALLBACKS).delete(food.id)

        assert result.category_id == "other_expense"
        assert result.transactions_moved == 2
        assert session.get(Category, food.id) is None
        fallback = session.get(Category, "other_expense")
        assert fallback.is_system
        assert fallback.name == "Other"
        for txn_id in (first.id, second.id):
            txn = session.get(Transaction, txn_id)
            assert txn.category_id == "other_expense"
            assert txn.subcategory_id == result.subcategory_id
        assert session.get(Subcategory, result.subcategory_id).name == "Other"
        assert IntegrityReconciler(session, FALLBACKS).find_dangling() == []


def test_delete_category_into_explicit_target():
    with _session() as session:
        food = _category(session, "Food", subs=["Groceries"])
        home = _category(session, "Home", subs=["Repairs", "Cleaning"])
        txn = _txn(session, food, food.subcategories[0].id)
        cleaning = home.subcategories[1].id

        result = CategoryService(session, FALLBACKS).delete(food.id, home.id, cleaning)

        txn = session.get(Transaction, txn.id)
        assert (txn.category_id, txn.subcategory_id) == (home.id, cleaning)
        assert result.transactions_moved == 1
        assert session.get(Category, "other_expense") is None


def test_delete_category_rejects_bad_targets():
    with _session() as session:
        food = _category(session, "Food")
        salary = _category(session, "Salary", kind=TransactionType.income)
        service = CategoryService(session, FALLBACKS)

        with pytest.raises(ValidationError):
            service.delete(food.id, food.id)
        with pytest.raises(ValidationError):
            service.delete(food.id, salary.id)
        with pytest.raises(NotFound):
            service.delete(food.id, "missing")
        with pytest.raises(NotFound):
            service.delete("missing")

        assert session.get(Category, food.id) is not None


def test_delete_fallback_category_creates_a_new_one():
    with _session() as session:
        CategoryService(session, FALLBACKS).seed_defaults()
        fallback = session.get(Category, "other_expense")
        txn = _txn(session, fallback)

        result = CategoryService(session, FALLBACKS).delete("other_expense")

        assert result.category_id != "other_expense"
        replacement = session.get(Category, result.category_id)
        assert replacement.name == "Other"
        assert replacement.type == TransactionType.expense
        assert session.get(Transaction, txn.id).category_id == replacement.id


def test_delete_category_redirects_recurring_rules():
    with _session() as session:
        food = _category(session, "Food", subs=["Groceries"])
        rule = RecurringRuleService(session, FALLBACKS).create(
            RecurringRuleIn(
                description="Box",
                amount_cents=3000,
                type=TransactionType.expense,
                frequency="weekly",
                next_due_date=date(2024, 1, 1),
                category_id=food.id,
                subcategory_id=food.subcategories[0].id,
            )
        )

        result = CategoryService(session, FALLBACKS).delete(food.id)

        rule = session.get(RecurringRule, rule.id)
        assert rule.category_id == result.category_id
        assert rule.subcategory_id == result.subcategory_id
        assert result.rules_moved == 1


def test_delete_subcategory_moves_only_its_entries():
    with _session() as session:
        food = _category(session, "Food", subs=["Groceries", "Dining"])
        groceries, dining = (s.id for s in food.subcategories)
        moved = _txn(session, food, groceries, day=1)
        untouched = _txn(session, food, dining, day=2)

        result = CategoryService(session, FALLBACKS).delete_subcategory(food.id, groceries)

        assert session.get(Subcategory, groceries) is None
        assert session.get(Transaction, moved.id).subcategory_id == result.subcategory_id
        assert session.get(Transaction, untouched.id).subcategory_id == dining
        names = [s.name for s in session.get(Category, food.id).subcategories]
        assert names == ["Dining", "Other"]


def test_deleting_other_subcategory_creates_a_fresh_one():
    with _session() as session:
        food = _category(session, "Food", subs=["Other"])
        other_id = food.subcategories[0].id
        txn = _txn(session, food, other_id)

        result = CategoryService(session, FALLBACKS).delete_subcategory(food.id, other_id)

        assert result.subcategory_id != other_id
        assert session.get(Subcategory, result.subcategory_id).name == "Other"
        assert session.get(Transaction, txn.id).subcategory_id == result.subcategory_id


def test_delete_subcategory_unknown_ids():
    with _session() as session:
        food = _category(session, "Food", subs=["Groceries"])
        service = CategoryService(session, FALLBACKS)

        with pytest.raises(NotFound):
            service.delete_subcategory(food.id, "missing")
        with pytest.raises(NotFound):
            service.delete_subcategory("missing", food.subcategories[0].id)


def test_concurrent_resolution_creates_single_fallback(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        category_id = _category(session, "Food", subs=["Groceries"]).id

    results: list[str] = []
    errors: list[BaseException] = []
    barrier = threading.Barrier(4)

    def worker() -> None:
        try:
            with Session(engine) as session:
                barrier.wait()
                reconciler = IntegrityReconciler(session, FALLBACKS)
                results.append(reconciler.resolve_subcategory(category_id))
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(set(results)) == 1
    with Session(engine) as session:
        others = session.scalars(
            select(Subcategory).where(
                Subcategory.category_id == category_id, Subcategory.name == "Other"
            )
        ).all()
        assert len(others) == 1


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_random_command_sequences_never_leave_dangling_entries(seed):
    rng = random.Random(seed)
    with _session() as session:
        categories = CategoryService(session, FALLBACKS)
        transactions = TransactionService(session, FALLBACKS)
        bulk = BulkService(session, FALLBACKS)
        reconciler = IntegrityReconciler(session, FALLBACKS)
        for index in range(4):
            kind = TransactionType.income if index == 0 else TransactionType.expense
            _category(session, f"Cat {index}", kind=kind, subs=["A", "B"])

        def entry(category, step, label="step"):
            subs = [s.id for s in category.subcategories]
            return TransactionIn(
                description=f"{label} {step}",
                amount_cents=rng.randint(1, 10000),
                date=date(2024, 1, 1) + timedelta(days=step),
                type=category.type,
                category_id=category.id,
                subcategory_id=rng.choice(subs + [None]),
            )

        def same_kind(existing, kind, exclude=None):
            return [c for c in existing if c.type == kind and c.id != exclude]

        for step in range(80):
            existing = categories.list_all()
            entries = transactions.list()
            action = rng.random()
            if action < 0.35 or not entries or len(existing) < 2:
                transactions.create(entry(rng.choice(existing), step))
            elif action < 0.45:
                kind = rng.choice(entries).type
                batch = [t.id for t in entries if t.type == kind]
                ids = rng.sample(batch, min(len(batch), rng.randint(1, 3)))
                target = rng.choice(same_kind(existing, kind))
                subs = [s.id for s in target.subcategories]
                bulk.recategorize(ids, target.id, rng.choice(subs + [None]))
            elif action < 0.55:
                txn = rng.choice(entries)
                target = rng.choice(same_kind(existing, txn.type))
                transactions.update(txn.id, entry(target, step, "edited"))
            elif action < 0.62:
                txn = rng.choice(entries)
                targets = same_kind(existing, txn.type)
                bulk.split(
                    txn.id,
                    [entry(rng.choice(targets), step, "part") for _ in range(2)],
                )
            elif action < 0.72:
                category = rng.choice(existing)
                if category.subcategories:
                    sub = rng.choice(category.subcategories)
                    categories.delete_subcategory(category.id, sub.id)
            elif action < 0.8:
                categories.delete(rng.choice(existing).id)
            elif action < 0.9:
                category = rng.choice(existing)
                targets = same_kind(existing, category.type, exclude=category.id)
                if targets:
                    target = rng.choice(targets)
                    subs = [s.id for s in target.subcategories]
                    categories.delete(category.id, target.id, rng.choice(subs + [None]))
                else:
                    categories.delete(category.id)
            else:
                categories.create(
                    CategoryIn(
                        name=f"New {step}",
                        type=rng.choice(list(TransactionType)),
                        subcategories=["X"],
                    )
                )

            assert reconciler.find_dangling() == []

        assert session.scalars(select(Transaction)).first() is not None
