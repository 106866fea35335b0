from __future__ import annotations

import json
from datetime import date
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from config import FallbackConfig
from database import atomic
from errors import NotFound, ValidationError
from models import (
    AppSetting,
    Category,
    RecurringRule,
    Subcategory,
    Tag,
    TagMode,
    Transaction,
    TransactionType,
)
from reconciler import IntegrityReconciler, Reassignment
from recurrence import RecurringEngine
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    FinancialSummary,
    RecurringRuleIn,
    TransactionIn,
)


DEFAULT_CATEGORIES: list[dict[str, object]] = [
    {"id": "sys_salary", "name": "Salary", "type": TransactionType.income,
     "color": "#22c55e", "is_system": True},
    {"id": "sys_investments", "name": "Investment returns",
     "type": TransactionType.income, "color": "#06b6d4", "is_system": True},
    {"id": "sys_income_transfer", "name": "Own transfer",
     "type": TransactionType.income, "color": "#0d9488", "is_system": True},
    {"id": "cat_food", "name": "Food", "type": TransactionType.expense,
     "color": "#f97316",
     "subcategories": [("sub_groceries", "Groceries"), ("sub_dining", "Dining out")]},
    {"id": "cat_shopping", "name": "Shopping", "type": TransactionType.expense,
     "color": "#ec4899",
     "subcategories": [("sub_clothes", "Clothes"), ("sub_electronics", "Electronics"),
                       ("sub_home", "Home")]},
    {"id": "cat_transport", "name": "Transport", "type": TransactionType.expense,
     "color": "#3b82f6",
     "subcategories": [("sub_fuel", "Fuel"), ("sub_public", "Public transport"),
                       ("sub_taxi", "Taxi")]},
    {"id": "cat_housing", "name": "Housing", "type": TransactionType.expense,
     "color": "#8b5cf6",
     "subcategories": [("sub_rent", "Rent"), ("sub_renovation", "Renovation")]},
    {"id": "cat_bills", "name": "Bills", "type": TransactionType.expense,
     "color": "#eab308",
     "subcategories": [("sub_energy", "Energy"), ("sub_internet", "Internet & phone")]},
    {"id": "cat_entertainment", "name": "Entertainment",
     "type": TransactionType.expense, "color": "#a855f7",
     "subcategories": [("sub_subs", "Subscriptions"), ("sub_cinema", "Culture"),
                       ("sub_travel", "Travel")]},
    {"id": "cat_health", "name": "Health", "type": TransactionType.expense,
     "color": "#ef4444",
     "subcategories": [("sub_doctor", "Doctor"), ("sub_pharmacy", "Pharmacy")]},
    {"id": "sys_credit", "name": "Loans", "type": TransactionType.expense,
     "color": "#7f1d1d", "is_system": True},
    {"id": "sys_exp_invest", "name": "Investment deposits",
     "type": TransactionType.expense, "color": "#0891b2", "is_system": True,
     "counts_toward_savings": True},
    {"id": "sys_savings", "name": "Savings", "type": TransactionType.expense,
     "color": "#10b981", "is_system": True, "counts_toward_savings": True},
    {"id": "sys_transfer", "name": "Own transfer", "type": TransactionType.expense,
     "color": "#0ea5e9", "is_system": True},
]


class TagService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).order_by(Tag.name)
        return list(self.session.scalars(stmt).all())

    def find(self, name: str) -> Optional[Tag]:
        stmt = select(Tag).where(func.lower(Tag.name) == name.strip().lower())
        return self.session.scalar(stmt)

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Tag name cannot be empty")

        existing = self.find(clean_name)
        if existing:
            return existing

        tag = Tag(name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, names: Iterable[str]) -> list[Tag]:
        tags: list[Tag] = []
        seen: set[int] = set()
        for name in names:
            tag = self.get_or_create(name)
            if tag.id not in seen:
                tags.append(tag)
                seen.add(tag.id)
        return tags

    def create(self, name: str) -> Tag:
        with atomic(self.session):
            if self.find(name):
                raise ValidationError("Tag already exists")
            tag = self.get_or_create(name)
        return tag

    def rename(self, old_name: str, new_name: str) -> Tag:
        with atomic(self.session):
            tag = self.find(old_name)
            if not tag:
                raise NotFound(f"Tag not found: {old_name}")
            clean_name = new_name.strip()
            if not clean_name:
                raise ValidationError("Tag name cannot be empty")

            other = self.find(clean_name)
            if other and other.id != tag.id:
                for owner in list(tag.transactions) + list(tag.recurring_rules):
                    owner.tags.remove(tag)
                    if other not in owner.tags:
                        owner.tags.append(other)
                self.session.delete(tag)
                self.session.flush()
                tag = other
            else:
                tag.name = clean_name
        return tag

    def delete(self, name: str) -> None:
        with atomic(self.session):
            tag = self.find(name)
            if not tag:
                raise NotFound(f"Tag not found: {name}")
            self.session.delete(tag)


class CategoryService:
    def __init__(
        self, session: Session, fallbacks: Optional[FallbackConfig] = None
    ) -> None:
        self.session = session
        self.reconciler = IntegrityReconciler(session, fallbacks)

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .options(selectinload(Category.subcategories))
            .order_by(Category.type, Category.order, Category.name)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: str) -> Category:
        return self.reconciler.get_category(category_id)

    def _find_by_name(
        self, kind: TransactionType, name: str, exclude_id: Optional[str] = None
    ) -> Optional[Category]:
        stmt = select(Category).where(
            Category.type == kind,
            func.lower(Category.name) == name.strip().lower(),
        )
        if exclude_id:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalars(stmt).first()

    def create(self, data: CategoryIn, category_id: Optional[str] = None) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        with atomic(self.session):
            if self._find_by_name(data.type, name):
                raise ValidationError("Category with this name already exists")
            category = Category(
                name=name,
                type=data.type,
                color=data.color,
                counts_toward_savings=data.counts_toward_savings,
                budget_limit_cents=data.budget_limit_cents,
                order=data.order,
            )
            if category_id:
                category.id = category_id
            category.subcategories = [
                Subcategory(name=sub_name.strip(), position=position)
                for position, sub_name in enumerate(data.subcategories)
                if sub_name.strip()
            ]
            self.session.add(category)
            self.session.flush()
        return category

    def update(self, category_id: str, data: CategoryUpdate) -> Category:
        fields = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            category = self.get(category_id)
            if "name" in fields:
                name = (fields["name"] or "").strip()
                if not name:
                    raise ValidationError("Category name cannot be empty")
                if self._find_by_name(category.type, name, exclude_id=category.id):
                    raise ValidationError("Category with this name already exists")
                fields["name"] = name
            for field, value in fields.items():
                if field != "budget_limit_cents" and value is None:
                    continue
                setattr(category, field, value)
        return category

    def add_subcategory(self, category_id: str, name: str) -> Subcategory:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Subcategory name cannot be empty")
        with atomic(self.session):
            category = self.get(category_id)
            position = max((s.position for s in category.subcategories), default=-1) + 1
            sub = Subcategory(name=clean_name, position=position)
            category.subcategories.append(sub)
            self.session.flush()
        return sub

    def rename_subcategory(
        self, category_id: str, subcategory_id: str, name: str
    ) -> Subcategory:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Subcategory name cannot be empty")
        with atomic(self.session):
            category = self.get(category_id)
            sub = next(
                (s for s in category.subcategories if s.id == subcategory_id), None
            )
            if sub is None:
                raise NotFound(f"Subcategory not found: {subcategory_id}")
            sub.name = clean_name
        return sub

    def delete(
        self,
        category_id: str,
        target_category_id: Optional[str] = None,
        target_subcategory_id: Optional[str] = None,
    ) -> Reassignment:
        return self.reconciler.delete_category(
            category_id, target_category_id, target_subcategory_id
        )

    def delete_subcategory(self, category_id: str, subcategory_id: str) -> Reassignment:
        return self.reconciler.delete_subcategory(category_id, subcategory_id)

    def seed_defaults(self) -> int:
        """Insert default categories that are missing; returns how many were added."""
        fallbacks = self.reconciler.fallbacks
        seeds = DEFAULT_CATEGORIES + [
            {"id": fallbacks.income_category_id, "name": fallbacks.name,
             "type": TransactionType.income, "color": "#64748b", "is_system": True},
            {"id": fallbacks.expense_category_id, "name": fallbacks.name,
             "type": TransactionType.expense, "color": "#94a3b8", "is_system": True},
        ]
        added = 0
        with atomic(self.session):
            existing = set(self.session.scalars(select(Category.id)).all())
            for seed in seeds:
                if seed["id"] in existing:
                    continue
                category = Category(
                    id=seed["id"],
                    name=seed["name"],
                    type=seed["type"],
                    color=seed["color"],
                    is_system=seed.get("is_system", False),
                    counts_toward_savings=seed.get("counts_toward_savings", False),
                )
                category.subcategories = [
                    Subcategory(id=sub_id, name=sub_name, position=position)
                    for position, (sub_id, sub_name) in enumerate(
                        seed.get("subcategories", [])
                    )
                ]
                self.session.add(category)
                added += 1
        return added


class TransactionService:
    def __init__(
        self, session: Session, fallbacks: Optional[FallbackConfig] = None
    ) -> None:
        self.session = session
        self.reconciler = IntegrityReconciler(session, fallbacks)
        self.tags = TagService(session)

    def _checked_category(self, category_id: str, kind: TransactionType) -> Category:
        category = self.reconciler.get_category(category_id)
        if category.type != kind:
            raise ValidationError("Category type mismatch")
        return category

    def _apply(self, txn: Transaction, data: TransactionIn) -> Transaction:
        self._checked_category(data.category_id, data.type)
        txn.description = data.description
        txn.amount_cents = data.amount_cents
        txn.date = data.date
        txn.type = data.type
        txn.category_id = data.category_id
        txn.subcategory_id = self.reconciler.resolve_subcategory(
            data.category_id, data.subcategory_id
        )
        txn.tags = self.tags.resolve(data.tags)
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self._apply(Transaction(), data)
            self.session.add(txn)
            self.session.flush()
        return txn

    def get(self, transaction_id: str) -> Transaction:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound(f"Transaction not found: {transaction_id}")
        return txn

    def update(self, transaction_id: str, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self._apply(self.get(transaction_id), data)
            self.session.flush()
        return txn

    def delete(self, transaction_id: str) -> None:
        with atomic(self.session):
            self.session.delete(self.get(transaction_id))

    def list(
        self,
        category_id: Optional[str] = None,
        subcategory_id: Optional[str] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .order_by(Transaction.date.desc(), Transaction.id)
        )
        if category_id:
            stmt = stmt.where(Transaction.category_id == category_id)
        if subcategory_id:
            stmt = stmt.where(Transaction.subcategory_id == subcategory_id)
        return list(self.session.scalars(stmt).all())

    def clear(self) -> int:
        with atomic(self.session):
            txns = self.session.scalars(select(Transaction)).all()
            for txn in txns:
                self.session.delete(txn)
        return len(txns)

    def _merge_category(self, incoming: CategoryOut) -> dict[str, str]:
        """Merge an imported category by name; returns id remaps for its tree."""
        remap: dict[str, str] = {}
        stmt = select(Category).where(
            Category.type == incoming.type,
            func.lower(Category.name) == incoming.name.strip().lower(),
        )
        category = self.session.scalars(stmt).first()
        if category is None:
            category = Category(
                name=incoming.name.strip(),
                type=incoming.type,
                color=incoming.color,
                is_system=incoming.is_system,
                counts_toward_savings=incoming.counts_toward_savings,
                budget_limit_cents=incoming.budget_limit_cents,
                order=incoming.order,
            )
            if self.session.get(Category, incoming.id) is None:
                category.id = incoming.id
            self.session.add(category)
            self.session.flush()
        remap[incoming.id] = category.id

        by_name = {s.name.strip().lower(): s for s in category.subcategories}
        for incoming_sub in incoming.subcategories:
            sub = by_name.get(incoming_sub.name.strip().lower())
            if sub is None:
                sub = Subcategory(
                    name=incoming_sub.name.strip(),
                    position=len(category.subcategories),
                )
                if self.session.get(Subcategory, incoming_sub.id) is None:
                    sub.id = incoming_sub.id
                category.subcategories.append(sub)
                self.session.flush()
                by_name[sub.name.lower()] = sub
            remap[incoming_sub.id] = sub.id
        return remap

    def import_batch(
        self,
        items: Sequence[TransactionIn],
        clear_history: bool = False,
        categories: Sequence[CategoryOut] = (),
    ) -> int:
        """Add parsed entries to the ledger; returns how many were added.

        Without ``clear_history`` an entry whose date, amount and description
        match an existing entry is skipped.
        """
        added = 0
        with atomic(self.session):
            remap: dict[str, str] = {}
            for incoming in categories:
                remap.update(self._merge_category(incoming))

            signatures: set[tuple[date, int, str]] = set()
            if clear_history:
                for txn in self.session.scalars(select(Transaction)).all():
                    self.session.delete(txn)
                self.session.flush()
            else:
                rows = self.session.execute(
                    select(
                        Transaction.date,
                        Transaction.amount_cents,
                        Transaction.description,
                    )
                ).all()
                signatures = {(r.date, r.amount_cents, r.description) for r in rows}

            for item in items:
                if (item.date, item.amount_cents, item.description) in signatures:
                    continue
                data = item.model_copy(
                    update={
                        "category_id": remap.get(item.category_id, item.category_id),
                        "subcategory_id": remap.get(
                            item.subcategory_id, item.subcategory_id
                        ),
                    }
                )
                txn = self._apply(Transaction(), data)
                self.session.add(txn)
                added += 1
            self.session.flush()
        return added


class BulkService:
    """Applies single-entry reconciliation across a batch of ledger ids."""

    def __init__(
        self, session: Session, fallbacks: Optional[FallbackConfig] = None
    ) -> None:
        self.session = session
        self.reconciler = IntegrityReconciler(session, fallbacks)
        self.transactions = TransactionService(session, fallbacks)
        self.tags = TagService(session)

    def _load(self, ids: Sequence[str]) -> list[Transaction]:
        wanted = list(dict.fromkeys(ids))
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.id.in_(wanted))
        )
        found = {txn.id: txn for txn in self.session.scalars(stmt).all()}
        missing = [txn_id for txn_id in wanted if txn_id not in found]
        if missing:
            raise NotFound(f"Transactions not found: {', '.join(missing)}")
        return [found[txn_id] for txn_id in wanted]

    def recategorize(
        self,
        ids: Sequence[str],
        category_id: str,
        subcategory_id: Optional[str] = None,
    ) -> list[Transaction]:
        with atomic(self.session):
            txns = self._load(ids)
            category = self.reconciler.get_category(category_id)
            if any(txn.type != category.type for txn in txns):
                raise ValidationError("Category type mismatch")
            resolved = self.reconciler.resolve_subcategory(category_id, subcategory_id)
            for txn in txns:
                txn.category_id = category.id
                txn.subcategory_id = resolved
            self.session.flush()
        return txns

    def tag(
        self, ids: Sequence[str], tags: Sequence[str], mode: TagMode
    ) -> list[Transaction]:
        with atomic(self.session):
            txns = self._load(ids)
            resolved = self.tags.resolve(tags)
            for txn in txns:
                if mode == TagMode.replace:
                    txn.tags = list(resolved)
                    continue
                present = {tag.id for tag in txn.tags}
                txn.tags.extend(tag for tag in resolved if tag.id not in present)
            self.session.flush()
        return txns

    def split(
        self, original_id: str, parts: Sequence[TransactionIn]
    ) -> list[Transaction]:
        # Amounts of the parts are not checked against the original.
        with atomic(self.session):
            original = self.transactions.get(original_id)
            self.session.delete(original)
            self.session.flush()
            created = [self.transactions.create(part) for part in parts]
        return created


class RecurringRuleService:
    def __init__(
        self,
        session: Session,
        fallbacks: Optional[FallbackConfig] = None,
        window_days: Optional[int] = None,
    ) -> None:
        self.session = session
        self.reconciler = IntegrityReconciler(session, fallbacks)
        self.tags = TagService(session)
        self.engine = RecurringEngine(session, window_days)

    def get(self, rule_id: str) -> RecurringRule:
        return self.engine.get_rule(rule_id)

    def list(self) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .options(selectinload(RecurringRule.tags))
            .order_by(RecurringRule.next_due_date, RecurringRule.id)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        with atomic(self.session):
            category = self.reconciler.get_category(data.category_id)
            if category.type != data.type:
                raise ValidationError("Category type mismatch")
            rule = RecurringRule(
                description=data.description,
                amount_cents=data.amount_cents,
                type=data.type,
                frequency=data.frequency,
                next_due_date=data.next_due_date,
                auto_pay=data.auto_pay,
                category_id=data.category_id,
                subcategory_id=self.reconciler.resolve_subcategory(
                    data.category_id, data.subcategory_id
                ),
            )
            rule.tags = self.tags.resolve(data.tags)
            self.session.add(rule)
            self.session.flush()
        return rule

    def delete(self, rule_id: str) -> None:
        with atomic(self.session):
            self.session.delete(self.get(rule_id))

    def process(
        self, rule_id: str, amount_cents: Optional[int] = None
    ) -> Optional[Transaction]:
        return self.engine.process(rule_id, amount_cents)

    def skip(self, rule_id: str) -> date:
        return self.engine.skip(rule_id)

    def catch_up_all(self, today: Optional[date] = None) -> int:
        return self.engine.post_due_rules(today)

    def due_for_approval(self, today: Optional[date] = None) -> list[RecurringRule]:
        return self.engine.due_for_approval(today)

    def upcoming_auto(self, today: Optional[date] = None) -> list[RecurringRule]:
        return self.engine.upcoming_auto(today)


class SummaryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def summary(self) -> FinancialSummary:
        stmt = (
            select(
                Transaction.type,
                Category.counts_toward_savings,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
            )
            .join(Category, Category.id == Transaction.category_id)
            .group_by(Transaction.type, Category.counts_toward_savings)
        )
        income = expense = savings = 0
        for kind, is_savings, total in self.session.execute(stmt).all():
            if kind == TransactionType.income:
                income += int(total)
            elif is_savings:
                savings += int(total)
            else:
                expense += int(total)
        balance = income - expense
        return FinancialSummary(
            total_income_cents=income,
            total_expense_cents=expense,
            savings_cents=savings,
            balance_cents=balance,
            operational_balance_cents=balance - savings,
        )

    def all_tags(self) -> list[str]:
        return [tag.name for tag in TagService(self.session).list_all()]


class AppSettingService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, key: str, default: object = None) -> object:
        row = self.session.get(AppSetting, key)
        return json.loads(row.value) if row else default

    def set(self, key: str, value: object) -> None:
        with atomic(self.session):
            self.session.merge(AppSetting(key=key, value=json.dumps(value)))
