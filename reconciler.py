import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from config import FallbackConfig, get_settings
from database import atomic
from errors import NotFound, ValidationError
from models import Category, RecurringRule, Subcategory, Transaction, TransactionType


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reassignment:
    category_id: str
    subcategory_id: str
    transactions_moved: int
    rules_moved: int


class IntegrityReconciler:
    """Keeps every transaction pointing at an existing category and subcategory.

    All category and subcategory removal goes through here. Each public method
    is one unit of work: the transaction rewrite and the tree mutation it
    depends on commit together or not at all.
    """

    def __init__(
        self, session: Session, fallbacks: Optional[FallbackConfig] = None
    ) -> None:
        self.session = session
        self.fallbacks = fallbacks or get_settings().fallbacks

    def get_category(self, category_id: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound(f"Category not found: {category_id}")
        return category

    def is_fallback_name(self, name: str) -> bool:
        return name.strip().lower() == self.fallbacks.name.lower()

    def fallback_subcategory(
        self, category: Category, exclude_id: Optional[str] = None
    ) -> Subcategory:
        for sub in category.subcategories:
            if sub.id != exclude_id and self.is_fallback_name(sub.name):
                return sub
        position = max((s.position for s in category.subcategories), default=-1) + 1
        sub = Subcategory(name=self.fallbacks.name, position=position)
        category.subcategories.append(sub)
        self.session.flush()
        logger.info(
            "fallback_subcategory_created: category=%s subcategory=%s",
            category.id,
            sub.id,
        )
        return sub

    def fallback_category(
        self, kind: TransactionType, exclude_id: Optional[str] = None
    ) -> Category:
        configured_id = self.fallbacks.category_id_for(kind)
        configured = self.session.get(Category, configured_id)
        if configured and configured.id != exclude_id and configured.type == kind:
            return configured

        stmt = (
            select(Category)
            .where(
                Category.type == kind,
                func.lower(Category.name) == self.fallbacks.name.lower(),
            )
            .order_by(Category.order, Category.name, Category.id)
        )
        if exclude_id:
            stmt = stmt.where(Category.id != exclude_id)
        existing = self.session.scalars(stmt).first()
        if existing:
            return existing

        category = Category(
            name=self.fallbacks.name,
            type=kind,
            is_system=True,
        )
        if configured is None:
            category.id = configured_id
        self.session.add(category)
        self.session.flush()
        logger.info(
            "fallback_category_created: kind=%s category=%s", kind.value, category.id
        )
        return category

    def resolve_subcategory(
        self, category_id: str, provided_subcategory_id: Optional[str] = None
    ) -> str:
        """Return the subcategory a new or moved entry should use.

        A provided id is used as given. Otherwise the category's fallback
        subcategory is returned, created on first use.
        """
        if provided_subcategory_id:
            return provided_subcategory_id
        with atomic(self.session):
            category = self.get_category(category_id)
            return self.fallback_subcategory(category).id

    def delete_category(
        self,
        category_id: str,
        target_category_id: Optional[str] = None,
        target_subcategory_id: Optional[str] = None,
    ) -> Reassignment:
        with atomic(self.session):
            category = self.get_category(category_id)
            if target_category_id:
                if target_category_id == category_id:
                    raise ValidationError("A category cannot be redirected to itself")
                target = self.get_category(target_category_id)
                if target.type != category.type:
                    raise ValidationError("Category type mismatch")
            else:
                target = self.fallback_category(category.type, exclude_id=category.id)
            subcategory_id = self.resolve_subcategory(target.id, target_subcategory_id)

            moved = self._redirect(
                Transaction,
                Transaction.category_id == category.id,
                category_id=target.id,
                subcategory_id=subcategory_id,
            )
            rules = self._redirect(
                RecurringRule,
                RecurringRule.category_id == category.id,
                category_id=target.id,
                subcategory_id=subcategory_id,
            )
            self.session.delete(category)
            self.session.flush()

        logger.info(
            "category_deleted: category=%s target=%s/%s transactions=%s rules=%s",
            category_id,
            target.id,
            subcategory_id,
            moved,
            rules,
        )
        return Reassignment(target.id, subcategory_id, moved, rules)

    def delete_subcategory(self, category_id: str, subcategory_id: str) -> Reassignment:
        with atomic(self.session):
            category = self.get_category(category_id)
            sub = next(
                (s for s in category.subcategories if s.id == subcategory_id), None
            )
            if sub is None:
                raise NotFound(f"Subcategory not found: {subcategory_id}")
            target = self.fallback_subcategory(category, exclude_id=sub.id)

            moved = self._redirect(
                Transaction,
                and_(
                    Transaction.category_id == category.id,
                    Transaction.subcategory_id == sub.id,
                ),
                subcategory_id=target.id,
            )
            rules = self._redirect(
                RecurringRule,
                and_(
                    RecurringRule.category_id == category.id,
                    RecurringRule.subcategory_id == sub.id,
                ),
                subcategory_id=target.id,
            )
            category.subcategories.remove(sub)
            self.session.flush()

        logger.info(
            "subcategory_deleted: category=%s subcategory=%s target=%s transactions=%s",
            category_id,
            subcategory_id,
            target.id,
            moved,
        )
        return Reassignment(category_id, target.id, moved, rules)

    def find_dangling(self) -> list[str]:
        """Ids of transactions whose category or subcategory does not resolve."""
        stmt = (
            select(Transaction.id)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .outerjoin(
                Subcategory,
                and_(
                    Subcategory.id == Transaction.subcategory_id,
                    Subcategory.category_id == Transaction.category_id,
                ),
            )
            .where(
                or_(
                    Category.id.is_(None),
                    Category.type != Transaction.type,
                    and_(
                        Transaction.subcategory_id.is_not(None),
                        Subcategory.id.is_(None),
                    ),
                )
            )
            .order_by(Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def _redirect(self, model, criteria, **values) -> int:
        result = self.session.execute(
            update(model)
            .where(criteria)
            .values(**values)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount or 0
