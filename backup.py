"""Versioned backup documents.

A backup is a JSON document holding the whole ledger: categories with their
subcategories, transactions, recurring rules and app settings. Every layout
ever written has a version number and a schema here. Older documents are
brought up to ``CURRENT_VERSION`` by applying one migration function per
version bump, so restore only ever deals with the current layout.
"""

import datetime as dt
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as SchemaError
from pydantic.alias_generators import to_camel
from sqlalchemy import delete
from sqlalchemy.orm import Session

from config import FallbackConfig, get_settings
from database import atomic
from errors import ValidationError
from models import (
    AppSetting,
    Category,
    Frequency,
    RecurringRule,
    Subcategory,
    Tag,
    Transaction,
    TransactionType,
    new_id,
    recurring_rule_tags,
    transaction_tags,
)
from schemas import (
    CategoryOut,
    RecurringRuleOut,
    SubcategoryOut,
    TransactionOut,
)
from services import (
    AppSettingService,
    CategoryService,
    RecurringRuleService,
    SummaryService,
    TagService,
    TransactionService,
)


logger = logging.getLogger(__name__)

CURRENT_VERSION = 2
PRIVATE_MODE_KEY = "is_private_mode"
FALLBACK_COLOR = "#94a3b8"

# Categories the legacy app always counted toward savings.
SAVINGS_CATEGORY_IDS = ("sys_savings", "sys_investments")


class _Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


# Version 1: the layout written by the browser app (decimal amounts,
# ISO datetime strings, upper-case enum values, optional recurring list).


class LegacySubcategory(_Document):
    id: str
    name: str


class LegacyCategory(_Document):
    id: str
    name: str
    type: str
    color: str = "#94a3b8"
    is_system: bool = False
    is_included_in_savings: Optional[bool] = None
    budget_limit: Optional[Decimal] = None
    subcategories: list[LegacySubcategory] = Field(default_factory=list)


class LegacyTransaction(_Document):
    id: str
    amount: Decimal
    description: str = ""
    type: str
    category_id: str
    subcategory_id: Optional[str] = None
    date: str
    tags: Optional[list[str]] = None
    is_recurring: Optional[bool] = None


class LegacyRecurringTransaction(_Document):
    id: str
    description: str = ""
    amount: Decimal
    type: str
    category_id: str
    subcategory_id: Optional[str] = None
    frequency: str
    next_due_date: str
    auto_pay: bool = False
    tags: Optional[list[str]] = None


class LegacySettings(_Document):
    is_private_mode: bool = False


class BackupDocumentV1(_Document):
    version: Literal[1]
    timestamp: dt.datetime
    categories: list[LegacyCategory]
    transactions: list[LegacyTransaction]
    recurring_transactions: Optional[list[LegacyRecurringTransaction]] = None
    settings: LegacySettings = Field(default_factory=LegacySettings)


# Version 2: current layout, built from the read models.


class BackupSettings(_Document):
    is_private_mode: bool = False
    saved_tags: list[str] = Field(default_factory=list)


class BackupDocument(_Document):
    version: Literal[2] = CURRENT_VERSION
    timestamp: dt.datetime
    categories: list[CategoryOut]
    transactions: list[TransactionOut]
    recurring_rules: list[RecurringRuleOut]
    settings: BackupSettings = Field(default_factory=BackupSettings)


AnyBackup = Annotated[
    Union[BackupDocumentV1, BackupDocument], Field(discriminator="version")
]
_any_backup: TypeAdapter = TypeAdapter(AnyBackup)


def _cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _legacy_date(value: str) -> dt.date:
    # Legacy dates are stored at local noon, so the date part is exact.
    return dt.date.fromisoformat(value.strip()[:10])


def migrate_v1_to_v2(
    document: BackupDocumentV1, fallbacks: Optional[FallbackConfig] = None
) -> BackupDocument:
    """Convert a legacy document and repair its category references.

    The legacy app moved entries of a deleted category to the expense
    fallback whatever their kind, and could leave them pointing at a
    category that no longer exists. Such entries are moved to the fallback
    category of their own kind, which is added when the document lacks it.
    """
    fallbacks = fallbacks or get_settings().fallbacks
    other = fallbacks.name.strip().lower()
    by_id = {
        c.id: CategoryOut(
            id=c.id,
            name=c.name,
            type=TransactionType(c.type.lower()),
            color=c.color,
            is_system=c.is_system,
            counts_toward_savings=(
                bool(c.is_included_in_savings) or c.id in SAVINGS_CATEGORY_IDS
            ),
            budget_limit_cents=(
                _cents(c.budget_limit) if c.budget_limit is not None else None
            ),
            order=index,
            subcategories=[SubcategoryOut(id=s.id, name=s.name) for s in c.subcategories],
        )
        for index, c in enumerate(document.categories)
    }
    repaired: list[str] = []

    def fallback_for(kind: TransactionType) -> tuple[str, str]:
        configured_id = fallbacks.category_id_for(kind)
        category = by_id.get(configured_id)
        if category is None or category.type != kind:
            category = next(
                (
                    c
                    for c in by_id.values()
                    if c.type == kind and c.name.strip().lower() == other
                ),
                None,
            )
        if category is None:
            category = CategoryOut(
                id=configured_id if configured_id not in by_id else new_id(),
                name=fallbacks.name,
                type=kind,
                color=FALLBACK_COLOR,
                is_system=True,
                order=len(by_id),
            )
        sub = next(
            (s for s in category.subcategories if s.name.strip().lower() == other),
            None,
        )
        if sub is None:
            sub = SubcategoryOut(id=new_id(), name=fallbacks.name)
            category = category.model_copy(
                update={"subcategories": [*category.subcategories, sub]}
            )
        by_id[category.id] = category
        return category.id, sub.id

    def place(
        entry_id: str,
        kind: TransactionType,
        category_id: str,
        subcategory_id: Optional[str],
    ) -> tuple[str, Optional[str]]:
        category = by_id.get(category_id)
        if category is None or category.type != kind:
            repaired.append(entry_id)
            return fallback_for(kind)
        if subcategory_id and any(s.id == subcategory_id for s in category.subcategories):
            return category_id, subcategory_id
        return category_id, None

    transactions = []
    for t in document.transactions:
        kind = TransactionType(t.type.lower())
        category_id, subcategory_id = place(t.id, kind, t.category_id, t.subcategory_id)
        transactions.append(
            TransactionOut(
                id=t.id,
                description=t.description,
                amount_cents=_cents(t.amount),
                date=_legacy_date(t.date),
                type=kind,
                category_id=category_id,
                subcategory_id=subcategory_id,
                tags=t.tags or [],
                is_recurring=bool(t.is_recurring),
            )
        )
    rules = []
    for r in document.recurring_transactions or []:
        kind = TransactionType(r.type.lower())
        category_id, subcategory_id = place(r.id, kind, r.category_id, r.subcategory_id)
        rules.append(
            RecurringRuleOut(
                id=r.id,
                description=r.description,
                amount_cents=_cents(r.amount),
                type=kind,
                frequency=Frequency(r.frequency.lower()),
                next_due_date=_legacy_date(r.next_due_date),
                auto_pay=r.auto_pay,
                category_id=category_id,
                subcategory_id=subcategory_id,
                tags=r.tags or [],
            )
        )
    if repaired:
        logger.info(
            "legacy_entries_repointed: count=%s ids=%s", len(repaired), repaired
        )

    saved_tags = sorted(
        {tag for item in [*transactions, *rules] for tag in item.tags}
    )
    return BackupDocument(
        timestamp=document.timestamp,
        categories=list(by_id.values()),
        transactions=transactions,
        recurring_rules=rules,
        settings=BackupSettings(
            is_private_mode=document.settings.is_private_mode,
            saved_tags=saved_tags,
        ),
    )


MIGRATIONS: dict[int, Callable[..., BaseModel]] = {
    1: migrate_v1_to_v2,
}


def upgrade(
    document: BaseModel, fallbacks: Optional[FallbackConfig] = None
) -> BackupDocument:
    while document.version != CURRENT_VERSION:
        migrate = MIGRATIONS.get(document.version)
        if migrate is None:
            raise ValidationError(f"Unsupported backup version: {document.version}")
        document = migrate(document, fallbacks)
    return document


def load_backup(payload: Union[str, bytes, dict]) -> BaseModel:
    """Parse a document of any known version without upgrading it."""
    try:
        if isinstance(payload, (str, bytes)):
            return _any_backup.validate_json(payload)
        return _any_backup.validate_python(payload)
    except SchemaError as exc:
        raise ValidationError(f"Invalid backup document: {exc}") from exc


def parse_backup(
    payload: Union[str, bytes, dict], fallbacks: Optional[FallbackConfig] = None
) -> BackupDocument:
    return upgrade(load_backup(payload), fallbacks)


def check_references(document: BackupDocument) -> None:
    kinds = {c.id: c.type for c in document.categories}
    owned = {c.id: {s.id for s in c.subcategories} for c in document.categories}
    entries = [*document.transactions, *document.recurring_rules]
    for entry in entries:
        if entry.category_id not in kinds:
            raise ValidationError(
                f"{entry.id} references unknown category {entry.category_id}"
            )
        if kinds[entry.category_id] != entry.type:
            raise ValidationError(f"{entry.id} has a category of another type")
        if entry.subcategory_id and entry.subcategory_id not in owned[entry.category_id]:
            raise ValidationError(
                f"{entry.id} references unknown subcategory {entry.subcategory_id}"
            )


class BackupService:
    def __init__(
        self, session: Session, fallbacks: Optional[FallbackConfig] = None
    ) -> None:
        self.session = session
        self.categories = CategoryService(session, fallbacks)
        self.reconciler = self.categories.reconciler
        self.app_settings = AppSettingService(session)

    def export(self) -> BackupDocument:
        return BackupDocument(
            timestamp=dt.datetime.now(dt.timezone.utc),
            categories=[
                CategoryOut.model_validate(c) for c in self.categories.list_all()
            ],
            transactions=[
                TransactionOut.model_validate(t)
                for t in TransactionService(self.session).list()
            ],
            recurring_rules=[
                RecurringRuleOut.model_validate(r)
                for r in RecurringRuleService(self.session).list()
            ],
            settings=BackupSettings(
                is_private_mode=bool(self.app_settings.get(PRIVATE_MODE_KEY, False)),
                saved_tags=SummaryService(self.session).all_tags(),
            ),
        )

    def export_json(self) -> str:
        return self.export().model_dump_json(by_alias=True, indent=2)

    def _wipe(self) -> None:
        for statement in (
            delete(transaction_tags),
            delete(recurring_rule_tags),
            delete(Transaction),
            delete(RecurringRule),
            delete(Subcategory),
            delete(Category),
            delete(Tag),
            delete(AppSetting),
        ):
            self.session.execute(
                statement.execution_options(synchronize_session=False)
            )
        self.session.expunge_all()

    def restore(
        self, payload: Union[BackupDocument, BackupDocumentV1, str, bytes, dict]
    ) -> BackupDocument:
        """Replace the whole store with the document's contents."""
        if isinstance(payload, BaseModel):
            document = payload
        else:
            document = load_backup(payload)
        if document.version == CURRENT_VERSION:
            check_references(document)
        else:
            document = upgrade(document, self.reconciler.fallbacks)

        with atomic(self.session):
            self._wipe()
            tags = TagService(self.session)
            tags.resolve(document.settings.saved_tags)

            for c in document.categories:
                category = Category(
                    id=c.id,
                    name=c.name,
                    type=c.type,
                    color=c.color,
                    is_system=c.is_system,
                    counts_toward_savings=c.counts_toward_savings,
                    budget_limit_cents=c.budget_limit_cents,
                    order=c.order,
                )
                category.subcategories = [
                    Subcategory(id=s.id, name=s.name, position=position)
                    for position, s in enumerate(c.subcategories)
                ]
                self.session.add(category)
            self.session.flush()

            for t in document.transactions:
                txn = Transaction(
                    id=t.id,
                    description=t.description,
                    amount_cents=t.amount_cents,
                    date=t.date,
                    type=t.type,
                    category_id=t.category_id,
                    subcategory_id=t.subcategory_id,
                    is_recurring=t.is_recurring,
                    origin_rule_id=t.origin_rule_id,
                    occurrence_date=t.occurrence_date,
                )
                txn.tags = tags.resolve(t.tags)
                self.session.add(txn)

            for r in document.recurring_rules:
                rule = RecurringRule(
                    id=r.id,
                    description=r.description,
                    amount_cents=r.amount_cents,
                    type=r.type,
                    frequency=r.frequency,
                    next_due_date=r.next_due_date,
                    auto_pay=r.auto_pay,
                    category_id=r.category_id,
                    subcategory_id=r.subcategory_id,
                )
                rule.tags = tags.resolve(r.tags)
                self.session.add(rule)
            self.session.flush()
            dangling = self.reconciler.find_dangling()
            if dangling:
                raise ValidationError(
                    f"Restored entries do not resolve: {', '.join(dangling)}"
                )
            self.app_settings.set(PRIVATE_MODE_KEY, document.settings.is_private_mode)

        logger.info(
            "backup_restored: categories=%s transactions=%s rules=%s",
            len(document.categories),
            len(document.transactions),
            len(document.recurring_rules),
        )
        return document

    def factory_reset(self) -> int:
        with atomic(self.session):
            self._wipe()
            seeded = self.categories.seed_defaults()
        logger.info("factory_reset: categories=%s", seeded)
        return seeded
