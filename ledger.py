"""Single owner of the ledger state.

``Ledger`` wraps the services behind one command surface. Every command
returns a fresh immutable snapshot and hands the same snapshot to every
subscriber, so views never hold references into live ORM objects.
"""

from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional, Sequence

from sqlalchemy.orm import Session

from backup import BackupDocument, BackupService
from config import FallbackConfig, get_settings
from models import TagMode
from recurrence import local_today
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    RecurringRuleIn,
    RecurringRuleOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    BulkService,
    CategoryService,
    RecurringRuleService,
    TransactionService,
)


@dataclass(frozen=True)
class LedgerSnapshot:
    categories: tuple[CategoryOut, ...]
    transactions: tuple[TransactionOut, ...]
    recurring_rules: tuple[RecurringRuleOut, ...]
    due_for_approval: tuple[RecurringRuleOut, ...]
    upcoming_auto: tuple[RecurringRuleOut, ...]
    as_of: date


Listener = Callable[[LedgerSnapshot], None]


class Ledger:
    def __init__(
        self,
        session: Session,
        fallbacks: Optional[FallbackConfig] = None,
        window_days: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        fallbacks = fallbacks or settings.fallbacks
        self.session = session
        self.categories = CategoryService(session, fallbacks)
        self.transactions = TransactionService(session, fallbacks)
        self.bulk = BulkService(session, fallbacks)
        self.recurring = RecurringRuleService(session, fallbacks, window_days)
        self.backups = BackupService(session, fallbacks)
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self, today: Optional[date] = None) -> LedgerSnapshot:
        today = today or local_today()
        rules = tuple(RecurringRuleOut.model_validate(r) for r in self.recurring.list())
        return LedgerSnapshot(
            categories=tuple(
                CategoryOut.model_validate(c) for c in self.categories.list_all()
            ),
            transactions=tuple(
                TransactionOut.model_validate(t) for t in self.transactions.list()
            ),
            recurring_rules=rules,
            due_for_approval=tuple(
                RecurringRuleOut.model_validate(r)
                for r in self.recurring.due_for_approval(today)
            ),
            upcoming_auto=tuple(
                RecurringRuleOut.model_validate(r)
                for r in self.recurring.upcoming_auto(today)
            ),
            as_of=today,
        )

    def _publish(self, today: Optional[date] = None) -> LedgerSnapshot:
        state = self.snapshot(today)
        for listener in list(self._listeners):
            listener(state)
        return state

    # Ledger

    def add_transaction(self, data: TransactionIn) -> LedgerSnapshot:
        self.transactions.create(data)
        return self._publish()

    def update_transaction(self, transaction_id: str, data: TransactionIn) -> LedgerSnapshot:
        self.transactions.update(transaction_id, data)
        return self._publish()

    def delete_transaction(self, transaction_id: str) -> LedgerSnapshot:
        self.transactions.delete(transaction_id)
        return self._publish()

    def import_transactions(
        self,
        items: Sequence[TransactionIn],
        clear_history: bool = False,
        categories: Sequence[CategoryOut] = (),
    ) -> LedgerSnapshot:
        self.transactions.import_batch(items, clear_history, categories)
        return self._publish()

    # Category tree

    def add_category(self, data: CategoryIn) -> LedgerSnapshot:
        self.categories.create(data)
        return self._publish()

    def update_category(self, category_id: str, data: CategoryUpdate) -> LedgerSnapshot:
        self.categories.update(category_id, data)
        return self._publish()

    def add_subcategory(self, category_id: str, name: str) -> LedgerSnapshot:
        self.categories.add_subcategory(category_id, name)
        return self._publish()

    def delete_category(
        self,
        category_id: str,
        target_category_id: Optional[str] = None,
        target_subcategory_id: Optional[str] = None,
    ) -> LedgerSnapshot:
        self.categories.delete(category_id, target_category_id, target_subcategory_id)
        return self._publish()

    def delete_subcategory(self, category_id: str, subcategory_id: str) -> LedgerSnapshot:
        self.categories.delete_subcategory(category_id, subcategory_id)
        return self._publish()

    # Bulk

    def bulk_recategorize(
        self,
        ids: Sequence[str],
        category_id: str,
        subcategory_id: Optional[str] = None,
    ) -> LedgerSnapshot:
        self.bulk.recategorize(ids, category_id, subcategory_id)
        return self._publish()

    def bulk_tag(
        self, ids: Sequence[str], tags: Sequence[str], mode: TagMode = TagMode.add
    ) -> LedgerSnapshot:
        self.bulk.tag(ids, tags, mode)
        return self._publish()

    def split(self, original_id: str, parts: Sequence[TransactionIn]) -> LedgerSnapshot:
        self.bulk.split(original_id, parts)
        return self._publish()

    # Recurring

    def add_recurring(self, data: RecurringRuleIn) -> LedgerSnapshot:
        self.recurring.create(data)
        return self._publish()

    def delete_recurring(self, rule_id: str) -> LedgerSnapshot:
        self.recurring.delete(rule_id)
        return self._publish()

    def process_recurring(
        self, rule_id: str, amount_cents: Optional[int] = None
    ) -> LedgerSnapshot:
        self.recurring.process(rule_id, amount_cents)
        return self._publish()

    def skip_recurring(self, rule_id: str) -> LedgerSnapshot:
        self.recurring.skip(rule_id)
        return self._publish()

    def tick(self, today: Optional[date] = None) -> LedgerSnapshot:
        """Post every due auto-pay occurrence as of ``today``."""
        today = today or local_today()
        self.recurring.catch_up_all(today)
        return self._publish(today)

    # Backup

    def export_backup(self) -> BackupDocument:
        return self.backups.export()

    def restore_backup(self, payload) -> LedgerSnapshot:
        self.backups.restore(payload)
        return self._publish()

    def factory_reset(self) -> LedgerSnapshot:
        self.backups.factory_reset()
        return self._publish()
