import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


@dataclass(frozen=True)
class FallbackConfig:
    income_category_id: str
    expense_category_id: str
    name: str = "Other"

    def category_id_for(self, kind: str) -> str:
        if kind == "income":
            return self.income_category_id
        return self.expense_category_id


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        fallbacks: FallbackConfig,
        upcoming_window_days: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.fallbacks = fallbacks
        self.upcoming_window_days = upcoming_window_days


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Warsaw")
    fallbacks = FallbackConfig(
        income_category_id=os.getenv("LEDGER_FALLBACK_INCOME_ID", "sys_other_income"),
        expense_category_id=os.getenv(
            "LEDGER_FALLBACK_EXPENSE_ID", "sys_other_expense"
        ),
        name=os.getenv("LEDGER_FALLBACK_NAME", "Other"),
    )
    upcoming_window_days = int(os.getenv("LEDGER_UPCOMING_DAYS", "7"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        fallbacks=fallbacks,
        upcoming_window_days=upcoming_window_days,
    )
