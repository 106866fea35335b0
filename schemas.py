import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from models import Frequency, TagMode, TransactionType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: str = Field(default="#94a3b8", max_length=9)
    counts_toward_savings: bool = False
    budget_limit_cents: Optional[int] = Field(default=None, ge=0)
    order: int = 0
    subcategories: list[str] = Field(default_factory=list)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    counts_toward_savings: Optional[bool] = None
    budget_limit_cents: Optional[int] = Field(default=None, ge=0)
    order: Optional[int] = None


class SubcategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class TransactionIn(BaseModel):
    description: str = Field(default="", max_length=200)
    amount_cents: int = Field(..., ge=0)
    date: dt.date
    type: TransactionType
    category_id: str
    subcategory_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class RecurringRuleIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    frequency: Frequency
    next_due_date: dt.date
    auto_pay: bool = False
    category_id: str
    subcategory_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class ProcessIn(BaseModel):
    amount_cents: Optional[int] = Field(default=None, ge=0)


class BulkRecategorizeIn(BaseModel):
    ids: list[str] = Field(..., min_length=1)
    category_id: str
    subcategory_id: Optional[str] = None


class BulkTagIn(BaseModel):
    ids: list[str] = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)
    mode: TagMode = TagMode.add


class SplitIn(BaseModel):
    parts: list[TransactionIn] = Field(..., min_length=1)


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)


class ReadModel(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class SubcategoryOut(ReadModel):
    id: str
    name: str


class CategoryOut(ReadModel):
    id: str
    name: str
    type: TransactionType
    color: str
    is_system: bool = False
    counts_toward_savings: bool = False
    budget_limit_cents: Optional[int] = None
    order: int = 0
    subcategories: list[SubcategoryOut] = Field(default_factory=list)


def _tag_names(value: object) -> list[str]:
    names = [getattr(tag, "name", tag) for tag in (value or [])]
    return sorted(set(names))


class TransactionOut(ReadModel):
    id: str
    description: str
    amount_cents: int
    date: dt.date
    type: TransactionType
    category_id: str
    subcategory_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    is_recurring: bool = False
    origin_rule_id: Optional[str] = None
    occurrence_date: Optional[dt.date] = None

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, value: object) -> list[str]:
        return _tag_names(value)


class RecurringRuleOut(ReadModel):
    id: str
    description: str
    amount_cents: int
    type: TransactionType
    frequency: Frequency
    next_due_date: dt.date
    auto_pay: bool
    category_id: str
    subcategory_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, value: object) -> list[str]:
        return _tag_names(value)


class ImportIn(BaseModel):
    transactions: list[TransactionIn] = Field(default_factory=list)
    clear_history: bool = False
    categories: list[CategoryOut] = Field(default_factory=list)


class FinancialSummary(ReadModel):
    total_income_cents: int
    total_expense_cents: int
    savings_cents: int
    balance_cents: int
    operational_balance_cents: int
