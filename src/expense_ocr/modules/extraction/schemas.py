from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Category(str, enum.Enum):
    FOOD = "Food"
    TRANSPORTATION = "Transportation"
    UTILITIES = "Utilities"
    HEALTHCARE = "Healthcare"
    ENTERTAINMENT = "Entertainment"
    SHOPPING = "Shopping"
    EDUCATION = "Education"
    OTHER = "Other"


class PaymentMethod(str, enum.Enum):
    CASH = "Cash"
    CREDIT_CARD = "Credit Card"
    DEBIT_CARD = "Debit Card"
    BANK_TRANSFER = "Bank Transfer"
    OTHER = "Other"


class Tier(str, enum.Enum):
    AI = "ai"
    HEURISTIC = "heuristic"
    MINIMAL = "minimal"


class PipelineState(str, enum.Enum):
    START = "start"
    HEURISTICS_DONE = "heuristics_done"
    BACKEND_ATTEMPTED = "backend_attempted"
    PARSED = "parsed"
    PARSE_FAILED = "parse_failed"
    SANITIZED = "sanitized"


@dataclass(frozen=True)
class LineItem:
    item: str
    price: Decimal


@dataclass(frozen=True)
class HeuristicGuess:
    total_amount: Decimal
    merchant: str
    line_items: tuple[LineItem, ...] = ()
    lines_count: int = 0


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    raw: str


class ExpenseDraft(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str
    amount: Decimal = Field(ge=0)
    category: Category
    date: dt.date
    description: str
    merchant: str
    payment_method: PaymentMethod = Field(alias="paymentMethod")
    summary: str
    line_items: list[LineItem] = Field(default_factory=list, alias="lineItems")

    def to_payload(self) -> dict[str, Any]:
        """Loosely-typed payload in the shape the backend is asked to return."""
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class ExtractionResult:
    draft: ExpenseDraft
    tier: Tier
    reason: str | None = None
    states: tuple[PipelineState, ...] = field(default_factory=tuple)
    run_id: str | None = None
