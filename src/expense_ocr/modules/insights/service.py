from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from expense_ocr.core.config import settings
from expense_ocr.core.logging import get_logger, log_event
from expense_ocr.modules.extraction.ai import TextBackend, call_backend, get_backend
from expense_ocr.modules.extraction.categories import infer_category
from expense_ocr.modules.extraction.errors import BackendError
from expense_ocr.modules.extraction.prompts import (
    build_categorize_prompt,
    build_monthly_summary_prompt,
)
from expense_ocr.modules.extraction.schemas import Category, ExpenseDraft
from expense_ocr.modules.extraction.validation import coerce_amount, coerce_category

logger = get_logger(__name__)

SUMMARY_UNAVAILABLE = "Unable to generate summary at this time."


def categorize_expense(
    description: str,
    amount: Decimal | float | int,
    *,
    backend: TextBackend | None = None,
    timeout: float | None = None,
) -> Category:
    backend = backend if backend is not None else get_backend()
    if backend is None:
        return infer_category(None, description)

    try:
        answer = call_backend(
            backend,
            build_categorize_prompt(description, amount),
            timeout=_timeout(timeout),
        )
    except BackendError as e:
        log_event(logger, "insights.categorize.error", error=str(e)[:300])
        return Category.OTHER

    # Answers sometimes arrive quoted or with a trailing period.
    return coerce_category(str(answer or "").strip().strip("\"'.` "))


def generate_monthly_summary(
    expenses: Iterable[ExpenseDraft | Mapping[str, Any]],
    *,
    backend: TextBackend | None = None,
    timeout: float | None = None,
) -> str:
    rows = [_summary_row(e) for e in expenses]
    if not rows:
        return SUMMARY_UNAVAILABLE
    backend = backend if backend is not None else get_backend()
    if backend is None:
        return SUMMARY_UNAVAILABLE

    try:
        text = call_backend(
            backend, build_monthly_summary_prompt(rows), timeout=_timeout(timeout)
        )
    except BackendError as e:
        log_event(logger, "insights.summary.error", error=str(e)[:300], expense_count=len(rows))
        return SUMMARY_UNAVAILABLE
    text = str(text or "").strip()
    return text or SUMMARY_UNAVAILABLE


def _summary_row(expense: ExpenseDraft | Mapping[str, Any]) -> tuple[str, Decimal, str]:
    if isinstance(expense, ExpenseDraft):
        return expense.category.value, expense.amount, expense.description
    category = coerce_category(expense.get("category"))
    amount = coerce_amount(expense.get("amount"))
    description = str(expense.get("description") or "").strip()
    return category.value, amount, description


def _timeout(timeout: float | None) -> float:
    return float(timeout if timeout is not None else settings.receipt_ai_timeout_seconds)
