from __future__ import annotations

import math
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from expense_ocr.modules.extraction.schemas import (
    Category,
    ExpenseDraft,
    LineItem,
    PaymentMethod,
)

_CENTS = Decimal("0.01")
_ZERO = Decimal("0.00")

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)


def sanitize(payload: Any, raw_text: str | None, *, today: date | None = None) -> ExpenseDraft:
    data = payload if isinstance(payload, dict) else {}
    today = today or date.today()

    amount = coerce_amount(data.get("amount"))
    return ExpenseDraft(
        title=_text(data.get("title")) or "Processed Expense",
        amount=amount,
        category=coerce_category(data.get("category")),
        date=coerce_date(data.get("date")) or today,
        description=_text(data.get("description")) or _default_description(raw_text),
        merchant=_text(data.get("merchant")) or "Unknown",
        payment_method=coerce_payment_method(_first(data, "paymentMethod", "payment_method")),
        summary=(
            _text(data.get("summary"))
            or f"Expense processed from receipt. Amount: ${amount:.2f}"
        ),
        line_items=coerce_line_items(_first(data, "lineItems", "line_items")),
    )


def coerce_amount(value: Any) -> Decimal:
    if isinstance(value, bool):
        return _ZERO
    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    elif isinstance(value, str):
        raw = re.sub(r"[^0-9.]", "", value)
    else:
        return _ZERO
    try:
        amount = Decimal(raw)
        if not amount.is_finite() or amount < 0:
            return _ZERO
        return amount.quantize(_CENTS)
    except InvalidOperation:
        return _ZERO


def coerce_category(value: Any) -> Category:
    return _enum_member(Category, value) or Category.OTHER


def coerce_payment_method(value: Any) -> PaymentMethod:
    return _enum_member(PaymentMethod, value) or PaymentMethod.OTHER


def coerce_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None


def coerce_line_items(value: Any) -> list[LineItem]:
    if not isinstance(value, (list, tuple)):
        return []
    out: list[LineItem] = []
    for entry in value:
        if isinstance(entry, LineItem):
            entry = {"item": entry.item, "price": entry.price}
        if not isinstance(entry, dict):
            continue
        item = entry.get("item")
        price = entry.get("price")
        if not isinstance(item, str) or not item.strip():
            continue
        if isinstance(price, bool) or not isinstance(price, (int, float, Decimal)):
            continue
        if isinstance(price, float) and not math.isfinite(price):
            continue
        try:
            p = Decimal(str(price)).quantize(_CENTS)
        except InvalidOperation:
            continue
        if not p.is_finite() or p < 0:
            continue
        out.append(LineItem(item=item.strip(), price=p))
    return out


def _enum_member(enum_cls, value: Any):
    if not isinstance(value, str):
        return None
    key = _enum_key(value)
    if not key:
        return None
    for member in enum_cls:
        if _enum_key(member.value) == key:
            return member
    return None


def _enum_key(value: str) -> str:
    return re.sub(r"[\s_-]+", "", value).lower()


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s or None


def _default_description(raw_text: str | None) -> str:
    return (raw_text or "").strip()[:200].strip() or "No description available"
