from __future__ import annotations

import json
from collections.abc import Iterable
from decimal import Decimal

from expense_ocr.core.config import settings
from expense_ocr.modules.extraction.schemas import (
    Category,
    HeuristicGuess,
    LineItem,
    PaymentMethod,
)

_CATEGORY_CHOICES = "|".join(c.value for c in Category)
_PAYMENT_CHOICES = "|".join(p.value for p in PaymentMethod)


def build_prompt(raw_text: str, guess: HeuristicGuess) -> str:
    text = _truncate_text(raw_text, max_chars=int(settings.receipt_ai_max_chars or 0) or 12000)
    total = _format_amount(guess.total_amount)
    items_json = _line_items_json(guess.line_items)
    return (
        "You are an assistant that analyzes receipts and bills. Analyze the receipt text "
        "below and extract structured information.\n\n"
        "Receipt text:\n"
        '"""\n' + text + '\n"""\n\n'
        "Preprocessed information:\n"
        f"- Detected total amount: ${total}\n"
        f"- Line items found: {len(guess.line_items)}\n"
        f"- Items: {items_json}\n\n"
        "Return JSON with this exact shape:\n"
        "{\n"
        '  "title": string (e.g. "Grocery Shopping at <merchant>"),\n'
        f'  "amount": {total},\n'
        f'  "category": one_of[{_CATEGORY_CHOICES}],\n'
        '  "date": "YYYY-MM-DD" (from the receipt; today if not present),\n'
        '  "description": string (main items purchased),\n'
        '  "merchant": string (business name from the receipt header),\n'
        f'  "paymentMethod": one_of[{_PAYMENT_CHOICES}],\n'
        '  "summary": string (merchant, total amount and key items),\n'
        f'  "lineItems": {items_json}\n'
        "}\n\n"
        "Rules:\n"
        f"- amount MUST be exactly {total}, the detected total.\n"
        "- category MUST be one of the listed values; choose from merchant type and items.\n"
        "- paymentMethod MUST be one of the listed values; use Other when unsure.\n"
        "- merchant is usually in the first 2-3 lines of the receipt.\n"
        "- Respond ONLY with the JSON object, no additional text."
    )


def build_categorize_prompt(description: str, amount: Decimal | float | int) -> str:
    return (
        "Categorize this expense into one of these categories: "
        + ", ".join(c.value for c in Category)
        + "\n\n"
        f'Description: "{description}"\n'
        f"Amount: {amount}\n\n"
        "Respond with only the category name."
    )


def build_monthly_summary_prompt(rows: Iterable[tuple[str, Decimal, str]]) -> str:
    listing = "\n".join(
        f"{category}: ${_format_amount(amount)} - {description}"
        for category, amount, description in rows
    )
    return (
        "Generate a concise monthly expense summary based on these transactions:\n\n"
        + listing
        + "\n\n"
        "Provide insights about spending patterns, top categories, and suggestions for "
        "budgeting.\n"
        "Keep it under 200 words."
    )


def _line_items_json(items: Iterable[LineItem]) -> str:
    return json.dumps([{"item": li.item, "price": float(li.price)} for li in items])


def _format_amount(amount: Decimal | float | int) -> str:
    return f"{Decimal(str(amount)):.2f}"


def _truncate_text(text: str, *, max_chars: int) -> str:
    t = (text or "").replace("\u202f", " ").replace("\xa0", " ").strip()
    if not t:
        return ""
    if max_chars <= 0:
        return t
    if len(t) <= max_chars:
        return t
    return t[: max_chars - 20].rstrip() + "\n\n[TRUNCATED]"
