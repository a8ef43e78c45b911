from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from expense_ocr.modules.extraction.schemas import HeuristicGuess, LineItem

_ZERO = Decimal("0")
_MAX_AMOUNT = Decimal("10000")
_ITEM_TOTAL_RATIO = Decimal("0.8")

# Currency-tagged forms first so quantities ("2 x") are not read as prices.
_PRICE_PATTERNS = (
    re.compile(r"\$(\d+\.\d{2})"),
    re.compile(r"(\d+\.\d{2})(?!\d)"),
    re.compile(r"\$(\d+)(?!\d)"),
    re.compile(r"(\d+\.00)(?!\d)"),
)

_TOTAL_KEYWORDS = ("total", "amount due", "balance", "grand total")

_BOILERPLATE_KEYWORDS = (
    "receipt",
    "invoice",
    "total",
    "subtotal",
    "tax",
    "discount",
    "payment",
    "cash",
    "credit",
    "debit",
    "change",
    "thank you",
    "date",
    "time",
    "cashier",
    "register",
    "transaction",
    "address",
    "phone",
    "visit",
    "welcome",
)

_CURRENCY_SYMBOLS = ("$", "€", "£", "¥")
_DATE_FRAGMENT_RE = re.compile(r"\d{2}/\d{2}")
_LEADING_DATE_RE = re.compile(r"^\d{2}/\d{2}")
_LEADING_TIME_RE = re.compile(r"^\d{2}:\d{2}")
_PRICE_TOKEN_RE = re.compile(r"\$?\d+\.\d{2}")
_NUMBER_TOKEN_RE = re.compile(r"\$?\d+(?!\d)")
_QUANTITY_RE = re.compile(r"\b(qty|quantity|each|ea|x\d+)\b", re.I)
_WS_RE = re.compile(r"\s+")


def extract(lines: list[str]) -> HeuristicGuess:
    merchant = detect_merchant(lines)
    total = detect_total(lines)
    items = detect_line_items(lines, total=total)
    return HeuristicGuess(
        total_amount=total,
        merchant=merchant,
        line_items=tuple(items),
        lines_count=len(lines),
    )


def detect_merchant(lines: list[str]) -> str:
    for ln in lines[:3]:
        if not 3 < len(ln) < 50:
            continue
        if ln[0].isdigit():
            continue
        if any(sym in ln for sym in _CURRENCY_SYMBOLS):
            continue
        if _DATE_FRAGMENT_RE.search(ln):
            continue
        return ln
    return "Unknown"


def detect_total(lines: list[str]) -> Decimal:
    for i, ln in enumerate(lines):
        low = ln.lower()
        if not any(k in low for k in _TOTAL_KEYWORDS):
            continue

        # Same line, then the line below, then the line above.
        candidates = [ln]
        if i + 1 < len(lines):
            candidates.append(lines[i + 1])
        if i > 0:
            candidates.append(lines[i - 1])
        for candidate in candidates:
            amount = extract_amount(candidate)
            if amount > _ZERO:
                return amount

    amounts = [a for a in (extract_amount(ln) for ln in lines) if a > _ZERO]
    if amounts:
        return max(amounts)
    return _ZERO


def extract_amount(line: str) -> Decimal:
    for pattern in _PRICE_PATTERNS:
        m = pattern.search(line)
        if not m:
            continue
        try:
            amount = Decimal(m.group(1))
        except InvalidOperation:
            continue
        if _ZERO < amount < _MAX_AMOUNT:
            return amount
    return _ZERO


def extract_item_name(line: str) -> str | None:
    name = _PRICE_TOKEN_RE.sub("", line)
    name = _NUMBER_TOKEN_RE.sub("", name)
    name = _WS_RE.sub(" ", name).strip().strip("- ")
    name = _QUANTITY_RE.sub("", name)
    name = _WS_RE.sub(" ", name).strip()
    return name if len(name) >= 2 else None


def is_boilerplate_line(line: str) -> bool:
    if len(line) < 3:
        return True
    if _LEADING_DATE_RE.match(line) or _LEADING_TIME_RE.match(line):
        return True
    low = line.lower()
    return any(k in low for k in _BOILERPLATE_KEYWORDS)


def detect_line_items(lines: list[str], *, total: Decimal) -> list[LineItem]:
    ceiling = total * _ITEM_TOTAL_RATIO
    items: list[LineItem] = []
    for i, ln in enumerate(lines):
        if is_boilerplate_line(ln):
            continue
        amount = extract_amount(ln)
        if not _ZERO < amount < ceiling:
            continue

        name = extract_item_name(ln)
        if (not name or len(name) < 3) and i > 0:
            prev = lines[i - 1]
            # A priced line above belongs to its own item.
            if extract_amount(prev) == _ZERO:
                name = extract_item_name(prev) or name

        if name and len(name) >= 2:
            items.append(LineItem(item=name, price=amount))
    return items
