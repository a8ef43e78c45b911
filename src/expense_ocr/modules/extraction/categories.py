from __future__ import annotations

import re

from expense_ocr.core.config import settings
from expense_ocr.modules.extraction.schemas import Category

DEFAULT_CATEGORY_KEYWORDS: dict[Category, tuple[str, ...]] = {
    Category.FOOD: (
        "restaurant",
        "cafe",
        "coffee",
        "starbucks",
        "mcdonald",
        "pizza",
        "burger",
        "bakery",
        "grill",
        "diner",
        "bistro",
        "kitchen",
        "deli",
        "grocery",
        "groceries",
        "supermarket",
        "food",
        "milk",
        "bread",
    ),
    Category.TRANSPORTATION: (
        "fuel",
        "gas station",
        "gasoline",
        "petrol",
        "shell",
        "chevron",
        "exxon",
        "uber",
        "lyft",
        "taxi",
        "parking",
        "transit",
        "metro",
        "airline",
        "toll",
    ),
    Category.UTILITIES: (
        "electric",
        "utility",
        "utilities",
        "water bill",
        "internet",
        "broadband",
        "wireless",
        "telecom",
        "energy",
    ),
    Category.HEALTHCARE: (
        "pharmacy",
        "cvs",
        "walgreens",
        "clinic",
        "hospital",
        "medical",
        "dental",
        "doctor",
        "rx",
    ),
    Category.ENTERTAINMENT: (
        "cinema",
        "movie",
        "theater",
        "theatre",
        "concert",
        "netflix",
        "spotify",
        "ticketmaster",
        "bowling",
        "museum",
        "arcade",
    ),
    Category.SHOPPING: (
        "walmart",
        "target",
        "amazon",
        "costco",
        "ikea",
        "mall",
        "outlet",
        "boutique",
        "apparel",
        "electronics",
        "best buy",
    ),
    Category.EDUCATION: (
        "school",
        "university",
        "college",
        "tuition",
        "bookstore",
        "academy",
        "course",
    ),
}

_MERCHANT_WEIGHT = 3
_TEXT_WEIGHT = 1


def get_category_keywords() -> dict[Category, tuple[str, ...]]:
    table = dict(DEFAULT_CATEGORY_KEYWORDS)
    extra = settings.category_keywords or {}
    for name, keywords in extra.items():
        category = _category_from_name(name)
        if category is None or category == Category.OTHER:
            continue
        merged = list(table.get(category, ()))
        for kw in keywords:
            k = str(kw).strip().lower()
            if k and k not in merged:
                merged.append(k)
        table[category] = tuple(merged)
    return table


def infer_category(merchant: str | None, text: str | None) -> Category:
    merchant_l = (merchant or "").lower()
    text_l = (text or "").lower()
    scores: dict[Category, int] = {}
    for category, keywords in get_category_keywords().items():
        score = 0
        for kw in keywords:
            if _contains_word(merchant_l, kw):
                score += _MERCHANT_WEIGHT
            elif _contains_word(text_l, kw):
                score += _TEXT_WEIGHT
        if score:
            scores[category] = score

    if not scores:
        return Category.OTHER
    top = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
    # Ambiguous ties are not guessed.
    if len(top) >= 2 and top[0][1] == top[1][1]:
        return Category.OTHER
    return top[0][0]


def _contains_word(haystack: str, keyword: str) -> bool:
    if not haystack:
        return False
    return re.search(rf"\b{re.escape(keyword)}", haystack) is not None


def _category_from_name(name: str) -> Category | None:
    n = str(name or "").strip().lower()
    for category in Category:
        if category.value.lower() == n:
            return category
    return None
