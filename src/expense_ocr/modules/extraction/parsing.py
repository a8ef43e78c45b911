from __future__ import annotations

import json
import re
from typing import Any

from expense_ocr.modules.extraction.schemas import HeuristicGuess, ParseFailure

ParsedPayload = dict[str, Any]

_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


def parse_completion(
    completion_text: str | None, *, guess: HeuristicGuess | None = None
) -> ParsedPayload | ParseFailure:
    """
    Pull the structured payload out of a free-form completion.

    The backend's amount and line items are replaced with the heuristic values
    when a guess is given; only its qualitative fields survive.
    """
    raw = completion_text if isinstance(completion_text, str) else ""
    if not raw.strip():
        return ParseFailure(reason="empty", raw=raw)

    block = extract_json_block(raw)
    if block is None:
        return ParseFailure(reason="no_json_object", raw=raw)

    try:
        obj = json.loads(strip_trailing_commas(block))
    except ValueError:
        return ParseFailure(reason="malformed", raw=raw)
    if not isinstance(obj, dict):
        return ParseFailure(reason="malformed", raw=raw)

    if guess is not None:
        obj = anchor_payload(obj, guess)
    return obj


def extract_json_block(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def anchor_payload(payload: ParsedPayload, guess: HeuristicGuess) -> ParsedPayload:
    out = dict(payload)
    if guess.total_amount > 0:
        out["amount"] = guess.total_amount
    out.pop("line_items", None)
    out["lineItems"] = [{"item": li.item, "price": li.price} for li in guess.line_items]
    return out
