from __future__ import annotations

import asyncio
import json
import time
from datetime import date
from decimal import Decimal

import httpx
import pytest

from expense_ocr.modules.extraction.errors import BackendError, BackendTimeout
from expense_ocr.modules.extraction.schemas import (
    Category,
    ExpenseDraft,
    LineItem,
    PaymentMethod,
    PipelineState,
    Tier,
)
from expense_ocr.modules.extraction.service import (
    ExtractionOrchestrator,
    aprocess_bill_text,
    largest_number,
    process_bill_text,
)

TODAY = date(2026, 1, 5)

WALMART_RECEIPT = "Walmart\nMilk 3.99\nBread 2.49\nTotal $6.48\n"
CAFE_RECEIPT = "Cat Cafe\nCoffee 4.00\nCake 5.50\nTotal 12.50\n"

AI_REPLY = json.dumps(
    {
        "title": "Grocery Shopping at Walmart",
        "amount": 100,
        "category": "Food",
        "date": "2024-03-02",
        "description": "Milk, Bread",
        "merchant": "Walmart",
        "paymentMethod": "Debit Card",
        "summary": "Groceries at Walmart.",
        "lineItems": [],
    }
)


def test_ai_tier_uses_backend_judgement_and_heuristic_amount(stub_backend):
    backend = stub_backend(AI_REPLY)
    result = process_bill_text(WALMART_RECEIPT, backend=backend, today=TODAY)

    assert result.tier == Tier.AI
    assert result.reason is None
    assert result.states == (
        PipelineState.START,
        PipelineState.HEURISTICS_DONE,
        PipelineState.BACKEND_ATTEMPTED,
        PipelineState.PARSED,
        PipelineState.SANITIZED,
    )
    draft = result.draft
    assert draft.amount == Decimal("6.48")
    assert draft.category == Category.FOOD
    assert draft.payment_method == PaymentMethod.DEBIT_CARD
    assert draft.date == date(2024, 3, 2)
    assert draft.title == "Grocery Shopping at Walmart"
    assert draft.line_items == [
        LineItem(item="Milk", price=Decimal("3.99")),
        LineItem(item="Bread", price=Decimal("2.49")),
    ]

    assert len(backend.prompts) == 1
    prompt = backend.prompts[0]
    assert "$6.48" in prompt
    assert '"item": "Milk"' in prompt
    assert "Respond ONLY" in prompt


def test_invalid_backend_category_is_coerced_and_amount_anchored(stub_backend):
    backend = stub_backend('{"amount": 999, "category": "Cats"}')
    result = process_bill_text(CAFE_RECEIPT, backend=backend, today=TODAY)

    assert result.tier == Tier.AI
    assert result.draft.amount == Decimal("12.50")
    assert result.draft.category == Category.OTHER
    assert result.draft.merchant == "Unknown"
    assert result.draft.date == TODAY


def test_prose_completion_falls_back_to_heuristics(stub_backend):
    backend = stub_backend("I think this is a grocery receipt from Walmart.")
    result = process_bill_text(WALMART_RECEIPT, backend=backend, today=TODAY)

    assert result.tier == Tier.HEURISTIC
    assert result.reason == "parse_no_json_object"
    assert PipelineState.PARSE_FAILED in result.states
    assert result.states[-1] == PipelineState.SANITIZED

    draft = result.draft
    assert draft.amount == Decimal("6.48")
    assert draft.merchant == "Walmart"
    assert draft.category == Category.SHOPPING
    assert draft.title == "Shopping expense at Walmart"
    assert draft.description == "Milk $3.99, Bread $2.49"
    assert draft.summary == "Transaction at Walmart for $6.48 including 2 items."
    assert draft.payment_method == PaymentMethod.OTHER
    assert draft.date == TODAY


@pytest.mark.parametrize(
    ("error", "reason"),
    [
        (BackendTimeout("slow"), "backend_timeout"),
        (BackendError("quota"), "backend_error"),
        (httpx.ReadTimeout("slow"), "backend_timeout"),
        (httpx.ConnectError("down"), "backend_error"),
        (RuntimeError("boom"), "backend_error"),
    ],
)
def test_backend_failures_skip_to_heuristics(stub_backend, error, reason):
    backend = stub_backend(error=error)
    result = process_bill_text(WALMART_RECEIPT, backend=backend, today=TODAY)

    assert result.tier == Tier.HEURISTIC
    assert result.reason == reason
    assert result.states == (
        PipelineState.START,
        PipelineState.HEURISTICS_DONE,
        PipelineState.SANITIZED,
    )
    assert result.draft.amount == Decimal("6.48")
    assert len(backend.prompts) == 1


def test_text_without_amounts_and_no_backend():
    result = process_bill_text("random unrelated text", today=TODAY)

    assert result.tier == Tier.HEURISTIC
    assert result.reason == "ai_unavailable"
    assert result.draft.amount == Decimal("0")
    assert result.draft.line_items == []


def test_short_text_uses_minimal_tier_without_calling_backend(stub_backend):
    backend = stub_backend(AI_REPLY)
    result = process_bill_text("$5 tip", backend=backend, today=TODAY)

    assert result.tier == Tier.MINIMAL
    assert result.reason == "text_too_short"
    assert result.states == (PipelineState.START, PipelineState.SANITIZED)
    assert result.draft.amount == Decimal("5.00")
    assert result.draft.title == "Receipt Processed"
    assert result.draft.category == Category.OTHER
    assert backend.prompts == []


def test_largest_number():
    assert largest_number("a 12 b 3.50 c 101.2") == Decimal("101.2")
    assert largest_number("") == Decimal("0")


@pytest.mark.parametrize("raw_text", ["", "   ", "\n\n\n", None, "Total", "x" * 5000])
@pytest.mark.parametrize(
    "reply", ["", "{", "null", "[1, 2]", '{"category": null}', '{"lineItems": "lots"}']
)
def test_process_always_returns_a_draft(stub_backend, raw_text, reply):
    result = process_bill_text(raw_text, backend=stub_backend(reply), today=TODAY)

    assert isinstance(result.draft, ExpenseDraft)
    assert result.tier in set(Tier)
    assert result.draft.category in set(Category)
    assert result.draft.amount >= 0
    assert result.draft.title
    assert result.draft.description
    assert result.states[-1] == PipelineState.SANITIZED


@pytest.mark.parametrize("backend_amount", [0, "999.99", -4, None, "free"])
def test_heuristic_total_always_wins(stub_backend, backend_amount):
    reply = json.dumps({"amount": backend_amount, "category": "Food"})
    result = process_bill_text(CAFE_RECEIPT, backend=stub_backend(reply), today=TODAY)
    assert result.draft.amount == Decimal("12.50")
    for li in result.draft.line_items:
        assert li.price < Decimal("12.50") * Decimal("0.8")


def test_orchestrator_uses_configured_timeout(stub_backend, monkeypatch):
    from expense_ocr.core.config import settings

    monkeypatch.setattr(settings, "receipt_ai_timeout_seconds", 7.5)
    seen: list[float] = []

    class _Backend(stub_backend):
        def generate(self, prompt, *, timeout):
            seen.append(timeout)
            return AI_REPLY

    ExtractionOrchestrator(backend=_Backend()).process(WALMART_RECEIPT)
    ExtractionOrchestrator(backend=_Backend(), timeout=2).process(WALMART_RECEIPT)
    assert seen == [7.5, 2.0]


def test_aprocess_ai_tier(stub_backend):
    result = asyncio.run(
        aprocess_bill_text(WALMART_RECEIPT, backend=stub_backend(AI_REPLY), today=TODAY)
    )
    assert result.tier == Tier.AI
    assert result.draft.amount == Decimal("6.48")


def test_aprocess_times_out_slow_backend(stub_backend):
    backend = stub_backend(AI_REPLY, delay=5)
    result = asyncio.run(
        aprocess_bill_text(WALMART_RECEIPT, backend=backend, timeout=0.05, today=TODAY)
    )
    assert result.tier == Tier.HEURISTIC
    assert result.reason == "backend_timeout"
    assert backend.cancelled


def test_aprocess_propagates_cancellation(stub_backend):
    backend = stub_backend(AI_REPLY, delay=5)

    async def main() -> None:
        task = asyncio.create_task(
            aprocess_bill_text(WALMART_RECEIPT, backend=backend, timeout=30, today=TODAY)
        )
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(main())
    assert backend.cancelled


def test_process_enforces_deadline_on_slow_backend(stub_backend):
    backend = stub_backend(AI_REPLY, delay=1.0)
    start = time.monotonic()
    result = process_bill_text(WALMART_RECEIPT, backend=backend, timeout=0.1, today=TODAY)
    elapsed = time.monotonic() - start

    assert elapsed < 0.8
    assert result.tier == Tier.HEURISTIC
    assert result.reason == "backend_timeout"
    assert PipelineState.BACKEND_ATTEMPTED not in result.states
    assert result.draft.amount == Decimal("6.48")


def test_each_run_carries_its_own_run_id(stub_backend):
    first = process_bill_text(WALMART_RECEIPT, today=TODAY)
    second = process_bill_text(WALMART_RECEIPT, backend=stub_backend(AI_REPLY), today=TODAY)

    assert first.run_id and len(first.run_id) == 32
    assert second.run_id and second.run_id != first.run_id
