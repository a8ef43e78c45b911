from __future__ import annotations

import dataclasses
import re
import time
import uuid
from datetime import date
from decimal import Decimal, InvalidOperation

from expense_ocr.core.config import settings
from expense_ocr.core.logging import (
    get_logger,
    get_run_id,
    log_event,
    monotonic_ms,
    reset_run_context,
    set_run_context,
)
from expense_ocr.modules.extraction import heuristics
from expense_ocr.modules.extraction.ai import (
    TextBackend,
    acall_backend,
    call_backend,
    get_backend,
)
from expense_ocr.modules.extraction.categories import infer_category
from expense_ocr.modules.extraction.errors import BackendError, BackendTimeout
from expense_ocr.modules.extraction.normalizer import normalize, normalized_length
from expense_ocr.modules.extraction.parsing import parse_completion
from expense_ocr.modules.extraction.prompts import build_prompt
from expense_ocr.modules.extraction.schemas import (
    ExtractionResult,
    HeuristicGuess,
    ParseFailure,
    PaymentMethod,
    PipelineState,
    Tier,
)
from expense_ocr.modules.extraction.validation import sanitize

logger = get_logger(__name__)

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


class ExtractionOrchestrator:
    """
    Runs one receipt text through the fallback chain: AI, heuristics-only, minimal.

    Every run ends in a sanitized ExpenseDraft; backend and parse failures are
    absorbed into a lower tier and recorded as the result's `reason`.
    """

    def __init__(
        self,
        *,
        backend: TextBackend | None = None,
        timeout: float | None = None,
        today: date | None = None,
    ) -> None:
        self.backend = backend if backend is not None else get_backend()
        self.timeout = float(
            timeout if timeout is not None else settings.receipt_ai_timeout_seconds
        )
        self.today = today

    def process(self, raw_text: str | None) -> ExtractionResult:
        text, lines, token, start = self._begin(raw_text)
        states = [PipelineState.START]
        try:
            if normalized_length(lines) < settings.min_text_chars:
                return self._finish(self._minimal(text, states), start)

            guess = self._heuristics(lines, states)
            if self.backend is None:
                return self._finish(
                    self._heuristic(text, guess, states, reason="ai_unavailable"), start
                )

            try:
                completion = self._call_backend(build_prompt(text, guess))
            except BackendError as e:
                return self._finish(self._backend_failed(text, guess, states, e), start)

            return self._finish(self._from_completion(text, guess, completion, states), start)
        finally:
            reset_run_context(token)

    async def aprocess(self, raw_text: str | None) -> ExtractionResult:
        text, lines, token, start = self._begin(raw_text)
        states = [PipelineState.START]
        try:
            if normalized_length(lines) < settings.min_text_chars:
                return self._finish(self._minimal(text, states), start)

            guess = self._heuristics(lines, states)
            if self.backend is None:
                return self._finish(
                    self._heuristic(text, guess, states, reason="ai_unavailable"), start
                )

            try:
                completion = await self._acall_backend(build_prompt(text, guess))
            except BackendError as e:
                return self._finish(self._backend_failed(text, guess, states, e), start)

            return self._finish(self._from_completion(text, guess, completion, states), start)
        finally:
            reset_run_context(token)

    def _begin(self, raw_text: str | None):
        text = raw_text if isinstance(raw_text, str) else ""
        token = set_run_context(uuid.uuid4().hex)
        start = time.monotonic()
        lines = normalize(text)
        log_event(
            logger,
            "extraction.start",
            text_chars=len(text),
            line_count=len(lines),
            backend=getattr(self.backend, "name", None),
        )
        return text, lines, token, start

    def _heuristics(self, lines: list[str], states: list[PipelineState]) -> HeuristicGuess:
        guess = heuristics.extract(lines)
        states.append(PipelineState.HEURISTICS_DONE)
        log_event(
            logger,
            "extraction.heuristics",
            total_amount=str(guess.total_amount),
            merchant=guess.merchant,
            line_item_count=len(guess.line_items),
            lines_count=guess.lines_count,
        )
        return guess

    def _call_backend(self, prompt: str) -> str:
        return call_backend(self.backend, prompt, timeout=self.timeout)

    async def _acall_backend(self, prompt: str) -> str:
        return await acall_backend(self.backend, prompt, timeout=self.timeout)

    def _backend_failed(
        self,
        text: str,
        guess: HeuristicGuess,
        states: list[PipelineState],
        error: BackendError,
    ) -> ExtractionResult:
        reason = "backend_timeout" if isinstance(error, BackendTimeout) else "backend_error"
        log_event(
            logger,
            "extraction.backend.error",
            reason=reason,
            error=str(error)[:300],
        )
        return self._heuristic(text, guess, states, reason=reason)

    def _from_completion(
        self,
        text: str,
        guess: HeuristicGuess,
        completion: str,
        states: list[PipelineState],
    ) -> ExtractionResult:
        states.append(PipelineState.BACKEND_ATTEMPTED)
        parsed = parse_completion(completion, guess=guess)
        if isinstance(parsed, ParseFailure):
            states.append(PipelineState.PARSE_FAILED)
            log_event(
                logger,
                "extraction.parse_failed",
                reason=parsed.reason,
                completion_chars=len(parsed.raw),
                completion_snippet=parsed.raw[:200],
            )
            return self._heuristic(text, guess, states, reason=f"parse_{parsed.reason}")

        states.append(PipelineState.PARSED)
        draft = sanitize(parsed, text, today=self.today)
        states.append(PipelineState.SANITIZED)
        return ExtractionResult(draft=draft, tier=Tier.AI, reason=None, states=tuple(states))

    def _heuristic(
        self,
        text: str,
        guess: HeuristicGuess,
        states: list[PipelineState],
        *,
        reason: str,
    ) -> ExtractionResult:
        draft = sanitize(heuristic_payload(text, guess), text, today=self.today)
        states.append(PipelineState.SANITIZED)
        return ExtractionResult(
            draft=draft, tier=Tier.HEURISTIC, reason=reason, states=tuple(states)
        )

    def _minimal(self, text: str, states: list[PipelineState]) -> ExtractionResult:
        draft = sanitize(minimal_payload(text), text, today=self.today)
        states.append(PipelineState.SANITIZED)
        return ExtractionResult(
            draft=draft, tier=Tier.MINIMAL, reason="text_too_short", states=tuple(states)
        )

    def _finish(self, result: ExtractionResult, start: float) -> ExtractionResult:
        result = dataclasses.replace(result, run_id=get_run_id())
        log_event(
            logger,
            "extraction.finish",
            tier=result.tier.value,
            reason=result.reason,
            amount=str(result.draft.amount),
            category=result.draft.category.value,
            line_item_count=len(result.draft.line_items),
            duration_ms=monotonic_ms(start),
        )
        return result


def process_bill_text(
    raw_text: str | None,
    *,
    backend: TextBackend | None = None,
    timeout: float | None = None,
    today: date | None = None,
) -> ExtractionResult:
    return ExtractionOrchestrator(backend=backend, timeout=timeout, today=today).process(
        raw_text
    )


async def aprocess_bill_text(
    raw_text: str | None,
    *,
    backend: TextBackend | None = None,
    timeout: float | None = None,
    today: date | None = None,
) -> ExtractionResult:
    orchestrator = ExtractionOrchestrator(backend=backend, timeout=timeout, today=today)
    return await orchestrator.aprocess(raw_text)


def heuristic_payload(raw_text: str, guess: HeuristicGuess) -> dict:
    category = infer_category(guess.merchant, raw_text)
    if guess.line_items:
        description = ", ".join(f"{li.item} ${li.price:.2f}" for li in guess.line_items)
    else:
        description = raw_text.strip()[:150] + "..."
    summary = f"Transaction at {guess.merchant} for ${guess.total_amount:.2f}"
    if guess.line_items:
        summary += f" including {len(guess.line_items)} items"
    return {
        "title": f"{category.value} expense at {guess.merchant}",
        "amount": guess.total_amount,
        "category": category,
        "description": description,
        "merchant": guess.merchant,
        "paymentMethod": PaymentMethod.OTHER,
        "summary": summary + ".",
        "lineItems": [{"item": li.item, "price": li.price} for li in guess.line_items],
    }


def minimal_payload(raw_text: str) -> dict:
    amount = largest_number(raw_text)
    description = raw_text.strip()[:200]
    if len(raw_text.strip()) > 200:
        description += "..."
    return {
        "title": "Receipt Processed",
        "amount": amount,
        "category": "Other",
        "description": description,
        "merchant": "Unknown",
        "paymentMethod": PaymentMethod.OTHER,
        "summary": (
            f"Receipt processed successfully. Amount: ${amount:.2f}. "
            "Please review and update details as needed."
        ),
        "lineItems": [],
    }


def largest_number(text: str) -> Decimal:
    best = Decimal("0")
    for token in _NUMBER_RE.findall(text or ""):
        try:
            value = Decimal(token)
        except InvalidOperation:
            continue
        if value > best:
            best = value
    return best
