from __future__ import annotations

import asyncio
import os
import time

import pytest

# Set env before any expense_ocr imports (settings are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RECEIPT_AI_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")


class StubBackend:
    name = "stub"

    def __init__(
        self, reply: str | None = None, *, error: BaseException | None = None, delay=0.0
    ) -> None:
        self.reply = reply
        self.error = error
        self.delay = delay
        self.prompts: list[str] = []
        self.cancelled = False

    def generate(self, prompt: str, *, timeout: float) -> str:
        self.prompts.append(prompt)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply

    async def agenerate(self, prompt: str, *, timeout: float) -> str:
        self.prompts.append(prompt)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def stub_backend():
    return StubBackend


@pytest.fixture(autouse=True)
def _reset_settings(monkeypatch) -> None:
    from expense_ocr.core.config import settings

    monkeypatch.setattr(settings, "receipt_ai_enabled", False)
    monkeypatch.setattr(settings, "category_keywords", None)
    monkeypatch.setattr(settings, "min_text_chars", 10)
