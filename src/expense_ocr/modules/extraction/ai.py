from __future__ import annotations

import asyncio
import contextvars
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Protocol

import httpx

from expense_ocr.core.config import settings
from expense_ocr.core.logging import get_logger, log_exception
from expense_ocr.modules.extraction.errors import BackendError, BackendTimeout

logger = get_logger(__name__)


class TextBackend(Protocol):
    name: str

    def generate(self, prompt: str, *, timeout: float) -> str: ...

    async def agenerate(self, prompt: str, *, timeout: float) -> str: ...


class _HttpBackend:
    name = "http"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        transport: httpx.BaseTransport | None = None,
        async_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._async_transport = async_transport

    def _request(self, prompt: str) -> tuple[str, dict[str, str], dict[str, str], dict[str, Any]]:
        raise NotImplementedError

    def _completion_text(self, raw: Any) -> str:
        raise NotImplementedError

    def generate(self, prompt: str, *, timeout: float) -> str:
        url, headers, params, payload = self._request(prompt)
        try:
            with httpx.Client(
                transport=self._transport, timeout=timeout, follow_redirects=True
            ) as client:
                resp = client.post(url, headers=headers, params=params, json=payload)
                resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise BackendTimeout(f"{self.name} request timed out") from e
        except httpx.HTTPError as e:
            raise BackendError(f"{self.name} request failed: {e}") from e
        return self._read(resp)

    async def agenerate(self, prompt: str, *, timeout: float) -> str:
        url, headers, params, payload = self._request(prompt)
        try:
            async with httpx.AsyncClient(
                transport=self._async_transport, timeout=timeout, follow_redirects=True
            ) as client:
                resp = await client.post(url, headers=headers, params=params, json=payload)
                resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise BackendTimeout(f"{self.name} request timed out") from e
        except httpx.HTTPError as e:
            raise BackendError(f"{self.name} request failed: {e}") from e
        return self._read(resp)

    def _read(self, resp: httpx.Response) -> str:
        try:
            content = self._completion_text(resp.json())
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise BackendError(f"{self.name} returned an unexpected envelope") from e
        if not isinstance(content, str) or not content.strip():
            raise BackendError(f"{self.name} returned an empty completion")
        return content


class OpenAIChatBackend(_HttpBackend):
    name = "openai"

    def _request(self, prompt: str):
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {
                    "role": "system",
                    "content": (
                        "You extract fields from receipts and bills.\n"
                        "Only use information present in the text.\n"
                        "Return JSON only."
                    ),
                },
                {"role": "user", "content": prompt},
            ],
        }
        return self.base_url + "/chat/completions", headers, {}, payload

    def _completion_text(self, raw: Any) -> str:
        msg = raw["choices"][0]["message"]
        if isinstance(msg, dict) and msg.get("refusal"):
            raise BackendError("openai refused the request")
        return msg["content"]


class GeminiBackend(_HttpBackend):
    name = "gemini"

    def _request(self, prompt: str):
        headers = {"Content-Type": "application/json"}
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0},
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"
        return url, headers, {"key": self.api_key}, payload

    def _completion_text(self, raw: Any) -> str:
        parts = raw["candidates"][0]["content"]["parts"]
        return "".join(str(p.get("text") or "") for p in parts if isinstance(p, dict))


def receipt_ai_available() -> bool:
    if not settings.receipt_ai_enabled:
        return False
    if settings.ai_provider == "openai":
        return bool(settings.openai_api_key)
    return bool(settings.gemini_api_key)


def get_backend() -> TextBackend | None:
    if not receipt_ai_available():
        return None
    if settings.ai_provider == "openai":
        return OpenAIChatBackend(
            api_key=str(settings.openai_api_key),
            model=settings.openai_model,
            base_url=settings.openai_base_url,
        )
    return GeminiBackend(
        api_key=str(settings.gemini_api_key),
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
    )


def call_backend(backend: TextBackend, prompt: str, *, timeout: float) -> str:
    """
    Calls `backend.generate` on a worker thread under a hard wall-clock deadline.

    The thread is abandoned once the deadline passes; httpx timeouts alone only bound
    each network phase. Every failure surfaces as BackendError (or BackendTimeout).
    """
    name = getattr(backend, "name", "backend")
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{name}-call")
    future = executor.submit(
        contextvars.copy_context().run, backend.generate, prompt, timeout=timeout
    )
    try:
        return future.result(timeout=timeout)
    except BackendError:
        raise
    except (FutureTimeout, httpx.TimeoutException) as e:
        future.cancel()
        raise BackendTimeout(f"{name} did not answer within {timeout}s") from e
    except httpx.HTTPError as e:
        raise BackendError(f"{name} request failed: {e}") from e
    except Exception as e:
        log_exception(logger, "backend.unexpected_error", backend=name)
        raise BackendError(f"{name} failed: {e}") from e
    finally:
        executor.shutdown(wait=False)


async def acall_backend(backend: TextBackend, prompt: str, *, timeout: float) -> str:
    name = getattr(backend, "name", "backend")
    try:
        return await asyncio.wait_for(backend.agenerate(prompt, timeout=timeout), timeout=timeout)
    except BackendError:
        raise
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise BackendTimeout(f"{name} did not answer within {timeout}s") from e
    except httpx.HTTPError as e:
        raise BackendError(f"{name} request failed: {e}") from e
    except Exception as e:
        log_exception(logger, "backend.unexpected_error", backend=name)
        raise BackendError(f"{name} failed: {e}") from e
