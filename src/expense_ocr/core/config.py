from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"

    receipt_ai_enabled: bool = True
    ai_provider: Literal["openai", "gemini"] = "gemini"

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"

    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-pro"

    receipt_ai_timeout_seconds: float = 20.0
    receipt_ai_max_chars: int = 12000

    min_text_chars: int = 10
    category_keywords: dict[str, list[str]] | None = None

    tesseract_lang: str = "eng"


settings = Settings()
