from __future__ import annotations

import re
import time
from dataclasses import dataclass
from io import BytesIO

import pytesseract
from PIL import Image, UnidentifiedImageError

from expense_ocr.core.config import settings
from expense_ocr.core.logging import get_logger, log_event, monotonic_ms
from expense_ocr.modules.extraction.errors import EmptyInput, EngineError
from expense_ocr.modules.extraction.normalizer import normalize, normalized_length

logger = get_logger(__name__)

_HSPACE_RE = re.compile(r"[^\S\n]+")
_BLANK_LINES_RE = re.compile(r"\s*\n\s*")
_OUTSIDE_WHITELIST_RE = re.compile(r"[^\w\s.,:$()/\-]")


@dataclass(frozen=True)
class OcrResult:
    text: str
    confidence: float


def extract_text(image_bytes: bytes, *, lang: str | None = None) -> OcrResult:
    start = time.monotonic()
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise EngineError(f"Could not decode image: {e}") from e

    if image.mode not in {"RGB", "L"}:
        image = image.convert("RGB")

    try:
        data = pytesseract.image_to_data(
            image,
            lang=lang or settings.tesseract_lang,
            output_type=pytesseract.Output.DICT,
        )
    except (pytesseract.TesseractError, OSError, RuntimeError) as e:
        raise EngineError(f"OCR engine failed: {e}") from e

    text, confidence = _assemble(data)
    cleaned = clean_ocr_text(text)
    log_event(
        logger,
        "ocr.finish",
        text_chars=len(cleaned),
        confidence=confidence,
        duration_ms=monotonic_ms(start),
    )
    if normalized_length(normalize(cleaned)) < settings.min_text_chars:
        raise EmptyInput("Extracted text is too short or empty")
    return OcrResult(text=cleaned, confidence=confidence)


def clean_ocr_text(text: str) -> str:
    t = _OUTSIDE_WHITELIST_RE.sub("", text or "")
    t = _HSPACE_RE.sub(" ", t)
    t = _BLANK_LINES_RE.sub("\n", t)
    return t.strip()


def _assemble(data: dict) -> tuple[str, float]:
    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences: list[float] = []
    words = data.get("text") or []
    for idx, word in enumerate(words):
        w = str(word or "").strip()
        if not w:
            continue
        key = (
            int(data["block_num"][idx]),
            int(data["par_num"][idx]),
            int(data["line_num"][idx]),
        )
        lines.setdefault(key, []).append(w)
        try:
            conf = float(data["conf"][idx])
        except (KeyError, IndexError, TypeError, ValueError):
            continue
        if conf >= 0:
            confidences.append(conf)

    text = "\n".join(" ".join(ws) for ws in lines.values())
    confidence = round(sum(confidences) / len(confidences), 2) if confidences else 0.0
    return text, min(100.0, confidence)
