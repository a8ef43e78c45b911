from __future__ import annotations

import re

_WS_RE = re.compile(r"\s+")


def normalize(raw_text: str | None) -> list[str]:
    if not raw_text:
        return []
    out: list[str] = []
    for ln in str(raw_text).replace("\u202f", " ").replace("\xa0", " ").splitlines():
        s = _WS_RE.sub(" ", ln).strip()
        if s:
            out.append(s)
    return out


def normalized_length(lines: list[str]) -> int:
    return len("\n".join(lines))
