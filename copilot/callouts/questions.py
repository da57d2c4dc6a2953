"""Question heuristic for remote-party utterances."""
from __future__ import annotations

import re

QUESTION_PATTERNS = [
    re.compile(r"\?\s*$"),
    re.compile(
        r"^(what|where|when|why|how|who|which|can|could|would|should|is|are|do|does|did|have|has|will)\b",
        re.IGNORECASE,
    ),
    re.compile(r"^(tell me|explain|describe|clarify)\b", re.IGNORECASE),
    re.compile(r"^(do you know|can you tell|could you explain)\b", re.IGNORECASE),
]


def is_question(text: str) -> bool:
    text = (text or "").strip()
    if not text:
        return False
    return any(p.search(text) for p in QUESTION_PATTERNS)


def word_count(text: str) -> int:
    return len((text or "").split())
