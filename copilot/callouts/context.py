"""
Question-context retrieval: relevant excerpts from prior sessions.

StoreContextRetriever asks the transcript store for sessions mentioning the
question's first keyword and keeps up to two matching segments per session.
Callers bound the wait with CALLOUT_CONTEXT_TIMEOUT_SEC.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Protocol

from copilot.session.store import TranscriptStore

_STOPWORDS = {
    "a", "an", "the", "what", "where", "when", "why", "how", "who", "which", "can", "could",
    "would", "should", "is", "are", "do", "does", "did", "have", "has", "will", "you", "your",
    "we", "our", "i", "me", "tell", "explain", "describe", "clarify", "about", "to", "of", "it",
}


@dataclass
class Excerpt:
    title: str
    text: str
    session_id: str | None = None


class ContextRetriever(Protocol):
    async def retrieve(self, query: str, limit: int) -> list[Excerpt]:
        ...


def query_keywords(query: str) -> list[str]:
    words = re.findall(r"[a-z0-9']+", (query or "").lower())
    return [w for w in words if w not in _STOPWORDS and len(w) > 2]


class StoreContextRetriever:
    def __init__(self, store: TranscriptStore, per_session: int = 2) -> None:
        self._store = store
        self._per_session = per_session

    async def retrieve(self, query: str, limit: int) -> list[Excerpt]:
        keywords = query_keywords(query)
        if not keywords:
            return []
        loop = asyncio.get_running_loop()
        records = await loop.run_in_executor(None, self._store.search, keywords[0], limit)
        excerpts: list[Excerpt] = []
        for record in records[:limit]:
            title = record.metadata.get("title") or record.session_id
            matched = [s for s in record.segments if keywords[0] in s.text.lower()][: self._per_session]
            for segment in matched:
                excerpts.append(Excerpt(title=str(title), text=segment.text, session_id=record.session_id))
        return excerpts
