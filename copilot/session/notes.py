"""
Post-session note generation (best-effort).

Runs in the background after stop() has already returned the session to idle.
Sessions with fewer than NOTES_MIN_SEGMENTS finals are skipped. Failures are
logged; they never touch the session state.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass

from copilot.callouts.scheduler import SPEAKER_LABELS
from copilot.config import get_settings
from copilot.llm import WorkersAIClient, extract_json_object
from copilot.session.store import SessionRecord, TranscriptStore

logger = logging.getLogger(__name__)

NOTE_GENERATION_SYSTEM_PROMPT = """You are a meeting note generator. Analyze the transcript and generate:

1. A short, descriptive title (max 60 chars) that captures the meeting's main topic
2. An overview (1-2 sentences describing what was discussed)
3. Structured notes in markdown format with:
   - Key discussion points
   - Decisions made
   - Action items (with owners if mentioned)
   - Follow-ups

Respond in JSON only:
{"title": "Meeting title here", "overview": "Brief overview of the meeting", "notesMarkdown": "# Notes\\n\\n## Key Points\\n- ..."}"""


@dataclass
class GeneratedNotes:
    title: str
    overview: str
    notes_markdown: str

    def to_dict(self) -> dict:
        return asdict(self)


def format_transcript(record: SessionRecord) -> str:
    return "\n".join(f"[{SPEAKER_LABELS[s.source]}]: {s.text}" for s in record.segments if s.is_final)


class NoteGenerator:
    def __init__(
        self,
        client: WorkersAIClient | None = None,
        store: TranscriptStore | None = None,
        min_segments: int | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client or WorkersAIClient()
        self._store = store
        self._min_segments = min_segments if min_segments is not None else settings.NOTES_MIN_SEGMENTS
        self._max_tokens = settings.NOTES_MAX_TOKENS

    async def generate(self, record: SessionRecord) -> GeneratedNotes | None:
        """Notes for a finished session, saved through the store when one is set. None when skipped or failed."""
        finals = [s for s in record.segments if s.is_final]
        if len(finals) < self._min_segments:
            logger.info("Skipping notes for %s: %s final segments", record.session_id, len(finals))
            return None
        messages = [
            {"role": "system", "content": NOTE_GENERATION_SYSTEM_PROMPT},
            {"role": "user", "content": f"Generate notes for this meeting:\n\n{format_transcript(record)}"},
        ]
        try:
            content = await self._client.run_chat(messages, max_tokens=self._max_tokens)
            data = extract_json_object(content)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Notes for %s were not valid JSON: %s", record.session_id, e)
            return None
        except Exception as e:
            logger.warning("Note generation failed for %s: %s", record.session_id, e)
            return None

        notes = GeneratedNotes(
            title=str(data.get("title") or record.title)[:60],
            overview=str(data.get("overview") or ""),
            notes_markdown=str(data.get("notesMarkdown") or ""),
        )
        if self._store is not None:
            await self._store.save_notes(record.session_id, notes.to_dict())
        logger.info("Notes generated for %s: %s", record.session_id, notes.title)
        return notes
