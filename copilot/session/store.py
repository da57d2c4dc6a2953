"""
TranscriptStore: persistence collaborator for finished sessions.

One JSON file per session: {TRANSCRIPT_DIR}/{session_id}.json holding only final
segments in arrival order plus metadata. Notes land next to it in
{session_id}_notes.json. Files are written once (at stop) from an executor so the
event loop never blocks on disk; OSError is logged, never raised into the session.
"""
from __future__ import annotations

import asyncio
import glob
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from copilot.config import Settings, get_settings
from copilot.transcription.base import TranscriptSegment

logger = logging.getLogger(__name__)

_NOTES_SUFFIX = "_notes.json"


@dataclass
class SessionRecord:
    """Completed session handed to persistence."""

    session_id: str
    started_at: float  # unix seconds
    ended_at: float | None = None
    segments: list[TranscriptSegment] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return str(self.metadata.get("title") or f"Session {self.session_id}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "metadata": self.metadata,
            "segments": [s.to_dict() for s in self.segments],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=str(data["session_id"]),
            started_at=float(data.get("started_at", 0.0)),
            ended_at=data.get("ended_at"),
            segments=[TranscriptSegment.from_dict(s) for s in data.get("segments", [])],
            metadata=dict(data.get("metadata") or {}),
        )


class TranscriptStore(ABC):
    @abstractmethod
    async def save_session(self, record: SessionRecord) -> None:
        ...

    @abstractmethod
    async def save_notes(self, session_id: str, notes: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def search(self, keyword: str, limit: int) -> list[SessionRecord]:
        """Blocking; newest first. Run from an executor."""
        ...


class NoOpTranscriptStore(TranscriptStore):
    """When transcript saving is disabled. No file I/O."""

    async def save_session(self, record: SessionRecord) -> None:
        pass

    async def save_notes(self, session_id: str, notes: dict[str, Any]) -> None:
        pass

    def search(self, keyword: str, limit: int) -> list[SessionRecord]:
        return []


class FileTranscriptStore(TranscriptStore):
    def __init__(self, directory: str | None = None) -> None:
        self._dir = directory or get_settings().TRANSCRIPT_DIR

    @property
    def directory(self) -> str:
        return self._dir

    def session_path(self, session_id: str) -> str:
        return os.path.join(self._dir, f"{session_id}.json")

    def _write_json(self, path: str, payload: dict[str, Any]) -> None:
        try:
            os.makedirs(self._dir, exist_ok=True)
            tmp = path + ".tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
            logger.info("Saved %s", path)
        except OSError as e:
            logger.warning("Failed to save %s: %s", path, e)

    async def save_session(self, record: SessionRecord) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_json, self.session_path(record.session_id), record.to_dict())

    async def save_notes(self, session_id: str, notes: dict[str, Any]) -> None:
        path = os.path.join(self._dir, f"{session_id}{_NOTES_SUFFIX}")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_json, path, {"session_id": session_id, **notes})

    def load(self, session_id: str) -> SessionRecord | None:
        path = self.session_path(session_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return SessionRecord.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load session %s: %s", path, e)
            return None

    def search(self, keyword: str, limit: int) -> list[SessionRecord]:
        keyword = (keyword or "").strip().lower()
        if not keyword or limit <= 0:
            return []
        matches: list[SessionRecord] = []
        for path in glob.glob(os.path.join(self._dir, "*.json")):
            if path.endswith(_NOTES_SUFFIX):
                continue
            session_id = os.path.basename(path)[: -len(".json")]
            record = self.load(session_id)
            if record is None:
                continue
            if any(keyword in s.text.lower() for s in record.segments):
                matches.append(record)
        matches.sort(key=lambda r: r.started_at, reverse=True)
        return matches[:limit]


def create_transcript_store(settings: Settings | None = None) -> TranscriptStore:
    """File store when TRANSCRIPT_SAVE_ENABLED is true; else no-op."""
    settings = settings or get_settings()
    if not settings.TRANSCRIPT_SAVE_ENABLED:
        return NoOpTranscriptStore()
    return FileTranscriptStore(settings.TRANSCRIPT_DIR)
