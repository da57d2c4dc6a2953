"""
AssemblyAI real-time streaming: same two-socket layout as the Deepgram provider,
different wire format.

Server messages carry "message_type":
  SessionBegins | PartialTranscript | FinalTranscript | SessionTerminated
Transcript messages hold "text", "confidence", "audio_start" and "words", with all
times already in milliseconds. {"terminate_session": true} makes the server send
the last FinalTranscript and then SessionTerminated before it closes the socket.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable
from urllib.parse import urlencode

from copilot.audio.frames import Source
from copilot.config import get_settings
from copilot.errors import CredentialError
from copilot.transcription.base import TranscriptWord
from copilot.transcription.streaming import DEFAULT_CONFIDENCE, ParsedResult, StreamingTranscriptionProvider

logger = logging.getLogger(__name__)

_TRANSCRIPT_TYPES = {"PartialTranscript": False, "FinalTranscript": True}


def parse_transcript_message(message: dict[str, Any]) -> ParsedResult | None:
    """Partial/FinalTranscript message -> ParsedResult; None for empty or other messages."""
    msg_type = message.get("message_type")
    if msg_type not in _TRANSCRIPT_TYPES:
        return None
    text = (message.get("text") or "").strip()
    if not text:
        return None
    confidence = float(message.get("confidence") or DEFAULT_CONFIDENCE)
    words = [
        TranscriptWord(
            text=w.get("text", ""),
            confidence=float(w.get("confidence", confidence)),
            start_ms=float(w.get("start", 0.0)),
            end_ms=float(w.get("end", 0.0)),
        )
        for w in message.get("words") or []
    ]
    start = message.get("audio_start")
    return ParsedResult(
        text=text,
        is_final=_TRANSCRIPT_TYPES[msg_type],
        confidence=confidence,
        words=words,
        start_ms=float(start) if start is not None else None,
    )


class AssemblyAIStreamingProvider(StreamingTranscriptionProvider):
    """AssemblyAI live streaming. API key only; no keepalive needed."""

    name = "assemblyai"

    def __init__(
        self,
        api_key: str | None = None,
        url: str | None = None,
        sample_rate: int | None = None,
        connect_timeout: float | None = None,
        queue_size: int | None = None,
        connector: Callable[..., Any] | None = None,
    ) -> None:
        settings = get_settings()
        super().__init__(
            api_key=api_key if api_key is not None else settings.ASSEMBLYAI_API_KEY,
            url=url or settings.ASSEMBLYAI_URL,
            sample_rate=sample_rate,
            connect_timeout=connect_timeout,
            keepalive_sec=0,
            queue_size=queue_size,
            connector=connector,
        )

    def _listen_url(self) -> str:
        params = {"sample_rate": str(self._sample_rate), "encoding": "pcm_s16le"}
        return f"{self._url}?{urlencode(params)}"

    async def _authorization(self) -> str:
        if not self._api_key:
            raise CredentialError("ASSEMBLYAI_API_KEY is not set")
        return self._api_key

    def _keepalive_message(self) -> str | None:
        return None

    def _close_message(self) -> str:
        return json.dumps({"terminate_session": True})

    def _handle_message(self, source: Source, message: dict[str, Any]) -> None:
        msg_type = message.get("message_type")
        if msg_type in _TRANSCRIPT_TYPES:
            parsed = parse_transcript_message(message)
            if parsed is None:
                return
            segment = self._build_segment(
                source,
                parsed.text,
                is_final=parsed.is_final,
                confidence=parsed.confidence,
                words=parsed.words,
                timestamp_ms=parsed.start_ms,
            )
            self._emit(segment)
        elif msg_type == "SessionBegins":
            logger.debug("AssemblyAI %s session %s", source.value, message.get("session_id"))
        elif msg_type == "SessionTerminated":
            logger.debug("AssemblyAI %s session terminated", source.value)
        elif "error" in message:
            logger.warning("AssemblyAI %s error: %s", source.value, message["error"])
