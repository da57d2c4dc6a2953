"""
StreamingTranscriptionProvider: two Deepgram live WebSocket connections (mic, system).

Per channel:
- reader task: parses "Results" messages into interim/final segments,
- sender task: drains a bounded queue of PCM16 chunks to the socket,
- keepalive task: sends {"type": "KeepAlive"} so a paused session is not dropped.

send_audio never awaits: chunks go into the bounded queue with put_nowait and are
dropped (with a warning) when it is full. On disconnect the queue is drained,
{"type": "CloseStream"} asks Deepgram to flush trailing finals, and the reader is
given a bounded time to deliver them before the socket is closed.

The vendor wire format lives in _listen_url, _authorization, _handle_message,
_keepalive_message and _close_message; other live backends override those.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urlencode

import numpy as np
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from copilot.audio.frames import Source, float32_to_pcm16
from copilot.config import get_settings
from copilot.errors import CredentialError
from copilot.transcription.base import BaseDualStreamProvider, CredentialProvider, TranscriptWord
from copilot.transcription.credentials import resolve_token

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.95
_SENDER_DRAIN_TIMEOUT = 2.0
_READER_DRAIN_TIMEOUT = 3.0


@dataclass
class ParsedResult:
    text: str
    is_final: bool
    confidence: float
    words: list[TranscriptWord]
    start_ms: float | None = None
    speaker_id: str | None = None


def parse_results_message(message: dict[str, Any]) -> ParsedResult | None:
    """Deepgram "Results" message -> ParsedResult; None for empty or non-result messages."""
    if message.get("type") != "Results":
        return None
    alternatives = (message.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    alt = alternatives[0]
    text = (alt.get("transcript") or "").strip()
    if not text:
        return None
    confidence = float(alt.get("confidence", DEFAULT_CONFIDENCE))
    words: list[TranscriptWord] = []
    for w in alt.get("words") or []:
        speaker = w.get("speaker")
        words.append(
            TranscriptWord(
                text=w.get("punctuated_word") or w.get("word", ""),
                confidence=float(w.get("confidence", confidence)),
                start_ms=float(w.get("start", 0.0)) * 1000.0,
                end_ms=float(w.get("end", 0.0)) * 1000.0,
                speaker_id=str(speaker) if speaker is not None else None,
            )
        )
    start = message.get("start")
    return ParsedResult(
        text=text,
        is_final=bool(message.get("is_final", False)),
        confidence=confidence,
        words=words,
        start_ms=float(start) * 1000.0 if start is not None else None,
        speaker_id=words[0].speaker_id if words else None,
    )


@dataclass
class _StreamChannel:
    source: Source
    ws: Any
    queue: asyncio.Queue
    tasks: list[asyncio.Task] = field(default_factory=list)
    reader: asyncio.Task | None = None
    sender: asyncio.Task | None = None


class StreamingTranscriptionProvider(BaseDualStreamProvider):
    """Deepgram live streaming, interim results enabled."""

    name = "deepgram"

    def __init__(
        self,
        api_key: str | None = None,
        credential_provider: CredentialProvider | None = None,
        url: str | None = None,
        model: str | None = None,
        language: str | None = None,
        sample_rate: int | None = None,
        connect_timeout: float | None = None,
        keepalive_sec: float | None = None,
        queue_size: int | None = None,
        connector: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__(sample_rate=sample_rate, connect_timeout=connect_timeout)
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.DEEPGRAM_API_KEY
        self._credential_provider = credential_provider
        self._url = url or settings.DEEPGRAM_URL
        self._model = model or settings.DEEPGRAM_MODEL
        self._language = language or settings.DEEPGRAM_LANGUAGE
        self._keepalive_sec = keepalive_sec if keepalive_sec is not None else settings.DEEPGRAM_KEEPALIVE_SEC
        self._queue_size = queue_size or settings.STREAM_SEND_QUEUE_SIZE
        self._connector = connector or ws_connect
        self._channels: dict[Source, _StreamChannel] = {}

    def _listen_url(self) -> str:
        params = {
            "model": self._model,
            "language": self._language,
            "smart_format": "true",
            "interim_results": "true",
            "punctuate": "true",
            "encoding": "linear16",
            "sample_rate": str(self._sample_rate),
            "channels": "1",
        }
        return f"{self._url}?{urlencode(params)}"

    async def _authorization(self) -> str:
        if self._credential_provider is not None:
            token = await resolve_token(self._credential_provider)
            return f"Bearer {token}"
        if not self._api_key:
            raise CredentialError("DEEPGRAM_API_KEY is not set and no hosted token provider configured")
        return f"Token {self._api_key}"

    def _keepalive_message(self) -> str | None:
        return json.dumps({"type": "KeepAlive"})

    def _close_message(self) -> str:
        """Asks the backend to flush trailing finals, then close."""
        return json.dumps({"type": "CloseStream"})

    async def _open_channel(self, source: Source) -> None:
        auth = await self._authorization()
        ws = await self._connector(self._listen_url(), additional_headers={"Authorization": auth})
        channel = _StreamChannel(source=source, ws=ws, queue=asyncio.Queue(maxsize=self._queue_size))
        channel.reader = asyncio.create_task(self._reader(channel))
        channel.sender = asyncio.create_task(self._sender(channel))
        if self._keepalive_sec > 0 and self._keepalive_message() is not None:
            channel.tasks.append(asyncio.create_task(self._keepalive(channel)))
        self._channels[source] = channel
        logger.info("%s %s channel open", self.name, source.value)

    def _send(self, chunk: np.ndarray, source: Source) -> None:
        channel = self._channels.get(source)
        if channel is None:
            return
        try:
            channel.queue.put_nowait(float32_to_pcm16(chunk))
        except asyncio.QueueFull:
            logger.warning("%s %s send queue full, dropping chunk", self.name, source.value)

    async def _sender(self, channel: _StreamChannel) -> None:
        """Drain queue to socket. None = stop."""
        while True:
            data = await channel.queue.get()
            if data is None:
                break
            try:
                await channel.ws.send(data)
            except ConnectionClosed as e:
                logger.warning("%s %s send on closed socket: %s", self.name, channel.source.value, e)
                self._mark_channel_lost(channel.source)
                break

    async def _keepalive(self, channel: _StreamChannel) -> None:
        message = self._keepalive_message()
        while True:
            await asyncio.sleep(self._keepalive_sec)
            try:
                await channel.ws.send(message)
            except ConnectionClosed:
                break

    async def _reader(self, channel: _StreamChannel) -> None:
        source = channel.source
        try:
            async for raw in channel.ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("%s %s sent invalid JSON", self.name, source.value)
                    continue
                self._handle_message(source, message)
        except ConnectionClosed as e:
            logger.debug("%s %s socket closed: %s", self.name, source.value, e)
        self._mark_channel_lost(source)

    def _handle_message(self, source: Source, message: dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type == "Results":
            parsed = parse_results_message(message)
            if parsed is None:
                return
            segment = self._build_segment(
                source,
                parsed.text,
                is_final=parsed.is_final,
                confidence=parsed.confidence,
                words=parsed.words,
                timestamp_ms=parsed.start_ms,
                speaker_id=parsed.speaker_id,
            )
            self._emit(segment)
        elif msg_type == "Metadata":
            logger.debug("Deepgram %s metadata: request_id=%s", source.value, message.get("request_id"))
        elif msg_type == "Error" or "err_code" in message:
            logger.warning("Deepgram %s error: %s", source.value, message)

    async def _close_channel(self, source: Source) -> None:
        channel = self._channels.pop(source, None)
        if channel is None:
            return
        for task in channel.tasks:
            task.cancel()

        if channel.sender is not None:
            try:
                channel.queue.put_nowait(None)
                await asyncio.wait_for(channel.sender, timeout=_SENDER_DRAIN_TIMEOUT)
            except (asyncio.QueueFull, asyncio.TimeoutError):
                channel.sender.cancel()

        try:
            await channel.ws.send(self._close_message())
        except ConnectionClosed:
            pass

        if channel.reader is not None:
            try:
                await asyncio.wait_for(channel.reader, timeout=_READER_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("%s %s did not close in time; dropping trailing results", self.name, source.value)

        await channel.ws.close()
        pending = [t for t in (*channel.tasks, channel.sender) if t is not None]
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("%s %s channel closed", self.name, source.value)
