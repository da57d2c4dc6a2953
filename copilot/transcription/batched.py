"""
BatchedTranscriptionProvider: accumulate audio per channel, transcribe every window.

No interim results: every BATCH_WINDOW_SEC each channel sends what it has (if at
least BATCH_MIN_SECONDS, shorter windows keep accumulating) and emits one final
segment with id "{source}-{n}". The accumulator is capped at BATCH_MAX_BUFFER_SEC
(oldest audio dropped) so a stalled backend cannot grow it without bound.
disconnect() stops the tickers, transcribes what is left once, then closes.

Transcribers:
- HostedBatchTranscriber: POST base64 PCM16 to {BACKEND_BASE_URL}/api/transcribe.
- LocalWhisperTranscriber: faster-whisper in an executor (16 kHz input).
"""
from __future__ import annotations

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import numpy as np

from copilot.audio.frames import Source, float32_to_pcm16, resample_linear
from copilot.config import get_settings
from copilot.transcription.base import BaseDualStreamProvider, TranscriptWord

logger = logging.getLogger(__name__)

WHISPER_SAMPLE_RATE = 16000

# Type for shared WhisperModel (loaded once)
WhisperModelT = Any


@dataclass
class BatchResult:
    """Result of one window. Word times in ms relative to the window start."""

    text: str
    confidence: float = 0.95
    words: list[TranscriptWord] = field(default_factory=list)


class BatchTranscriber(ABC):
    """Transcribes one window of float32 mono audio."""

    @abstractmethod
    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> BatchResult:
        ...


class HostedBatchTranscriber(BatchTranscriber):
    """Copilot backend transcription endpoint (it holds the vendor key)."""

    def __init__(
        self,
        base_url: str | None = None,
        language: str | None = None,
        auth_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._url = (base_url or settings.BACKEND_BASE_URL).rstrip("/") + "/api/transcribe"
        self._language = language or settings.DEEPGRAM_LANGUAGE
        self._auth_token = auth_token
        self._timeout = timeout if timeout is not None else settings.BACKEND_TIMEOUT_SEC
        self._transport = transport

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> BatchResult:
        payload = {
            "audio": base64.b64encode(float32_to_pcm16(samples)).decode("ascii"),
            "encoding": "linear16",
            "sampleRate": sample_rate,
            "channels": 1,
            "language": self._language,
        }
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(self._url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()

        text = (data.get("transcript") or "").strip()
        words = [
            TranscriptWord(
                text=str(w.get("word", "")),
                confidence=float(w.get("confidence", 0.95)),
                start_ms=float(w.get("start", 0.0)) * 1000.0,
                end_ms=float(w.get("end", 0.0)) * 1000.0,
            )
            for w in data.get("words") or []
        ]
        return BatchResult(text=text, confidence=float(data.get("confidence") or 0.95), words=words)


def load_whisper_model():
    """Load faster-whisper model once. Called when BATCH_BACKEND=local."""
    try:
        from faster_whisper import WhisperModel
    except ImportError as err:
        raise ImportError(
            "faster-whisper is required for BATCH_BACKEND=local. "
            "Install with: pip install faster-whisper"
        ) from err
    settings = get_settings()
    return WhisperModel(
        settings.LOCAL_WHISPER_MODEL,
        device=settings.LOCAL_WHISPER_DEVICE,
        compute_type=settings.LOCAL_WHISPER_COMPUTE_TYPE,
    )


class LocalWhisperTranscriber(BatchTranscriber):
    """
    Local Whisper via faster-whisper. Model is shared (loaded once) and may be injected.
    Heavy work runs in the default executor so the event loop stays responsive.
    """

    def __init__(self, model: WhisperModelT | None = None, beam_size: int | None = None) -> None:
        self._model = model
        self._beam_size = beam_size or get_settings().LOCAL_WHISPER_BEAM_SIZE

    def _transcribe_sync(self, audio: np.ndarray) -> BatchResult:
        if self._model is None:
            self._model = load_whisper_model()
        segments, _ = self._model.transcribe(
            audio,
            beam_size=self._beam_size,
            vad_filter=True,
            vad_parameters=dict(min_silence_duration_ms=300, speech_pad_ms=100),
            word_timestamps=True,
        )
        parts: list[str] = []
        words: list[TranscriptWord] = []
        log_probs: list[float] = []
        for seg in segments:
            t = (seg.text or "").strip()
            if t:
                parts.append(t)
                log_probs.append(float(getattr(seg, "avg_logprob", -0.5)))
            for w in getattr(seg, "words", None) or []:
                words.append(
                    TranscriptWord(
                        text=(w.word or "").strip(),
                        confidence=float(getattr(w, "probability", 0.95)),
                        start_ms=float(w.start) * 1000.0,
                        end_ms=float(w.end) * 1000.0,
                    )
                )
        text = " ".join(parts).strip()
        if not text:
            return BatchResult(text="", confidence=0.0)
        # avg_logprob ~ -0.2 good, ~ -1.0 poor
        avg = sum(log_probs) / len(log_probs)
        confidence = float(min(1.0, max(0.0, 1.0 + avg)))
        return BatchResult(text=text, confidence=confidence, words=words)

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> BatchResult:
        audio = resample_linear(samples, sample_rate, WHISPER_SAMPLE_RATE)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._transcribe_sync, audio)


@dataclass
class _BatchChannel:
    source: Source
    chunks: list[np.ndarray] = field(default_factory=list)
    count: int = 0
    window_start_ms: float | None = None
    ticker: asyncio.Task | None = None
    in_flight: asyncio.Task | None = None


class BatchedTranscriptionProvider(BaseDualStreamProvider):
    """Periodic batch transcription behind the dual-stream contract."""

    def __init__(
        self,
        transcriber: BatchTranscriber,
        name: str = "batched",
        sample_rate: int | None = None,
        connect_timeout: float | None = None,
        window_sec: float | None = None,
        min_seconds: float | None = None,
        max_buffer_sec: float | None = None,
    ) -> None:
        super().__init__(sample_rate=sample_rate, connect_timeout=connect_timeout)
        settings = get_settings()
        self.name = name
        self._transcriber = transcriber
        self._window_sec = window_sec if window_sec is not None else settings.BATCH_WINDOW_SEC
        min_seconds = min_seconds if min_seconds is not None else settings.BATCH_MIN_SECONDS
        max_buffer_sec = max_buffer_sec if max_buffer_sec is not None else settings.BATCH_MAX_BUFFER_SEC
        self._min_samples = max(1, int(self._sample_rate * min_seconds))
        self._max_samples = max(self._min_samples, int(self._sample_rate * max_buffer_sec))
        self._channels: dict[Source, _BatchChannel] = {}

    async def _open_channel(self, source: Source) -> None:
        channel = _BatchChannel(source=source)
        channel.ticker = asyncio.create_task(self._tick(channel))
        self._channels[source] = channel

    def _send(self, chunk: np.ndarray, source: Source) -> None:
        channel = self._channels.get(source)
        if channel is None or chunk.size == 0:
            return
        if channel.window_start_ms is None:
            channel.window_start_ms = self._elapsed_ms()
        channel.chunks.append(np.array(chunk, dtype=np.float32))
        channel.count += chunk.size
        while channel.count > self._max_samples and len(channel.chunks) > 1:
            dropped = channel.chunks.pop(0)
            channel.count -= dropped.size
            channel.window_start_ms += dropped.size * 1000.0 / self._sample_rate
            logger.debug("%s %s buffer over cap, dropped %s samples", self.name, source.value, dropped.size)

    async def _tick(self, channel: _BatchChannel) -> None:
        while True:
            await asyncio.sleep(self._window_sec)
            # shielded so disconnect never cancels a window already taken
            channel.in_flight = asyncio.create_task(self._transcribe_window(channel))
            await asyncio.shield(channel.in_flight)

    def _take_window(self, channel: _BatchChannel) -> tuple[np.ndarray, float] | None:
        if channel.count < self._min_samples:
            if channel.count:
                logger.debug(
                    "%s %s window too small (%s < %s samples), waiting",
                    self.name, channel.source.value, channel.count, self._min_samples,
                )
            return None
        audio = np.concatenate(channel.chunks)
        start_ms = channel.window_start_ms or 0.0
        channel.chunks = []
        channel.count = 0
        channel.window_start_ms = None
        return audio, start_ms

    async def _transcribe_window(self, channel: _BatchChannel) -> None:
        window = self._take_window(channel)
        if window is None:
            return
        audio, start_ms = window
        try:
            result = await self._transcriber.transcribe(audio, self._sample_rate)
        except Exception as e:
            logger.warning("%s %s transcription failed, window dropped: %s", self.name, channel.source.value, e)
            return
        if not result.text.strip():
            return
        words = [
            TranscriptWord(
                text=w.text,
                confidence=w.confidence,
                start_ms=start_ms + w.start_ms,
                end_ms=start_ms + w.end_ms,
                speaker_id=w.speaker_id,
            )
            for w in result.words
        ]
        segment = self._build_segment(
            channel.source,
            result.text,
            is_final=True,
            confidence=result.confidence,
            words=words,
            timestamp_ms=start_ms,
        )
        self._emit(segment)

    async def _close_channel(self, source: Source) -> None:
        channel = self._channels.pop(source, None)
        if channel is None:
            return
        if channel.ticker is not None:
            channel.ticker.cancel()
            try:
                await channel.ticker
            except asyncio.CancelledError:
                pass
        if channel.in_flight is not None and not channel.in_flight.done():
            await channel.in_flight
        await self._transcribe_window(channel)
