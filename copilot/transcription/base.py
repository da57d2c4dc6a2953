"""
DualStreamProvider: one logical speech-to-text connection with two channels (mic, system).

Implementations: StreamingTranscriptionProvider (Deepgram live WebSocket, interim
results) and BatchedTranscriptionProvider (3 s windows, finals only). Callers only
use the contract below and cannot tell which one is active.

BaseDualStreamProvider holds the shared helpers, nothing more:
- channel state table and send gating (send to a non-open channel is a no-op),
- all-or-nothing concurrent connect, concurrent disconnect,
- segment construction, utterance ids, final-exactly-once delivery.
Variants implement _open_channel / _send / _close_channel.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Awaitable, Callable

import numpy as np

from copilot.audio.frames import Source
from copilot.config import get_settings
from copilot.errors import ProviderConnectError

logger = logging.getLogger(__name__)


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class TranscriptWord:
    """Single word; start/end in ms relative to provider connect."""

    text: str
    confidence: float
    start_ms: float
    end_ms: float
    speaker_id: str | None = None


@dataclass
class TranscriptSegment:
    """One transcript result. Interims share the id of the final that supersedes them."""

    id: str
    text: str
    timestamp_ms: float  # ms since provider connect
    source: Source
    confidence: float  # 0.0–1.0
    is_final: bool
    words: list[TranscriptWord] = field(default_factory=list)
    speaker_id: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["source"] = self.source.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptSegment":
        return cls(
            id=str(data["id"]),
            text=str(data.get("text", "")),
            timestamp_ms=float(data.get("timestamp_ms", 0.0)),
            source=Source(data.get("source", Source.SYSTEM.value)),
            confidence=float(data.get("confidence", 0.0)),
            is_final=bool(data.get("is_final", True)),
            words=[TranscriptWord(**w) for w in data.get("words", [])],
            speaker_id=data.get("speaker_id"),
        )


TranscriptCallback = Callable[[TranscriptSegment], None]
CredentialProvider = Callable[[], Awaitable["str | None"]]


class DualStreamProvider(ABC):
    """Four-method contract plus callback registration and state query."""

    name: str = "provider"

    @abstractmethod
    def on_transcript(self, callback: TranscriptCallback) -> None:
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open both channels. Raises ProviderConnectError; never leaves one half open."""
        ...

    @abstractmethod
    def send_audio(self, chunk: np.ndarray, source: Source) -> None:
        """Forward float32 samples if the channel is open; silent no-op otherwise."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close both channels; returns once both are closed. Never raises."""
        ...

    @abstractmethod
    def channel_state(self, source: Source) -> ChannelState:
        ...


class BaseDualStreamProvider(DualStreamProvider):
    """Shared helpers for provider variants."""

    def __init__(self, sample_rate: int | None = None, connect_timeout: float | None = None) -> None:
        settings = get_settings()
        self._sample_rate = sample_rate or settings.SAMPLE_RATE
        self._connect_timeout = connect_timeout if connect_timeout is not None else settings.CONNECT_TIMEOUT_SEC
        self._states: dict[Source, ChannelState] = {s: ChannelState.IDLE for s in Source}
        self._callbacks: list[TranscriptCallback] = []
        self._connected_at: float = time.monotonic()
        self._utterance_seq: dict[Source, int] = {s: 0 for s in Source}
        self._finalized: set[str] = set()

    # --- variant hooks ---

    @abstractmethod
    async def _open_channel(self, source: Source) -> None:
        ...

    @abstractmethod
    def _send(self, chunk: np.ndarray, source: Source) -> None:
        """Non-blocking hand-off of one chunk; only called for an open channel."""
        ...

    @abstractmethod
    async def _close_channel(self, source: Source) -> None:
        """Release the channel, letting in-flight results arrive first. Idempotent."""
        ...

    # --- contract ---

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def on_transcript(self, callback: TranscriptCallback) -> None:
        self._callbacks.append(callback)

    def channel_state(self, source: Source) -> ChannelState:
        return self._states[source]

    def _set_state(self, source: Source, state: ChannelState) -> None:
        if self._states[source] != state:
            logger.debug("%s %s channel: %s -> %s", self.name, source.value, self._states[source].value, state.value)
            self._states[source] = state

    async def connect(self) -> None:
        if all(state == ChannelState.OPEN for state in self._states.values()):
            return
        self._connected_at = time.monotonic()
        self._utterance_seq = {s: 0 for s in Source}
        self._finalized.clear()
        for source in Source:
            self._set_state(source, ChannelState.CONNECTING)

        error: BaseException | None = None
        try:
            results = await asyncio.wait_for(
                asyncio.gather(*(self._open_channel(s) for s in Source), return_exceptions=True),
                timeout=self._connect_timeout,
            )
            for source, result in zip(Source, results):
                if isinstance(result, BaseException):
                    logger.warning("%s %s channel failed to open: %s", self.name, source.value, result)
                    error = error or result
        except asyncio.TimeoutError as e:
            logger.warning("%s connect timed out after %.1fs", self.name, self._connect_timeout)
            error = e

        if error is not None:
            await self._close_all()
            raise ProviderConnectError(f"{self.name} connect failed: {error!r}") from error

        for source in Source:
            self._set_state(source, ChannelState.OPEN)
        logger.info("%s connected (mic + system)", self.name)

    def send_audio(self, chunk: np.ndarray, source: Source) -> None:
        if self._states[source] != ChannelState.OPEN:
            return
        try:
            self._send(chunk, source)
        except Exception as e:
            logger.warning("%s send failed on %s channel, chunk dropped: %s", self.name, source.value, e)

    async def disconnect(self) -> None:
        await self._close_all()
        logger.info("%s disconnected", self.name)

    async def _close_all(self) -> None:
        for source in Source:
            if self._states[source] != ChannelState.CLOSED:
                self._set_state(source, ChannelState.CLOSING)
        results = await asyncio.gather(*(self._close_channel(s) for s in Source), return_exceptions=True)
        for source, result in zip(Source, results):
            if isinstance(result, BaseException):
                logger.warning("%s %s channel close error: %s", self.name, source.value, result)
            self._set_state(source, ChannelState.CLOSED)

    def _mark_channel_lost(self, source: Source) -> None:
        """Backend dropped the channel; further sends become no-ops."""
        if self._states[source] == ChannelState.OPEN:
            logger.warning("%s %s channel closed by backend", self.name, source.value)
            self._set_state(source, ChannelState.CLOSED)

    # --- segment helpers ---

    def _elapsed_ms(self) -> float:
        return (time.monotonic() - self._connected_at) * 1000.0

    def _utterance_id(self, source: Source) -> str:
        return f"{source.value}-{self._utterance_seq[source] + 1}"

    def _build_segment(
        self,
        source: Source,
        text: str,
        is_final: bool,
        confidence: float = 0.95,
        words: list[TranscriptWord] | None = None,
        timestamp_ms: float | None = None,
        speaker_id: str | None = None,
    ) -> TranscriptSegment:
        """Segment for the channel's current utterance; a final closes the utterance."""
        segment = TranscriptSegment(
            id=self._utterance_id(source),
            text=text.strip(),
            timestamp_ms=self._elapsed_ms() if timestamp_ms is None else timestamp_ms,
            source=source,
            confidence=min(1.0, max(0.0, confidence)),
            is_final=is_final,
            words=words or [],
            speaker_id=speaker_id,
        )
        if is_final:
            self._utterance_seq[source] += 1
        return segment

    def _emit(self, segment: TranscriptSegment) -> None:
        """Deliver to listeners. Finals exactly once per id; interims after their final are dropped."""
        if segment.id in self._finalized:
            logger.debug("Dropping duplicate segment %s", segment.id)
            return
        if segment.is_final:
            self._finalized.add(segment.id)
        for callback in list(self._callbacks):
            try:
                callback(segment)
            except Exception:
                logger.exception("Transcript listener failed for segment %s", segment.id)
