"""
SampleBuffer: accumulate capture callbacks until one chunk is long enough to send.

Driver callbacks arrive every ~20 ms; the streaming backend wants at least
MIN_CHUNK_MS (50 ms) per message. Frames are kept as a list of arrays and only
concatenated on flush, so push stays O(1) amortized.
"""
from __future__ import annotations

import numpy as np

from copilot.audio.frames import AudioFrame, Source
from copilot.config import get_settings
from copilot.errors import BufferUnderflowError


class SampleBuffer:
    """Per-source accumulator. Threshold = sample_rate * min_chunk_ms / 1000."""

    def __init__(
        self,
        source: Source,
        sample_rate: int | None = None,
        min_chunk_ms: int | None = None,
    ) -> None:
        settings = get_settings()
        self._source = source
        self._sample_rate = sample_rate or settings.SAMPLE_RATE
        self._min_chunk_ms = min_chunk_ms if min_chunk_ms is not None else settings.MIN_CHUNK_MS
        self._threshold = self._sample_rate * self._min_chunk_ms // 1000
        self._chunks: list[np.ndarray] = []
        self._count = 0
        self._first_timestamp_ms: float | None = None

    @property
    def source(self) -> Source:
        return self._source

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def count(self) -> int:
        return self._count

    def push(self, frame: AudioFrame) -> None:
        if len(frame) == 0:
            return
        if self._first_timestamp_ms is None:
            self._first_timestamp_ms = frame.timestamp_ms
        self._chunks.append(frame.samples)
        self._count += len(frame)

    def has_enough(self) -> bool:
        return self._count >= self._threshold

    def flush(self, force: bool = False) -> AudioFrame | None:
        """
        Concatenate everything buffered (arrival order) into one frame and reset.
        Without force, raises BufferUnderflowError below threshold.
        Forced drain of an empty buffer returns None.
        """
        if not force and not self.has_enough():
            raise BufferUnderflowError(
                f"{self._source.value} buffer has {self._count} samples, needs {self._threshold}"
            )
        if self._count == 0:
            return None
        samples = self._chunks[0] if len(self._chunks) == 1 else np.concatenate(self._chunks)
        frame = AudioFrame(
            source=self._source,
            samples=samples,
            timestamp_ms=self._first_timestamp_ms or 0.0,
        )
        self.clear()
        return frame

    def clear(self) -> None:
        self._chunks = []
        self._count = 0
        self._first_timestamp_ms = None
