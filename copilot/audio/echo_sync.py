"""
EchoSynchronizer: align mic capture with recently rendered system audio, then AEC.

System (loopback) frames are pushed into a time-indexed reference window as they
arrive. For each mic chunk we look for the render frame whose timestamp best
precedes the capture timestamp (echo always arrives after render) within
AEC_TOLERANCE_MS, build a reference block of the same length starting there, and
hand both to the echo canceller.

Fail-open: no match, no canceller, a canceller exception or a wrong-length result
all return the raw capture unchanged and count as a miss. Nothing here raises into
the real-time path.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass

import numpy as np

from copilot.audio.aec import EchoCanceller
from copilot.audio.frames import AudioFrame
from copilot.config import get_settings

logger = logging.getLogger(__name__)

_MISS_WARN_EVERY = 50
_STATS_LOG_EVERY = 100


@dataclass
class EchoStats:
    total: int
    aligned: int
    missed: int
    sync_rate: float  # percent, 0..100
    buffer_size: int

    def to_dict(self) -> dict:
        return asdict(self)


class EchoSynchronizer:
    """Owns the render reference window for one recording session."""

    def __init__(
        self,
        canceller: EchoCanceller | None,
        lookback_ms: float | None = None,
        tolerance_ms: float | None = None,
        max_items: int | None = None,
    ) -> None:
        settings = get_settings()
        self._canceller = canceller
        self._lookback_ms = lookback_ms if lookback_ms is not None else settings.AEC_LOOKBACK_MS
        self._tolerance_ms = tolerance_ms if tolerance_ms is not None else settings.AEC_TOLERANCE_MS
        self._max_items = max_items if max_items is not None else settings.AEC_MAX_ITEMS
        self._window: deque[AudioFrame] = deque()
        self._total = 0
        self._aligned = 0
        self._missed = 0
        self._miss_streak = 0

    @property
    def buffer_size(self) -> int:
        return len(self._window)

    def add_render_audio(self, frame: AudioFrame) -> None:
        """Append a loopback frame; evict entries older than the lookback horizon."""
        self._window.append(frame)
        horizon = frame.timestamp_ms - self._lookback_ms
        while self._window and self._window[0].timestamp_ms < horizon:
            self._window.popleft()
        while len(self._window) > self._max_items:
            self._window.popleft()
            logger.debug("Render window over %s items; dropped oldest", self._max_items)

    def _find_match(self, capture_ts: float) -> int | None:
        """Index of the render frame with the smallest non-negative lag within tolerance."""
        best_idx: int | None = None
        best_lag = float("inf")
        for idx, render in enumerate(self._window):
            lag = capture_ts - render.timestamp_ms
            if 0 <= lag <= self._tolerance_ms and lag < best_lag:
                best_lag = lag
                best_idx = idx
        return best_idx

    def _build_reference(self, start_idx: int, length: int) -> np.ndarray:
        """Render samples from the matched frame onward, zero-padded/truncated to length."""
        ref = np.zeros(length, dtype=np.float32)
        filled = 0
        for i in range(start_idx, len(self._window)):
            if filled >= length:
                break
            samples = self._window[i].samples
            take = min(length - filled, samples.shape[0])
            ref[filled : filled + take] = samples[:take]
            filled += take
        return ref

    def process_capture_with_sync(self, frame: AudioFrame) -> np.ndarray:
        """Return echo-cancelled samples (same length), or the raw input on any miss."""
        self._total += 1
        capture = frame.samples
        match = self._find_match(frame.timestamp_ms) if self._canceller is not None else None
        if match is None:
            self._miss()
            return capture

        reference = self._build_reference(match, capture.shape[0])
        try:
            cleaned = self._canceller.process(capture, reference)
        except Exception as e:
            logger.warning("Echo canceller failed, passing capture through: %s", e)
            self._miss()
            return capture
        if cleaned is None or np.shape(cleaned) != capture.shape:
            logger.warning("Echo canceller returned wrong length; passing capture through")
            self._miss()
            return capture

        self._aligned += 1
        self._miss_streak = 0
        if self._aligned % _STATS_LOG_EVERY == 0:
            stats = self.get_stats()
            logger.debug("AEC sync: %.1f%% aligned (%s/%s)", stats.sync_rate, stats.aligned, stats.total)
        return np.asarray(cleaned, dtype=np.float32)

    def _miss(self) -> None:
        self._missed += 1
        self._miss_streak += 1
        if self._miss_streak % _MISS_WARN_EVERY == 0:
            logger.warning(
                "AEC: %s consecutive unaligned captures (render window %s items)",
                self._miss_streak,
                len(self._window),
            )

    def get_stats(self) -> EchoStats:
        rate = 100.0 * self._aligned / self._total if self._total else 0.0
        return EchoStats(
            total=self._total,
            aligned=self._aligned,
            missed=self._missed,
            sync_rate=rate,
            buffer_size=len(self._window),
        )

    def reset_stats(self) -> None:
        self._total = 0
        self._aligned = 0
        self._missed = 0
        self._miss_streak = 0

    def clear(self) -> None:
        """Empty the render window, reset counters and canceller state (session stop)."""
        self._window.clear()
        self.reset_stats()
        if self._canceller is not None:
            self._canceller.reset()
