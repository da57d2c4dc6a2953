"""
Audio frame model and the two sample-format boundaries.

Internally every sample is float32 mono in [-1, 1]. Conversion happens only at:
- provider ingestion (float32 -> PCM 16-bit little-endian bytes), and
- UI level metering (float32 -> 0..1 level).
Everything in between (buffers, echo alignment, AEC) works on float32 arrays.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np


class Source(str, Enum):
    MIC = "mic"
    SYSTEM = "system"


@dataclass(frozen=True)
class AudioFrame:
    """One capture callback worth of samples. Read-only once built."""

    source: Source
    samples: np.ndarray
    timestamp_ms: float

    def __post_init__(self) -> None:
        samples = np.asarray(self.samples, dtype=np.float32).reshape(-1)
        if samples.flags.writeable:
            samples = samples.copy()
            samples.flags.writeable = False
        object.__setattr__(self, "samples", samples)

    def __len__(self) -> int:
        return int(self.samples.shape[0])


def float32_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float32 [-1, 1] to PCM 16-bit mono bytes (little-endian)."""
    scaled = np.clip(np.asarray(samples, dtype=np.float32) * 32768.0, -32768, 32767)
    return scaled.astype("<i2").tobytes()


def rms_level(samples: np.ndarray) -> float:
    """Meter level for the UI: RMS scaled by 3, capped at 1.0. Empty input is 0."""
    if samples.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    return min(1.0, rms * 3.0)


def to_mono(block: np.ndarray) -> np.ndarray:
    """Downmix (frames, channels) to a 1-D float32 array."""
    if block.ndim == 1:
        return block.astype(np.float32, copy=False)
    return block.mean(axis=1).astype(np.float32)


def resample_linear(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Linear-interpolation resample. Good enough for speech models at 16 kHz."""
    if src_rate == dst_rate or samples.size == 0:
        return samples.astype(np.float32, copy=False)
    n_out = max(1, int(round(samples.size * dst_rate / src_rate)))
    x_old = np.arange(samples.size, dtype=np.float64)
    x_new = np.linspace(0, samples.size - 1, n_out)
    return np.interp(x_new, x_old, samples).astype(np.float32)
