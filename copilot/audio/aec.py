"""
Echo cancellers: subtract the rendered (system) signal's leakage from the mic.

EchoSynchronizer does the time alignment; a canceller only ever sees a capture
block and a reference block of the same length.

- NLMSEchoCanceller: block normalized LMS adaptive FIR. Filters a block of
  samples at once and updates the weights once per block, so a
  chunk costs a few matrix products instead of a Python loop per sample. Keeps
  the tail of the previous reference so the filter spans chunk boundaries, and
  its weights persist across calls (the echo path changes slowly).
- PassthroughEchoCanceller: returns the capture unchanged (headphones, AEC off).
"""
from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from copilot.config import Settings, get_settings


class EchoCanceller(ABC):
    """Filter contract. process() must return exactly len(capture) samples."""

    @abstractmethod
    def process(self, capture: np.ndarray, reference: np.ndarray) -> np.ndarray:
        ...

    def reset(self) -> None:
        """Drop adaptive state (new session)."""


class PassthroughEchoCanceller(EchoCanceller):
    def process(self, capture: np.ndarray, reference: np.ndarray) -> np.ndarray:
        return capture


class NLMSEchoCanceller(EchoCanceller):
    def __init__(
        self,
        filter_length: int = 256,
        step_size: float = 0.1,
        eps: float = 1e-6,
        block_size: int = 32,
    ) -> None:
        if filter_length < 1:
            raise ValueError("filter_length must be >= 1")
        self._length = filter_length
        if block_size < 1:
            raise ValueError("block_size must be >= 1")
        self._block = block_size
        self._mu = step_size
        self._eps = eps
        self._weights = np.zeros(filter_length, dtype=np.float64)
        self._history = np.zeros(filter_length - 1, dtype=np.float64)

    @property
    def weights(self) -> np.ndarray:
        return self._weights.copy()

    def reset(self) -> None:
        self._weights[:] = 0.0
        self._history[:] = 0.0

    def process(self, capture: np.ndarray, reference: np.ndarray) -> np.ndarray:
        n = capture.shape[0]
        if reference.shape[0] != n:
            raise ValueError(f"reference length {reference.shape[0]} != capture length {n}")
        if n == 0:
            return capture.astype(np.float32, copy=False)

        taps = self._length
        ref = np.concatenate([self._history, reference.astype(np.float64)])
        mic = capture.astype(np.float64)
        # Row i is the tap vector for sample i, newest reference sample first
        rows = sliding_window_view(ref, taps)[:, ::-1]
        out = np.empty(n, dtype=np.float64)
        w = self._weights
        for start in range(0, n, self._block):
            x = rows[start : start + self._block]
            e = mic[start : start + x.shape[0]] - x @ w
            out[start : start + x.shape[0]] = e
            # One update per block, normalized by the block's total tap energy
            energy = np.einsum("ij,ij->", x, x)
            w += (self._mu / (energy + self._eps)) * (x.T @ e)
        if taps > 1:
            self._history = ref[-(taps - 1) :].copy()
        return np.clip(out, -1.0, 1.0).astype(np.float32)


def create_echo_canceller(settings: Settings | None = None) -> EchoCanceller:
    """NLMS when AEC_ENABLED is true; else pass-through."""
    settings = settings or get_settings()
    if not settings.AEC_ENABLED:
        return PassthroughEchoCanceller()
    return NLMSEchoCanceller(
        filter_length=settings.AEC_FILTER_LENGTH,
        step_size=settings.AEC_STEP_SIZE,
        block_size=settings.AEC_BLOCK_SIZE,
    )
