"""Pytest configuration helpers and shared fakes."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import numpy as np
import pytest


def _ensure_repo_on_path() -> None:
    """Allow tests to import from repo modules without setting PYTHONPATH."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

from copilot.audio.frames import AudioFrame, Source  # noqa: E402
from copilot.transcription.base import BaseDualStreamProvider, TranscriptSegment  # noqa: E402


def tone(n: int, value: float = 0.1) -> np.ndarray:
    return np.full(n, value, dtype=np.float32)


class FakeCapture:
    """Capture source driven by the test instead of PortAudio."""

    def __init__(self, source: Source, log: list[str], fail: bool = False) -> None:
        self.source = source
        self.log = log
        self.fail = fail
        self.on_frame = None

    async def start(self, on_frame) -> None:
        if self.fail:
            raise RuntimeError(f"{self.source.value} device unavailable")
        self.log.append(f"capture.start:{self.source.value}")
        self.on_frame = on_frame

    async def stop(self) -> None:
        self.log.append(f"capture.stop:{self.source.value}")
        self.on_frame = None

    def emit(self, samples: np.ndarray, timestamp_ms: float = 0.0) -> None:
        assert self.on_frame is not None, "capture not started"
        self.on_frame(AudioFrame(source=self.source, samples=samples, timestamp_ms=timestamp_ms))


class FakeProvider(BaseDualStreamProvider):
    """In-memory provider recording every hook call."""

    name = "fake"

    def __init__(
        self,
        log: list[str] | None = None,
        fail_source: Source | None = None,
        open_delay: float = 0.0,
        close_error: bool = False,
        send_error: bool = False,
        connect_timeout: float = 1.0,
    ) -> None:
        super().__init__(sample_rate=48000, connect_timeout=connect_timeout)
        self.log = log if log is not None else []
        self.fail_source = fail_source
        self.open_delay = open_delay
        self.close_error = close_error
        self.send_error = send_error
        self.sent: list[tuple[Source, int]] = []
        self.trailing: list[TranscriptSegment] = []

    async def _open_channel(self, source: Source) -> None:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if source == self.fail_source:
            raise ConnectionError(f"{source.value} refused")
        self.log.append(f"provider.open:{source.value}")

    def _send(self, chunk: np.ndarray, source: Source) -> None:
        if self.send_error:
            raise OSError("socket gone")
        self.sent.append((source, int(chunk.shape[0])))

    async def _close_channel(self, source: Source) -> None:
        self.log.append(f"provider.close:{source.value}")
        if self.close_error:
            raise OSError("close failed")

    def deliver(self, source: Source, text: str, is_final: bool = True) -> TranscriptSegment:
        segment = self._build_segment(source, text, is_final=is_final)
        self._emit(segment)
        return segment


class FakeWebSocket:
    """Live-transcription socket stand-in: records sends, replays queued server messages."""

    def __init__(self, on_close_stream=None):
        self.sent = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._on_close_stream = on_close_stream or []

    async def send(self, data):
        self.sent.append(data)
        if isinstance(data, str) and _is_close_request(json.loads(data)):
            for message in self._on_close_stream:
                self.incoming.put_nowait(json.dumps(message))
            self.incoming.put_nowait(None)

    def server_says(self, message):
        self.incoming.put_nowait(json.dumps(message))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def audio(self):
        return [d for d in self.sent if isinstance(d, bytes)]

    def messages(self):
        return [json.loads(d) for d in self.sent if isinstance(d, str)]

    def control(self):
        return [m.get("type") for m in self.messages()]


def _is_close_request(message: dict) -> bool:
    return message.get("type") == "CloseStream" or bool(message.get("terminate_session"))


class FakeConnector:
    def __init__(self, sockets=None):
        self.calls = []
        self.sockets = list(sockets or [])
        self.opened = []

    async def __call__(self, url, additional_headers=None):
        self.calls.append((url, additional_headers))
        ws = self.sockets.pop(0) if self.sockets else FakeWebSocket()
        self.opened.append(ws)
        return ws


class FakeStore:
    def __init__(self, log: list[str] | None = None) -> None:
        self.log = log if log is not None else []
        self.records = []
        self.notes = {}

    async def save_session(self, record) -> None:
        self.log.append("store.save")
        self.records.append(record)

    async def save_notes(self, session_id, notes) -> None:
        self.notes[session_id] = notes

    def search(self, keyword, limit):
        return []


@pytest.fixture()
def log() -> list[str]:
    return []
