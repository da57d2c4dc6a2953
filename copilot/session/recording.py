"""
RecordingSession: state machine sequencing capture, transcription and callouts.

States: idle -> recording <-> paused -> processing -> idle. Anything else raises
InvalidTransitionError.

start(): new session id and fresh per-session objects (buffers, echo synchronizer,
provider, capture sources, callout scheduler), start capture, await
provider.connect(). Any failure stops what was started and leaves the session idle
(RecordingStartError).

Frame routing (loop thread only; capture callbacks marshal here):
- every frame -> level sink,
- system frame -> echo reference window + system SampleBuffer,
- mic frame -> mic SampleBuffer; full mic chunks go through the EchoSynchronizer,
- full chunks -> provider.send_audio, except while paused (flushed and dropped).

stop() order is fixed:
  cancel pending callout, (1) stop capture, (2) await provider.disconnect(),
  (3) grace wait for trailing finals, (4) hand the SessionRecord to the store,
  clear echo state, (5) idle. Notes are generated afterwards in the background.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from copilot.audio.aec import create_echo_canceller
from copilot.audio.echo_sync import EchoStats, EchoSynchronizer
from copilot.audio.frames import AudioFrame, Source, rms_level
from copilot.audio.sample_buffer import SampleBuffer
from copilot.callouts.context import StoreContextRetriever
from copilot.callouts.generator import SuggestionGenerator
from copilot.callouts.scheduler import Callout, CalloutScheduler
from copilot.config import Settings, get_settings
from copilot.errors import InvalidTransitionError, RecordingStartError
from copilot.llm import WorkersAIClient
from copilot.session.notes import NoteGenerator
from copilot.session.store import NoOpTranscriptStore, SessionRecord, TranscriptStore, create_transcript_store
from copilot.transcription import DualStreamProvider, TranscriptSegment, create_transcription_provider

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    PROCESSING = "processing"


TranscriptListener = Callable[[TranscriptSegment], None]
CalloutListener = Callable[[Callout], None]
StateListener = Callable[[SessionState, "str | None"], None]
LevelListener = Callable[[Source, float], None]


@dataclass
class _ActiveSession:
    """Everything owned by one recording; dropped when it returns to idle."""

    session_id: str
    started_at: float
    provider: DualStreamProvider
    echo: EchoSynchronizer
    buffers: dict[Source, SampleBuffer]
    captures: tuple
    callouts: CalloutScheduler | None
    metadata: dict[str, Any] = field(default_factory=dict)
    segments: list[TranscriptSegment] = field(default_factory=list)
    routing: bool = False


class RecordingSession:
    """One recording at a time. Collaborators are injected as per-session factories."""

    def __init__(
        self,
        provider_factory: Callable[[], DualStreamProvider],
        capture_factory: Callable[[], tuple],
        echo_factory: Callable[[], EchoSynchronizer],
        callout_factory: Callable[[str], CalloutScheduler | None] | None = None,
        store: TranscriptStore | None = None,
        note_generator: NoteGenerator | None = None,
        sample_rate: int | None = None,
        min_chunk_ms: int | None = None,
        flush_grace_sec: float | None = None,
    ) -> None:
        settings = get_settings()
        self._provider_factory = provider_factory
        self._capture_factory = capture_factory
        self._echo_factory = echo_factory
        self._callout_factory = callout_factory
        self._store = store or NoOpTranscriptStore()
        self._note_generator = note_generator
        self._sample_rate = sample_rate or settings.SAMPLE_RATE
        self._min_chunk_ms = min_chunk_ms if min_chunk_ms is not None else settings.MIN_CHUNK_MS
        self._flush_grace_sec = flush_grace_sec if flush_grace_sec is not None else settings.FLUSH_GRACE_SEC

        self._state = SessionState.IDLE
        self._starting = False
        self._active: _ActiveSession | None = None
        self._last_echo_stats: EchoStats | None = None
        self._background: set[asyncio.Task] = set()

        self._transcript_listeners: list[TranscriptListener] = []
        self._callout_listeners: list[CalloutListener] = []
        self._state_listeners: list[StateListener] = []
        self._level_listeners: list[LevelListener] = []

    # --- queries and registration ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._active.session_id if self._active else None

    @property
    def segments(self) -> list[TranscriptSegment]:
        return list(self._active.segments) if self._active else []

    def echo_stats(self) -> EchoStats | None:
        if self._active is not None:
            return self._active.echo.get_stats()
        return self._last_echo_stats

    def on_transcript(self, listener: TranscriptListener) -> None:
        self._transcript_listeners.append(listener)

    def on_callout(self, listener: CalloutListener) -> None:
        self._callout_listeners.append(listener)

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_level(self, listener: LevelListener) -> None:
        self._level_listeners.append(listener)

    def _set_state(self, state: SessionState) -> None:
        previous, self._state = self._state, state
        session_id = self.session_id
        logger.info("Recording state: %s -> %s (session %s)", previous.value, state.value, session_id)
        for listener in list(self._state_listeners):
            try:
                listener(state, session_id)
            except Exception:
                logger.exception("State listener failed")

    # --- transitions ---

    async def start(self, metadata: dict[str, Any] | None = None) -> str:
        if self._state != SessionState.IDLE or self._starting:
            raise InvalidTransitionError("starting" if self._starting else self._state.value, "start")
        self._starting = True
        try:
            return await self._start(metadata or {})
        finally:
            self._starting = False

    async def _start(self, metadata: dict[str, Any]) -> str:
        session_id = uuid.uuid4().hex[:12]
        try:
            active = _ActiveSession(
                session_id=session_id,
                started_at=time.time(),
                provider=self._provider_factory(),
                echo=self._echo_factory(),
                buffers={s: SampleBuffer(s, self._sample_rate, self._min_chunk_ms) for s in Source},
                captures=tuple(self._capture_factory()),
                callouts=self._callout_factory(session_id) if self._callout_factory else None,
                metadata=dict(metadata),
            )
        except Exception as e:
            logger.exception("Recording setup failed")
            raise RecordingStartError(f"setup failed: {e}") from e

        active.provider.on_transcript(lambda segment: self._on_segment(active, segment))
        if active.callouts is not None:
            active.callouts.on_callout(self._emit_callout)
        self._active = active

        started = []
        try:
            for capture in active.captures:
                await capture.start(lambda frame: self._on_frame(active, frame))
                started.append(capture)
            await active.provider.connect()
        except asyncio.CancelledError:
            logger.warning("Recording start cancelled for %s", session_id)
            await self._abort_start(active, started)
            raise
        except Exception as e:
            logger.warning("Recording start failed for %s: %s", session_id, e)
            await self._abort_start(active, started)
            raise RecordingStartError(str(e)) from e

        active.routing = True
        self._set_state(SessionState.RECORDING)
        return session_id

    async def _abort_start(self, active: _ActiveSession, started: list) -> None:
        """Undo a partial start: release opened devices and channels."""
        await self._stop_captures(started)
        await active.provider.disconnect()
        self._active = None

    def pause(self) -> None:
        if self._state != SessionState.RECORDING:
            raise InvalidTransitionError(self._state.value, "pause")
        active = self._active
        if active.callouts is not None:
            active.callouts.cancel_pending()
        for buffer in active.buffers.values():
            buffer.clear()
        self._set_state(SessionState.PAUSED)

    def resume(self) -> None:
        if self._state != SessionState.PAUSED:
            raise InvalidTransitionError(self._state.value, "resume")
        self._set_state(SessionState.RECORDING)

    async def stop(self) -> SessionRecord:
        if self._state not in (SessionState.RECORDING, SessionState.PAUSED):
            raise InvalidTransitionError(self._state.value, "stop")
        active = self._active
        was_paused = self._state == SessionState.PAUSED
        self._set_state(SessionState.PROCESSING)

        await self._teardown(active, forward_tail=not was_paused)

        record = SessionRecord(
            session_id=active.session_id,
            started_at=active.started_at,
            ended_at=time.time(),
            segments=list(active.segments),
            metadata={
                **active.metadata,
                "provider": active.provider.name,
                "echo_stats": active.echo.get_stats().to_dict(),
            },
        )
        try:
            await self._store.save_session(record)
        except Exception:
            logger.exception("Persisting session %s failed", active.session_id)

        self._finish(active)
        if self._note_generator is not None:
            self._spawn(self._note_generator.generate(record))
        return record

    async def discard(self) -> None:
        """Stop without persisting or generating notes."""
        if self._state not in (SessionState.RECORDING, SessionState.PAUSED):
            raise InvalidTransitionError(self._state.value, "discard")
        active = self._active
        self._set_state(SessionState.PROCESSING)
        await self._teardown(active, forward_tail=False)
        self._finish(active)
        logger.info("Session %s discarded", active.session_id)

    async def _teardown(self, active: _ActiveSession, forward_tail: bool) -> None:
        if active.callouts is not None:
            active.callouts.reset()
        await self._stop_captures(active.captures)
        self._drain_buffers(active, forward=forward_tail)
        active.routing = False
        try:
            await active.provider.disconnect()
        except Exception as e:
            logger.warning("Provider disconnect failed: %s", e)
        if self._flush_grace_sec > 0:
            await asyncio.sleep(self._flush_grace_sec)

    def _finish(self, active: _ActiveSession) -> None:
        stats = active.echo.get_stats()
        logger.info(
            "AEC stats for %s: %.1f%% aligned (%s/%s), window %s",
            active.session_id, stats.sync_rate, stats.aligned, stats.total, stats.buffer_size,
        )
        self._last_echo_stats = stats
        active.echo.clear()
        self._set_state(SessionState.IDLE)
        self._active = None

    async def _stop_captures(self, captures) -> None:
        for capture in captures:
            try:
                await capture.stop()
            except Exception as e:
                logger.warning("Stopping %s capture failed: %s", capture.source.value, e)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- routing ---

    def _on_frame(self, active: _ActiveSession, frame: AudioFrame) -> None:
        if active is not self._active:
            return
        level = rms_level(frame.samples)
        for listener in self._level_listeners:
            try:
                listener(frame.source, level)
            except Exception:
                logger.exception("Level listener failed")
        if not active.routing:
            return
        if frame.source == Source.SYSTEM:
            active.echo.add_render_audio(frame)
        buffer = active.buffers[frame.source]
        buffer.push(frame)
        if buffer.has_enough():
            chunk = buffer.flush()
            if self._state == SessionState.RECORDING:
                self._forward(active, chunk)

    def _forward(self, active: _ActiveSession, chunk: AudioFrame) -> None:
        samples = chunk.samples
        if chunk.source == Source.MIC:
            samples = active.echo.process_capture_with_sync(chunk)
        active.provider.send_audio(samples, chunk.source)

    def _drain_buffers(self, active: _ActiveSession, forward: bool) -> None:
        for source in (Source.SYSTEM, Source.MIC):
            chunk = active.buffers[source].flush(force=True)
            if chunk is not None and forward:
                self._forward(active, chunk)

    def _on_segment(self, active: _ActiveSession, segment: TranscriptSegment) -> None:
        if active is not self._active:
            logger.debug("Segment %s arrived after session end; ignored", segment.id)
            return
        if segment.is_final:
            active.segments.append(segment)
        for listener in list(self._transcript_listeners):
            try:
                listener(segment)
            except Exception:
                logger.exception("Transcript listener failed")
        if (
            segment.is_final
            and active.callouts is not None
            and self._state in (SessionState.RECORDING, SessionState.PAUSED)
        ):
            active.callouts.observe(segment)

    def _emit_callout(self, callout: Callout) -> None:
        for listener in list(self._callout_listeners):
            try:
                listener(callout)
            except Exception:
                logger.exception("Callout listener failed")


def create_recording_session(settings: Settings | None = None, whisper_model=None) -> RecordingSession:
    """RecordingSession wired to the configured provider, capture devices, store and LLM."""
    settings = settings or get_settings()
    store = create_transcript_store(settings)
    llm = WorkersAIClient(settings)

    def capture_factory():
        # sounddevice loads PortAudio at import time
        from copilot.audio.capture import create_capture_sources

        return create_capture_sources(settings)

    def callout_factory(session_id: str) -> CalloutScheduler | None:
        if not settings.CALLOUTS_ENABLED:
            return None
        if not llm.configured:
            logger.info("LLM not configured; callouts disabled for session %s", session_id)
            return None
        return CalloutScheduler(SuggestionGenerator(llm), StoreContextRetriever(store), session_id=session_id)

    notes = NoteGenerator(llm, store) if settings.NOTES_ENABLED and llm.configured else None
    return RecordingSession(
        provider_factory=lambda: create_transcription_provider(settings, whisper_model=whisper_model),
        capture_factory=capture_factory,
        echo_factory=lambda: EchoSynchronizer(create_echo_canceller(settings)),
        callout_factory=callout_factory,
        store=store,
        note_generator=notes,
        sample_rate=settings.SAMPLE_RATE,
        min_chunk_ms=settings.MIN_CHUNK_MS,
        flush_grace_sec=settings.FLUSH_GRACE_SEC,
    )
