"""
CalloutScheduler: watch finals for questions from the other side and, unless the
user answers on their own within the debounce window, generate a suggested response.

Rules (all on final segments only):
- every final goes into the sliding window (CALLOUT_WINDOW_SIZE, oldest evicted),
- system final that looks like a question: cancel any pending callout, schedule a
  new one CALLOUT_DEBOUNCE_SEC out (last question wins, at most one pending),
- mic final with >= CALLOUT_MIN_RESPONSE_WORDS words: cancel the pending callout;
  shorter mic finals ("yeah", "uh huh") never cancel.

A pending callout is held through one ScheduledTask handle that covers both the
timer and, once it fires, the generation task, so cancel() always stops either.
Retrieval and generation failures are logged and produce no callout.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Iterator

from copilot.audio.frames import Source
from copilot.callouts.context import ContextRetriever, Excerpt
from copilot.callouts.generator import SuggestionGenerator
from copilot.callouts.questions import is_question, word_count
from copilot.config import get_settings
from copilot.transcription.base import TranscriptSegment

logger = logging.getLogger(__name__)

SPEAKER_LABELS = {Source.MIC: "You", Source.SYSTEM: "Them"}


class ScheduledTask:
    """Explicit cancel handle for a delayed coroutine (timer, then the task it starts)."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        factory: Callable[[], Awaitable[None]],
    ) -> None:
        self._loop = loop
        self._factory = factory
        self._task: asyncio.Task | None = None
        self._cancelled = False
        self._timer = loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._task = self._loop.create_task(self._factory())

    @property
    def fired(self) -> bool:
        return self._task is not None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def cancel(self) -> None:
        self._cancelled = True
        self._timer.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()


class SlidingTranscriptWindow:
    """Recent finals from both sources, oldest evicted first. Read-only context."""

    def __init__(self, size: int) -> None:
        self._segments: deque[TranscriptSegment] = deque(maxlen=size)

    @property
    def size(self) -> int:
        return self._segments.maxlen or 0

    def append(self, segment: TranscriptSegment) -> None:
        self._segments.append(segment)

    def clear(self) -> None:
        self._segments.clear()

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self) -> Iterator[TranscriptSegment]:
        return iter(list(self._segments))

    def format(self) -> str:
        return "\n".join(f"{SPEAKER_LABELS[s.source]}: {s.text}" for s in self._segments)


@dataclass
class PendingCallout:
    question: str
    scheduled_at: float  # loop time
    handle: ScheduledTask | None = None


@dataclass
class CalloutSource:
    type: str  # "meeting" | "past_meeting"
    title: str
    excerpt: str


@dataclass
class Callout:
    id: str
    session_id: str
    triggered_at: float  # unix seconds
    question: str
    context: str
    suggested_response: str
    relevant_info: list[str] = field(default_factory=list)
    sources: list[CalloutSource] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


CalloutCallback = Callable[[Callout], None]


class CalloutScheduler:
    def __init__(
        self,
        generator: SuggestionGenerator,
        retriever: ContextRetriever | None = None,
        session_id: str = "",
        debounce_sec: float | None = None,
        min_response_words: int | None = None,
        window_size: int | None = None,
        max_excerpts: int | None = None,
        context_timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self._generator = generator
        self._retriever = retriever
        self._session_id = session_id
        self._debounce_sec = debounce_sec if debounce_sec is not None else settings.CALLOUT_DEBOUNCE_SEC
        self._min_words = min_response_words if min_response_words is not None else settings.CALLOUT_MIN_RESPONSE_WORDS
        self._max_excerpts = max_excerpts if max_excerpts is not None else settings.CALLOUT_MAX_EXCERPTS
        self._context_timeout = context_timeout if context_timeout is not None else settings.CALLOUT_CONTEXT_TIMEOUT_SEC
        self._window = SlidingTranscriptWindow(window_size or settings.CALLOUT_WINDOW_SIZE)
        self._pending: PendingCallout | None = None
        self._callbacks: list[CalloutCallback] = []

    @property
    def pending(self) -> PendingCallout | None:
        return self._pending

    @property
    def window(self) -> SlidingTranscriptWindow:
        return self._window

    def on_callout(self, callback: CalloutCallback) -> None:
        self._callbacks.append(callback)

    def observe(self, segment: TranscriptSegment) -> None:
        """Feed one transcript segment. Must run on the event loop thread."""
        if not segment.is_final:
            return
        self._window.append(segment)
        if segment.source == Source.SYSTEM and is_question(segment.text):
            self._schedule(segment.text)
        elif segment.source == Source.MIC and self._pending is not None and word_count(segment.text) >= self._min_words:
            logger.debug("User answered (%s words); cancelling pending callout", word_count(segment.text))
            self.cancel_pending()

    def _schedule(self, question: str) -> None:
        self.cancel_pending()
        loop = asyncio.get_running_loop()
        pending = PendingCallout(question=question, scheduled_at=loop.time())
        pending.handle = ScheduledTask(loop, self._debounce_sec, lambda: self._run(pending))
        self._pending = pending
        logger.debug("Question detected, callout in %.1fs: %s", self._debounce_sec, question[:60])

    def cancel_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and pending.handle is not None:
            pending.handle.cancel()

    def reset(self) -> None:
        """Cancel any pending callout and clear the window (session stop)."""
        self.cancel_pending()
        self._window.clear()

    async def _retrieve(self, question: str) -> list[Excerpt]:
        if self._retriever is None or self._max_excerpts <= 0:
            return []
        try:
            excerpts = await asyncio.wait_for(
                self._retriever.retrieve(question, self._max_excerpts),
                timeout=self._context_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Context retrieval timed out after %.1fs", self._context_timeout)
            return []
        except Exception as e:
            logger.warning("Context retrieval failed: %s", e)
            return []
        return list(excerpts)[: self._max_excerpts * 2]

    def _assemble_context(self, excerpts: list[Excerpt]) -> tuple[str, list[CalloutSource]]:
        parts: list[str] = []
        sources: list[CalloutSource] = []
        conversation = self._window.format()
        if conversation:
            parts.append(f"Recent conversation:\n{conversation}")
            sources.append(CalloutSource(type="meeting", title="Current conversation", excerpt=conversation[:100]))
        if excerpts:
            lines = [f'- From "{e.title}": {e.text}' for e in excerpts]
            parts.append("From past meetings:\n" + "\n".join(lines))
            for e in excerpts:
                sources.append(CalloutSource(type="past_meeting", title=e.title, excerpt=e.text[:100]))
        return "\n\n".join(parts), sources

    async def _run(self, pending: PendingCallout) -> None:
        try:
            excerpts = await self._retrieve(pending.question)
            context, sources = self._assemble_context(excerpts)
            suggestion = await self._generator.generate(pending.question, context)
        except asyncio.CancelledError:
            logger.debug("Callout cancelled during generation")
            raise
        except Exception as e:
            logger.warning("Callout generation failed: %s", e)
            return
        finally:
            if self._pending is pending:
                self._pending = None

        if suggestion is None:
            logger.debug("No callout for: %s", pending.question[:60])
            return
        callout = Callout(
            id=uuid.uuid4().hex,
            session_id=self._session_id,
            triggered_at=time.time(),
            question=pending.question,
            context=context,
            suggested_response=suggestion.response,
            relevant_info=suggestion.relevant_info,
            sources=sources,
        )
        logger.info("Callout ready: %s", callout.id)
        for callback in list(self._callbacks):
            try:
                callback(callout)
            except Exception:
                logger.exception("Callout listener failed")
