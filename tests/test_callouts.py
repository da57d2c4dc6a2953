import asyncio

from copilot.audio.frames import Source
from copilot.callouts.context import Excerpt
from copilot.callouts.generator import Suggestion
from copilot.callouts.questions import is_question, word_count
from copilot.callouts.scheduler import CalloutScheduler, ScheduledTask
from copilot.transcription.base import TranscriptSegment

DEBOUNCE = 0.05


class FakeGenerator:
    def __init__(self, suggestion=None, fail=False, delay=0.0):
        self.calls = []
        self.suggestion = suggestion or Suggestion(response="Say it ships Friday.", relevant_info=["QA done"])
        self.fail = fail
        self.delay = delay
        self.cancelled = False

    async def generate(self, question, context):
        self.calls.append((question, context))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.fail:
            raise RuntimeError("llm 500")
        return self.suggestion


class FakeRetriever:
    def __init__(self, excerpts=None, delay=0.0):
        self.excerpts = excerpts or []
        self.delay = delay

    async def retrieve(self, query, limit):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.excerpts


_counter = {"n": 0}


def seg(source, text, is_final=True):
    _counter["n"] += 1
    return TranscriptSegment(
        id=f"{source.value}-{_counter['n']}",
        text=text,
        timestamp_ms=0.0,
        source=source,
        confidence=0.9,
        is_final=is_final,
    )


def _scheduler(generator, **kwargs):
    kwargs.setdefault("debounce_sec", DEBOUNCE)
    kwargs.setdefault("min_response_words", 3)
    kwargs.setdefault("window_size", 20)
    kwargs.setdefault("context_timeout", 0.5)
    scheduler = CalloutScheduler(generator, session_id="abc123", **kwargs)
    callouts = []
    scheduler.on_callout(callouts.append)
    return scheduler, callouts


def test_question_detection():
    assert is_question("Is it ready?")
    assert is_question("what about the rollout plan")
    assert is_question("Can you explain the delay")
    assert is_question("Tell me more about pricing")
    assert not is_question("We shipped it yesterday.")
    assert not is_question("")
    assert word_count("  one  two three ") == 3


def test_last_question_wins():
    async def scenario():
        generator = FakeGenerator()
        scheduler, callouts = _scheduler(generator)
        scheduler.observe(seg(Source.SYSTEM, "What is the budget?"))
        await asyncio.sleep(DEBOUNCE / 2)
        scheduler.observe(seg(Source.SYSTEM, "When does it ship?"))
        await asyncio.sleep(DEBOUNCE * 3)
        return generator, callouts

    generator, callouts = asyncio.run(scenario())
    assert [q for q, _ in generator.calls] == ["When does it ship?"]
    assert len(callouts) == 1
    callout = callouts[0]
    assert callout.question == "When does it ship?"
    assert callout.session_id == "abc123"
    assert callout.suggested_response == "Say it ships Friday."
    assert callout.relevant_info == ["QA done"]


def test_substantive_mic_answer_cancels():
    async def scenario():
        generator = FakeGenerator()
        scheduler, callouts = _scheduler(generator)
        scheduler.observe(seg(Source.SYSTEM, "When does it ship?"))
        scheduler.observe(seg(Source.MIC, "next Friday probably"))
        assert scheduler.pending is None
        await asyncio.sleep(DEBOUNCE * 3)
        return generator, callouts

    generator, callouts = asyncio.run(scenario())
    assert generator.calls == []
    assert callouts == []


def test_short_mic_reply_does_not_cancel():
    async def scenario():
        generator = FakeGenerator()
        scheduler, callouts = _scheduler(generator)
        scheduler.observe(seg(Source.SYSTEM, "When does it ship?"))
        scheduler.observe(seg(Source.MIC, "uh huh"))
        assert scheduler.pending is not None
        await asyncio.sleep(DEBOUNCE * 3)
        return callouts

    assert len(asyncio.run(scenario())) == 1


def test_interims_are_ignored():
    async def scenario():
        generator = FakeGenerator()
        scheduler, callouts = _scheduler(generator)
        scheduler.observe(seg(Source.SYSTEM, "What is the budget?", is_final=False))
        await asyncio.sleep(DEBOUNCE * 3)
        return scheduler, generator

    scheduler, generator = asyncio.run(scenario())
    assert generator.calls == []
    assert len(scheduler.window) == 0


def test_mic_questions_do_not_trigger():
    async def scenario():
        generator = FakeGenerator()
        scheduler, _ = _scheduler(generator)
        scheduler.observe(seg(Source.MIC, "What should I say?"))
        await asyncio.sleep(DEBOUNCE * 3)
        return generator

    assert asyncio.run(scenario()).calls == []


def test_generator_failure_produces_no_callout():
    async def scenario():
        generator = FakeGenerator(fail=True)
        scheduler, callouts = _scheduler(generator)
        scheduler.observe(seg(Source.SYSTEM, "Why is it late?"))
        await asyncio.sleep(DEBOUNCE * 3)
        return scheduler, generator, callouts

    scheduler, generator, callouts = asyncio.run(scenario())
    assert len(generator.calls) == 1
    assert callouts == []
    assert scheduler.pending is None


def test_not_a_question_for_the_user_produces_no_callout():
    class Declining(FakeGenerator):
        async def generate(self, question, context):
            self.calls.append((question, context))
            return None

    async def scenario():
        generator = Declining()
        scheduler, callouts = _scheduler(generator)
        scheduler.observe(seg(Source.SYSTEM, "How are you?"))
        await asyncio.sleep(DEBOUNCE * 3)
        return generator, callouts

    generator, callouts = asyncio.run(scenario())
    assert len(generator.calls) == 1
    assert callouts == []


def test_cancel_during_generation_stops_it():
    async def scenario():
        generator = FakeGenerator(delay=1.0)
        scheduler, callouts = _scheduler(generator)
        scheduler.observe(seg(Source.SYSTEM, "Who owns the migration?"))
        await asyncio.sleep(DEBOUNCE * 2)
        assert generator.calls
        scheduler.observe(seg(Source.MIC, "I will own it"))
        await asyncio.sleep(0.02)
        return generator, callouts

    generator, callouts = asyncio.run(scenario())
    assert generator.cancelled
    assert callouts == []


def test_context_includes_window_and_past_meetings():
    async def scenario():
        generator = FakeGenerator()
        retriever = FakeRetriever([Excerpt(title="Q3 planning", text="Budget is 40k", session_id="old")])
        scheduler, callouts = _scheduler(generator, retriever=retriever)
        scheduler.observe(seg(Source.MIC, "Let's talk money"))
        scheduler.observe(seg(Source.SYSTEM, "What is the budget?"))
        await asyncio.sleep(DEBOUNCE * 3)
        return generator, callouts

    generator, callouts = asyncio.run(scenario())
    context = generator.calls[0][1]
    assert "Recent conversation:\nYou: Let's talk money\nThem: What is the budget?" in context
    assert 'From "Q3 planning": Budget is 40k' in context
    assert [s.type for s in callouts[0].sources] == ["meeting", "past_meeting"]


def test_slow_retrieval_is_skipped():
    async def scenario():
        generator = FakeGenerator()
        retriever = FakeRetriever([Excerpt(title="old", text="never seen")], delay=1.0)
        scheduler, callouts = _scheduler(generator, retriever=retriever, context_timeout=0.02)
        scheduler.observe(seg(Source.SYSTEM, "Any blockers?"))
        await asyncio.sleep(DEBOUNCE + 0.1)
        return generator, callouts

    generator, callouts = asyncio.run(scenario())
    assert "never seen" not in generator.calls[0][1]
    assert len(callouts) == 1


def test_window_keeps_most_recent_finals():
    async def scenario():
        scheduler, _ = _scheduler(FakeGenerator(), window_size=3)
        for i in range(5):
            scheduler.observe(seg(Source.MIC, f"line {i}"))
        return scheduler

    scheduler = asyncio.run(scenario())
    assert [s.text for s in scheduler.window] == ["line 2", "line 3", "line 4"]


def test_reset_cancels_and_clears():
    async def scenario():
        generator = FakeGenerator()
        scheduler, callouts = _scheduler(generator)
        scheduler.observe(seg(Source.SYSTEM, "Is that final?"))
        scheduler.reset()
        await asyncio.sleep(DEBOUNCE * 3)
        return scheduler, generator, callouts

    scheduler, generator, callouts = asyncio.run(scenario())
    assert scheduler.pending is None
    assert len(scheduler.window) == 0
    assert generator.calls == []
    assert callouts == []


def test_scheduled_task_cancel_before_fire():
    async def scenario():
        ran = []

        async def work():
            ran.append(True)

        handle = ScheduledTask(asyncio.get_running_loop(), 0.01, work)
        handle.cancel()
        await asyncio.sleep(0.03)
        return handle, ran

    handle, ran = asyncio.run(scenario())
    assert handle.cancelled
    assert not handle.fired
    assert ran == []
