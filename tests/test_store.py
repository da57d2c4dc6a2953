import asyncio
import json

import httpx

from conftest import FakeStore
from copilot.audio.frames import Source
from copilot.callouts.context import StoreContextRetriever, query_keywords
from copilot.config import Settings
from copilot.llm import WorkersAIClient
from copilot.session.notes import NoteGenerator, format_transcript
from copilot.session.store import FileTranscriptStore, NoOpTranscriptStore, SessionRecord, create_transcript_store
from copilot.transcription.base import TranscriptSegment, TranscriptWord


def _segment(n, source, text):
    return TranscriptSegment(
        id=f"{source.value}-{n}",
        text=text,
        timestamp_ms=n * 1000.0,
        source=source,
        confidence=0.9,
        is_final=True,
        words=[TranscriptWord(text=text.split()[0], confidence=0.9, start_ms=0.0, end_ms=100.0)],
    )


def _record(session_id, started_at, texts, title=None):
    segments = [_segment(i + 1, Source.SYSTEM if i % 2 else Source.MIC, t) for i, t in enumerate(texts)]
    metadata = {"title": title} if title else {}
    return SessionRecord(session_id=session_id, started_at=started_at, ended_at=started_at + 60, segments=segments, metadata=metadata)


def test_save_and_load_round_trip(tmp_path):
    store = FileTranscriptStore(str(tmp_path))
    record = _record("s1", 100.0, ["hello team", "hi, what's the plan?"], title="Standup")
    asyncio.run(store.save_session(record))

    data = json.loads((tmp_path / "s1.json").read_text(encoding="utf-8"))
    assert data["segments"][1]["source"] == "system"
    loaded = store.load("s1")
    assert loaded.title == "Standup"
    assert [s.text for s in loaded.segments] == ["hello team", "hi, what's the plan?"]
    assert loaded.segments[0].source == Source.MIC
    assert store.load("missing") is None


def test_search_matches_keyword_newest_first_and_skips_notes(tmp_path):
    store = FileTranscriptStore(str(tmp_path))
    asyncio.run(store.save_session(_record("old", 100.0, ["the budget is tight"])))
    asyncio.run(store.save_session(_record("new", 200.0, ["Budget approved"])))
    asyncio.run(store.save_session(_record("other", 300.0, ["lunch plans"])))
    asyncio.run(store.save_notes("new", {"title": "budget notes"}))

    results = store.search("budget", limit=5)
    assert [r.session_id for r in results] == ["new", "old"]
    assert store.search("budget", limit=1)[0].session_id == "new"
    assert store.search("", limit=5) == []


def test_create_transcript_store_respects_flag(tmp_path):
    disabled = create_transcript_store(Settings(TRANSCRIPT_SAVE_ENABLED=False))
    assert isinstance(disabled, NoOpTranscriptStore)
    enabled = create_transcript_store(Settings(TRANSCRIPT_SAVE_ENABLED=True, TRANSCRIPT_DIR=str(tmp_path)))
    assert isinstance(enabled, FileTranscriptStore)
    assert enabled.directory == str(tmp_path)


def test_store_context_retriever_returns_matching_segments(tmp_path):
    store = FileTranscriptStore(str(tmp_path))
    asyncio.run(store.save_session(_record("q3", 100.0, ["budget is 40k", "ok", "the budget grows"], title="Q3 planning")))

    assert query_keywords("What about the budget?") == ["budget"]
    excerpts = asyncio.run(StoreContextRetriever(store).retrieve("What about the budget?", limit=3))
    assert [(e.title, e.text) for e in excerpts] == [("Q3 planning", "budget is 40k"), ("Q3 planning", "the budget grows")]


def test_notes_skipped_for_short_sessions():
    record = _record("s1", 0.0, ["only one line"])
    generator = NoteGenerator(WorkersAIClient(Settings()), store=FakeStore(), min_segments=2)
    assert asyncio.run(generator.generate(record)) is None


def test_notes_generated_and_saved():
    reply = json.dumps({"title": "Roadmap sync " * 10, "overview": "Planned Q4.", "notesMarkdown": "# Notes"})

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert "[You]: we should ship" in body["messages"][1]["content"]
        return httpx.Response(200, json={"result": {"response": reply}})

    settings = Settings(CLOUDFLARE_ACCOUNT_ID="acct", CLOUDFLARE_API_TOKEN="tok")
    store = FakeStore()
    generator = NoteGenerator(WorkersAIClient(settings, transport=httpx.MockTransport(handler)), store=store, min_segments=2)
    record = _record("s1", 0.0, ["we should ship", "agreed, next week"])

    notes = asyncio.run(generator.generate(record))
    assert notes.overview == "Planned Q4."
    assert len(notes.title) == 60
    assert store.notes["s1"]["notes_markdown"] == "# Notes"
    assert format_transcript(record).splitlines()[1] == "[Them]: agreed, next week"


def test_notes_failure_returns_none():
    settings = Settings(CLOUDFLARE_ACCOUNT_ID="acct", CLOUDFLARE_API_TOKEN="tok")
    client = WorkersAIClient(settings, transport=httpx.MockTransport(lambda r: httpx.Response(502)))
    store = FakeStore()
    generator = NoteGenerator(client, store=store, min_segments=1)
    assert asyncio.run(generator.generate(_record("s1", 0.0, ["hello"]))) is None
    assert store.notes == {}
