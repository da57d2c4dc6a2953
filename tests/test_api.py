from fastapi.testclient import TestClient

from conftest import FakeCapture, FakeProvider, FakeStore
from copilot.audio.aec import PassthroughEchoCanceller
from copilot.audio.echo_sync import EchoSynchronizer
from copilot.audio.frames import Source
from copilot.main import create_app
from copilot.session.recording import RecordingSession


def _factory(fail_source=None, store=None):
    def build(settings):
        log: list[str] = []
        return RecordingSession(
            provider_factory=lambda: FakeProvider(log, fail_source=fail_source),
            capture_factory=lambda: (FakeCapture(Source.MIC, log), FakeCapture(Source.SYSTEM, log)),
            echo_factory=lambda: EchoSynchronizer(PassthroughEchoCanceller()),
            store=store or FakeStore(log),
            sample_rate=48000,
            min_chunk_ms=50,
            flush_grace_sec=0.0,
        )

    return build


def test_health():
    with TestClient(create_app(_factory())) as client:
        assert client.get("/health").json() == {"status": "ok"}


def test_recording_lifecycle():
    store = FakeStore()
    with TestClient(create_app(_factory(store=store))) as client:
        status = client.get("/api/recording").json()
        assert status["state"] == "idle"
        assert status["session_id"] is None

        resp = client.post("/api/recording/start", json={"title": "Design review"})
        assert resp.status_code == 200
        session_id = resp.json()["session_id"]
        assert resp.json()["state"] == "recording"

        assert client.post("/api/recording/start").status_code == 409

        paused = client.post("/api/recording/pause").json()
        assert paused["state"] == "paused"
        assert paused["echo_stats"]["sync_rate"] == 0.0
        assert client.post("/api/recording/resume").json()["state"] == "recording"

        stopped = client.post("/api/recording/stop")
        assert stopped.status_code == 200
        assert stopped.json()["session_id"] == session_id
        assert stopped.json()["state"] == "idle"

        assert client.post("/api/recording/stop").status_code == 409
        assert client.post("/api/recording/pause").status_code == 409

    assert store.records[0].metadata["title"] == "Design review"


def test_start_failure_is_503_and_stays_idle():
    with TestClient(create_app(_factory(fail_source=Source.MIC))) as client:
        resp = client.post("/api/recording/start")
        assert resp.status_code == 503
        assert client.get("/api/recording").json()["state"] == "idle"


def test_discard():
    store = FakeStore()
    with TestClient(create_app(_factory(store=store))) as client:
        client.post("/api/recording/start")
        assert client.post("/api/recording/discard").json()["state"] == "idle"
    assert store.records == []


def test_events_socket_sends_current_state():
    with TestClient(create_app(_factory())) as client:
        with client.websocket_connect("/ws/events") as ws:
            event = ws.receive_json()
            assert event == {"type": "state", "state": "idle", "session_id": None}
