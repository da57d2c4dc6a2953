"""
FastAPI app: control surface for the meeting copilot.

HTTP:
  POST /api/recording/start    -> {session_id, state}; 503 when recording cannot start
  POST /api/recording/stop     -> session summary (transcript persisted, notes in background)
  POST /api/recording/pause | resume | discard
  GET  /api/recording          -> state, session id, echo alignment stats
  GET  /health
Invalid transitions (e.g. pause while idle) are 409.

WebSocket /ws/events streams JSON events:
{ "type": "transcript" | "callout" | "state" | "level", "timestamp": unix_ms, ... }
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import Body, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from copilot.config import Settings, configure_logging, get_settings
from copilot.errors import InvalidTransitionError, RecordingStartError
from copilot.events import EventHub
from copilot.schemas.recording import (
    EchoStatsModel,
    RecordingStatusResponse,
    StartRecordingRequest,
    StartRecordingResponse,
    StopRecordingResponse,
)
from copilot.session.recording import RecordingSession, SessionState, create_recording_session
from copilot.transcription.batched import load_whisper_model

logger = logging.getLogger(__name__)

SessionFactory = Callable[[Settings], RecordingSession]


def _default_session_factory(settings: Settings) -> RecordingSession:
    whisper_model = None
    if settings.TRANSCRIPTION_PROVIDER == "batched" and settings.BATCH_BACKEND == "local":
        # Load Whisper model once at startup (shared by every session)
        whisper_model = load_whisper_model()
    return create_recording_session(settings, whisper_model=whisper_model)


def _wire_events(recording: RecordingSession, hub: EventHub) -> None:
    recording.on_transcript(lambda segment: hub.publish("transcript", {"segment": segment.to_dict()}))
    recording.on_callout(lambda callout: hub.publish("callout", {"callout": callout.to_dict()}))
    recording.on_state_change(lambda state, session_id: hub.publish("state", {"state": state.value, "session_id": session_id}))
    recording.on_level(hub.publish_level)


def _status(recording: RecordingSession) -> RecordingStatusResponse:
    stats = recording.echo_stats()
    return RecordingStatusResponse(
        state=recording.state.value,
        session_id=recording.session_id,
        segment_count=len(recording.segments),
        echo_stats=EchoStatsModel(**stats.to_dict()) if stats is not None else None,
    )


def create_app(session_factory: SessionFactory | None = None) -> FastAPI:
    factory = session_factory or _default_session_factory

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(settings)
        app.state.hub = EventHub()
        app.state.recording = factory(settings)
        _wire_events(app.state.recording, app.state.hub)
        yield
        # Shutdown: persist an in-progress recording rather than lose it
        recording: RecordingSession = app.state.recording
        if recording.state in (SessionState.RECORDING, SessionState.PAUSED):
            try:
                await recording.stop()
            except Exception:
                logger.exception("Stopping recording on shutdown failed")
        app.state.recording = None

    app = FastAPI(
        title="Meeting Copilot",
        description="Dual-channel meeting transcription with echo cancellation and live callouts",
        lifespan=lifespan,
    )

    def _recording(request: Request) -> RecordingSession:
        return request.app.state.recording

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/recording", response_model=RecordingStatusResponse)
    async def recording_status(request: Request) -> RecordingStatusResponse:
        return _status(_recording(request))

    @app.post("/api/recording/start", response_model=StartRecordingResponse)
    async def start_recording(
        request: Request,
        body: StartRecordingRequest | None = Body(None),
    ) -> StartRecordingResponse:
        recording = _recording(request)
        metadata = dict(body.metadata) if body else {}
        if body and body.title:
            metadata["title"] = body.title
        try:
            session_id = await recording.start(metadata)
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except RecordingStartError as e:
            logger.warning("Recording could not start: %s", e)
            raise HTTPException(status_code=503, detail=f"Recording could not start: {e}")
        return StartRecordingResponse(session_id=session_id, state=recording.state.value)

    @app.post("/api/recording/stop", response_model=StopRecordingResponse)
    async def stop_recording(request: Request) -> StopRecordingResponse:
        recording = _recording(request)
        try:
            record = await recording.stop()
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return StopRecordingResponse(
            session_id=record.session_id,
            state=recording.state.value,
            segment_count=len(record.segments),
            started_at=record.started_at,
            ended_at=record.ended_at,
        )

    @app.post("/api/recording/pause", response_model=RecordingStatusResponse)
    async def pause_recording(request: Request) -> RecordingStatusResponse:
        recording = _recording(request)
        try:
            recording.pause()
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return _status(recording)

    @app.post("/api/recording/resume", response_model=RecordingStatusResponse)
    async def resume_recording(request: Request) -> RecordingStatusResponse:
        recording = _recording(request)
        try:
            recording.resume()
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return _status(recording)

    @app.post("/api/recording/discard", response_model=RecordingStatusResponse)
    async def discard_recording(request: Request) -> RecordingStatusResponse:
        recording = _recording(request)
        try:
            await recording.discard()
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return _status(recording)

    @app.websocket("/ws/events")
    async def events(websocket: WebSocket) -> None:
        """Push session events as JSON until the client goes away."""
        await websocket.accept()
        hub: EventHub = websocket.app.state.hub
        recording: RecordingSession = websocket.app.state.recording
        queue = hub.subscribe()

        async def pump() -> None:
            while True:
                event = await queue.get()
                await websocket.send_json(event)

        await websocket.send_json({"type": "state", "state": recording.state.value, "session_id": recording.session_id})
        pump_task = asyncio.create_task(pump())
        try:
            # Client messages are ignored; receiving is how a disconnect is noticed
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Event listener disconnected")
        finally:
            pump_task.cancel()
            hub.unsubscribe(queue)

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("copilot.main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
