"""
Schemas for the recording control API.

POST /api/recording/start|stop|pause|resume|discard, GET /api/recording.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class StartRecordingRequest(BaseModel):
    """Request body for POST /api/recording/start. Body is optional."""

    title: str | None = Field(None, description="Meeting title stored with the transcript")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata passed to persistence")


class StartRecordingResponse(BaseModel):
    session_id: str
    state: str


class EchoStatsModel(BaseModel):
    total: int
    aligned: int
    missed: int
    sync_rate: float = Field(..., ge=0.0, le=100.0, description="Percent of mic chunks aligned with render audio")
    buffer_size: int = Field(..., description="Render reference window length (frames)")


class RecordingStatusResponse(BaseModel):
    state: str
    session_id: str | None = None
    segment_count: int = 0
    echo_stats: EchoStatsModel | None = None


class StopRecordingResponse(BaseModel):
    session_id: str
    state: str
    segment_count: int
    started_at: float
    ended_at: float | None = None
