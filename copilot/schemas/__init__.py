"""API request/response schemas."""
from .recording import (
    EchoStatsModel,
    RecordingStatusResponse,
    StartRecordingRequest,
    StartRecordingResponse,
    StopRecordingResponse,
)

__all__ = [
    "EchoStatsModel",
    "RecordingStatusResponse",
    "StartRecordingRequest",
    "StartRecordingResponse",
    "StopRecordingResponse",
]
