"""Transcription: dual-channel speech-to-text providers (streaming and batched)."""
from __future__ import annotations

from copilot.config import Settings, get_settings

from .base import (
    BaseDualStreamProvider,
    ChannelState,
    CredentialProvider,
    DualStreamProvider,
    TranscriptSegment,
    TranscriptWord,
)
from .assemblyai import AssemblyAIStreamingProvider
from .batched import (
    BatchedTranscriptionProvider,
    BatchResult,
    BatchTranscriber,
    HostedBatchTranscriber,
    LocalWhisperTranscriber,
)
from .credentials import HostedTokenProvider
from .streaming import StreamingTranscriptionProvider


def create_transcription_provider(
    settings: Settings | None = None,
    credential_provider: CredentialProvider | None = None,
    whisper_model=None,
) -> DualStreamProvider:
    """
    New provider per session, picked by TRANSCRIPTION_PROVIDER.
    streaming: STREAMING_VENDOR picks Deepgram (hosted token provider when
    USE_HOSTED_TOKENS) or AssemblyAI (API key).
    batched: BATCH_BACKEND=hosted (backend HTTP) or local (faster-whisper).
    """
    settings = settings or get_settings()
    if settings.TRANSCRIPTION_PROVIDER == "batched":
        if settings.BATCH_BACKEND == "local":
            return BatchedTranscriptionProvider(LocalWhisperTranscriber(model=whisper_model), name="whisper-batched")
        return BatchedTranscriptionProvider(HostedBatchTranscriber(), name="hosted-batched")
    if settings.STREAMING_VENDOR == "assemblyai":
        return AssemblyAIStreamingProvider()
    if credential_provider is None and settings.USE_HOSTED_TOKENS:
        credential_provider = HostedTokenProvider()
    return StreamingTranscriptionProvider(credential_provider=credential_provider)


__all__ = [
    "AssemblyAIStreamingProvider",
    "BaseDualStreamProvider",
    "BatchedTranscriptionProvider",
    "BatchResult",
    "BatchTranscriber",
    "ChannelState",
    "CredentialProvider",
    "DualStreamProvider",
    "HostedBatchTranscriber",
    "HostedTokenProvider",
    "LocalWhisperTranscriber",
    "StreamingTranscriptionProvider",
    "TranscriptSegment",
    "TranscriptWord",
    "create_transcription_provider",
]
