"""Application configuration. Loads from env vars."""
import logging
import os
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Audio: float32 mono internally, PCM 16-bit on the wire
    SAMPLE_RATE: int = 48000
    CHANNELS: int = 1
    CAPTURE_BLOCK_MS: int = 20  # driver callback cadence
    MIN_CHUNK_MS: int = 50  # streaming backend rejects shorter chunks
    MIC_DEVICE: str = ""  # empty = default input
    LOOPBACK_DEVICE: str = "BlackHole"  # name substring of the loopback input

    # Echo cancellation: align mic capture with recently rendered system audio
    AEC_ENABLED: bool = True
    AEC_LOOKBACK_MS: float = 500.0
    AEC_TOLERANCE_MS: float = 300.0
    AEC_MAX_ITEMS: int = 50
    AEC_FILTER_LENGTH: int = 256  # NLMS taps
    AEC_STEP_SIZE: float = 0.1
    AEC_BLOCK_SIZE: int = 32  # samples per weight update

    # Transcription backend: "streaming" (Deepgram or AssemblyAI live) | "batched" (3 s windows)
    TRANSCRIPTION_PROVIDER: Literal["streaming", "batched"] = "streaming"
    STREAMING_VENDOR: Literal["deepgram", "assemblyai"] = "deepgram"
    CONNECT_TIMEOUT_SEC: float = 10.0

    # Deepgram live streaming
    DEEPGRAM_API_KEY: str = ""
    DEEPGRAM_URL: str = "wss://api.deepgram.com/v1/listen"
    DEEPGRAM_MODEL: str = "nova-2"
    DEEPGRAM_LANGUAGE: str = "en"
    DEEPGRAM_KEEPALIVE_SEC: float = 5.0
    STREAM_SEND_QUEUE_SIZE: int = 100  # chunks; ~5 s at 50 ms

    # AssemblyAI real-time streaming (STREAMING_VENDOR=assemblyai)
    ASSEMBLYAI_API_KEY: str = ""
    ASSEMBLYAI_URL: str = "wss://api.assemblyai.com/v2/realtime/ws"

    # Hosted backend: short-lived Deepgram tokens and batch transcription
    USE_HOSTED_TOKENS: bool = False
    BACKEND_BASE_URL: str = "http://localhost:3001"
    BACKEND_TIMEOUT_SEC: float = 15.0

    # Batched provider
    BATCH_BACKEND: Literal["hosted", "local"] = "hosted"
    BATCH_WINDOW_SEC: float = 3.0
    BATCH_MIN_SECONDS: float = 1.0  # skip windows shorter than this
    BATCH_MAX_BUFFER_SEC: float = 30.0  # oldest audio dropped beyond this

    # Local Whisper (when BATCH_BACKEND=local)
    LOCAL_WHISPER_MODEL: str = "base"  # base | small | medium | large-v3
    LOCAL_WHISPER_DEVICE: Literal["cpu", "cuda"] = "cpu"
    LOCAL_WHISPER_COMPUTE_TYPE: Literal["int8", "float16"] = "int8"
    LOCAL_WHISPER_BEAM_SIZE: int = 5

    # Recording session
    FLUSH_GRACE_SEC: float = 1.5  # wait for trailing finals after disconnect
    NOTES_ENABLED: bool = True
    NOTES_MIN_SEGMENTS: int = 2

    # Callouts: question detection + debounce
    CALLOUTS_ENABLED: bool = True
    CALLOUT_DEBOUNCE_SEC: float = 5.0
    CALLOUT_MIN_RESPONSE_WORDS: int = 3  # mic final with this many words cancels
    CALLOUT_WINDOW_SIZE: int = 20
    CALLOUT_MAX_EXCERPTS: int = 3
    CALLOUT_CONTEXT_TIMEOUT_SEC: float = 2.0
    CALLOUT_MAX_TOKENS: int = 300

    # LLM: Cloudflare Workers AI text generation (callouts and notes)
    CLOUDFLARE_ACCOUNT_ID: str = ""
    CLOUDFLARE_API_TOKEN: str = ""
    LLM_CF_MODEL: str = "@cf/meta/llama-3.1-8b-instruct"
    LLM_TIMEOUT_SEC: float = 30.0
    NOTES_MAX_TOKENS: int = 2048

    # Session transcripts: one JSON file per finished session
    TRANSCRIPT_SAVE_ENABLED: bool = True
    TRANSCRIPT_DIR: str = "./transcripts"

    # API server (copilot entry point)
    HOST: str = "127.0.0.1"
    PORT: int = 8765

    # Logging: level (DEBUG, INFO, WARNING, ERROR); empty LOG_FILE = console only
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # e.g. "logs/copilot.log"

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()


_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    """Root logger: console always, plus LOG_FILE when set. Idempotent."""
    settings = settings or get_settings()
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    formatter = logging.Formatter(_LOG_FORMAT)

    if not any(getattr(h, "_copilot", False) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._copilot = True  # type: ignore[attr-defined]
        root.addHandler(console)

    log_path = os.path.abspath(settings.LOG_FILE) if settings.LOG_FILE else None
    # Other file handlers on root (host, test runner) do not count
    if log_path and not any(getattr(h, "baseFilename", None) == log_path for h in root.handlers):
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
