"""Audio pipeline: frames, per-source buffering, echo alignment and cancellation."""
from .aec import EchoCanceller, NLMSEchoCanceller, PassthroughEchoCanceller, create_echo_canceller
from .echo_sync import EchoStats, EchoSynchronizer
from .frames import AudioFrame, Source, float32_to_pcm16, rms_level
from .sample_buffer import SampleBuffer

__all__ = [
    "AudioFrame",
    "Source",
    "float32_to_pcm16",
    "rms_level",
    "SampleBuffer",
    "EchoCanceller",
    "NLMSEchoCanceller",
    "PassthroughEchoCanceller",
    "create_echo_canceller",
    "EchoStats",
    "EchoSynchronizer",
]
