"""
Audio capture sources: microphone and system loopback via sounddevice (PortAudio).

PortAudio invokes the stream callback on its own thread. The callback only copies
the block, downmixes, stamps it with a monotonic capture time and hands the frame
to the asyncio loop with call_soon_threadsafe. Buffers, the echo window and every
other session structure are touched on the loop thread only.

System audio needs a loopback input device (e.g. BlackHole on macOS); it is looked
up by name substring (LOOPBACK_DEVICE). The mic uses MIC_DEVICE or the default input.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import numpy as np
import sounddevice as sd

from copilot.audio.frames import AudioFrame, Source, resample_linear, to_mono
from copilot.config import Settings, get_settings

logger = logging.getLogger(__name__)

FrameCallback = Callable[[AudioFrame], None]


class AudioCaptureSource(ABC):
    """One capture device feeding one logical source."""

    def __init__(self, source: Source) -> None:
        self._source = source

    @property
    def source(self) -> Source:
        return self._source

    @abstractmethod
    async def start(self, on_frame: FrameCallback) -> None:
        """Open the device and begin delivering frames on the running loop."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivering frames and release the device. Safe to call twice."""
        ...


def find_input_device(name: str) -> int | None:
    """Index of the first input device whose name contains `name`; None for default."""
    if not name:
        return None
    for i, dev in enumerate(sd.query_devices()):
        if name.lower() in str(dev["name"]).lower() and dev["max_input_channels"] > 0:
            logger.info("Using input device %s: %s", i, dev["name"])
            return i
    raise RuntimeError(f"Input device not found: {name!r}")


class SoundDeviceCapture(AudioCaptureSource):
    """sounddevice InputStream, float32, resampled to SAMPLE_RATE when the device differs."""

    def __init__(
        self,
        source: Source,
        device_name: str = "",
        sample_rate: int | None = None,
        block_ms: int | None = None,
    ) -> None:
        super().__init__(source)
        settings = get_settings()
        self._device_name = device_name
        self._sample_rate = sample_rate or settings.SAMPLE_RATE
        self._block_ms = block_ms or settings.CAPTURE_BLOCK_MS
        self._stream: sd.InputStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_frame: FrameCallback | None = None
        self._device_rate = self._sample_rate

    def _callback(self, indata: np.ndarray, frames: int, time_info: Any, status: sd.CallbackFlags) -> None:
        """PortAudio thread. Copy, downmix and marshal to the loop; nothing else."""
        if status:
            logger.debug("%s capture status: %s", self._source.value, status)
        loop = self._loop
        if loop is None or self._on_frame is None:
            return
        samples = to_mono(indata.copy())
        if self._device_rate != self._sample_rate:
            samples = resample_linear(samples, self._device_rate, self._sample_rate)
        frame = AudioFrame(source=self._source, samples=samples, timestamp_ms=time.monotonic() * 1000.0)
        try:
            loop.call_soon_threadsafe(self._deliver, frame)
        except RuntimeError:
            # loop closed while the stream was still draining
            pass

    def _deliver(self, frame: AudioFrame) -> None:
        if self._on_frame is not None and self._stream is not None:
            self._on_frame(frame)

    async def start(self, on_frame: FrameCallback) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._on_frame = on_frame
        device = find_input_device(self._device_name)
        info = sd.query_devices(device, kind="input") if device is not None else sd.query_devices(kind="input")
        channels = max(1, min(2, int(info["max_input_channels"])))
        self._device_rate = int(info["default_samplerate"]) if self._source == Source.SYSTEM else self._sample_rate
        blocksize = max(1, self._device_rate * self._block_ms // 1000)
        stream = sd.InputStream(
            device=device,
            samplerate=self._device_rate,
            channels=channels,
            dtype="float32",
            blocksize=blocksize,
            callback=self._callback,
        )
        stream.start()
        self._stream = stream
        logger.info(
            "%s capture started (%sHz, %sch, %sms blocks)",
            self._source.value, self._device_rate, channels, self._block_ms,
        )

    async def stop(self) -> None:
        stream = self._stream
        self._stream = None
        self._on_frame = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as e:
            logger.warning("%s capture close failed: %s", self._source.value, e)
        logger.info("%s capture stopped", self._source.value)


def create_capture_sources(settings: Settings | None = None) -> tuple[AudioCaptureSource, AudioCaptureSource]:
    """(mic, system) capture sources from settings."""
    settings = settings or get_settings()
    mic = SoundDeviceCapture(Source.MIC, device_name=settings.MIC_DEVICE, sample_rate=settings.SAMPLE_RATE)
    system = SoundDeviceCapture(Source.SYSTEM, device_name=settings.LOOPBACK_DEVICE, sample_rate=settings.SAMPLE_RATE)
    return mic, system
