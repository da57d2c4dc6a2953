import asyncio

import numpy as np
import pytest

from conftest import FakeProvider
from copilot.audio.frames import Source
from copilot.errors import ProviderConnectError
from copilot.transcription.base import ChannelState, TranscriptSegment


def test_send_before_connect_is_a_noop():
    provider = FakeProvider()
    provider.send_audio(np.zeros(10, dtype=np.float32), Source.MIC)
    assert provider.sent == []
    assert provider.channel_state(Source.MIC) == ChannelState.IDLE


def test_connect_opens_both_channels():
    async def scenario():
        provider = FakeProvider()
        await provider.connect()
        provider.send_audio(np.zeros(10, dtype=np.float32), Source.MIC)
        provider.send_audio(np.zeros(20, dtype=np.float32), Source.SYSTEM)
        return provider

    provider = asyncio.run(scenario())
    assert provider.channel_state(Source.MIC) == ChannelState.OPEN
    assert provider.channel_state(Source.SYSTEM) == ChannelState.OPEN
    assert provider.sent == [(Source.MIC, 10), (Source.SYSTEM, 20)]


def test_one_channel_failing_closes_the_other():
    async def scenario():
        provider = FakeProvider(fail_source=Source.SYSTEM)
        with pytest.raises(ProviderConnectError):
            await provider.connect()
        provider.send_audio(np.zeros(10, dtype=np.float32), Source.MIC)
        return provider

    provider = asyncio.run(scenario())
    assert "provider.close:mic" in provider.log
    assert provider.channel_state(Source.MIC) == ChannelState.CLOSED
    assert provider.channel_state(Source.SYSTEM) == ChannelState.CLOSED
    assert provider.sent == []


def test_connect_timeout_raises_and_leaves_channels_closed():
    async def scenario():
        provider = FakeProvider(open_delay=1.0, connect_timeout=0.05)
        with pytest.raises(ProviderConnectError):
            await provider.connect()
        return provider

    provider = asyncio.run(scenario())
    assert all(provider.channel_state(s) == ChannelState.CLOSED for s in Source)


def test_send_errors_are_not_raised():
    async def scenario():
        provider = FakeProvider(send_error=True)
        await provider.connect()
        provider.send_audio(np.zeros(10, dtype=np.float32), Source.MIC)

    asyncio.run(scenario())


def test_disconnect_closes_both_channels_even_when_close_fails():
    async def scenario():
        provider = FakeProvider(close_error=True)
        await provider.connect()
        await provider.disconnect()
        provider.send_audio(np.zeros(10, dtype=np.float32), Source.MIC)
        return provider

    provider = asyncio.run(scenario())
    assert all(provider.channel_state(s) == ChannelState.CLOSED for s in Source)
    assert provider.sent == []


def test_interims_share_id_with_their_final():
    provider = FakeProvider()
    received: list[TranscriptSegment] = []
    provider.on_transcript(received.append)

    provider.deliver(Source.SYSTEM, "what is", is_final=False)
    provider.deliver(Source.SYSTEM, "what is the", is_final=False)
    provider.deliver(Source.SYSTEM, "what is the budget?", is_final=True)
    provider.deliver(Source.SYSTEM, "next", is_final=False)
    provider.deliver(Source.MIC, "hello", is_final=True)

    ids = [s.id for s in received]
    assert ids == ["system-1", "system-1", "system-1", "system-2", "mic-1"]
    assert [s.is_final for s in received[:3]] == [False, False, True]


def test_final_is_delivered_exactly_once():
    provider = FakeProvider()
    received = []
    provider.on_transcript(received.append)

    final = TranscriptSegment(
        id="mic-1", text="done", timestamp_ms=0.0, source=Source.MIC, confidence=0.9, is_final=True
    )
    provider._emit(final)
    provider._emit(final)
    late_interim = TranscriptSegment(
        id="mic-1", text="do", timestamp_ms=0.0, source=Source.MIC, confidence=0.9, is_final=False
    )
    provider._emit(late_interim)
    assert received == [final]


def test_listener_failure_does_not_block_other_listeners():
    provider = FakeProvider()
    received = []

    def broken(segment):
        raise RuntimeError("listener bug")

    provider.on_transcript(broken)
    provider.on_transcript(received.append)
    provider.deliver(Source.MIC, "still delivered")
    assert len(received) == 1


def test_confidence_is_clamped():
    provider = FakeProvider()
    segment = provider._build_segment(Source.MIC, " hi ", is_final=True, confidence=1.7)
    assert segment.confidence == 1.0
    assert segment.text == "hi"
