"""Tests for microphone capture."""
import numpy as np
import pytest

from conftest import FakeCapture
from wavelength_voice.audio import capture as capture_module
from wavelength_voice.audio.capture import JACKAudioCapture, float_to_pcm16
from wavelength_voice.errors import AudioCaptureFailedError


def test_float_to_pcm16_clips_and_scales():
    pcm = np.frombuffer(float_to_pcm16(np.array([0.0, 0.5, 1.5, -2.0], dtype=np.float32)), dtype="<i2")
    assert pcm.tolist() == [0, 16383, 32767, -32767]


@pytest.mark.asyncio
async def test_microphone_is_exclusive():
    first, second = FakeCapture(), FakeCapture()
    await first.start(lambda block: None)

    with pytest.raises(AudioCaptureFailedError, match="held by another"):
        await second.start(lambda block: None)

    first.stop()
    await second.start(lambda block: None)
    assert second.is_running
    second.stop()


@pytest.mark.asyncio
async def test_blocks_and_failures_reach_the_callbacks():
    blocks, errors = [], []
    source = FakeCapture()
    await source.start(blocks.append, errors.append)

    source.emit(b"\x01\x00\x02\x00", sample_rate=48000)
    source.break_device()

    assert blocks[0].sample_rate == 48000
    assert str(errors[0]) == "Audio capture failed: device unplugged"

    source.stop()
    source.emit(b"\x00\x00")
    assert len(blocks) == 1


@pytest.mark.asyncio
async def test_jack_capture_without_jack(monkeypatch):
    monkeypatch.setattr(capture_module, "JACK_AVAILABLE", False)
    source = JACKAudioCapture()

    with pytest.raises(AudioCaptureFailedError):
        await source.start(lambda block: None)

    assert not source.is_running
    assert capture_module._microphone_holder is None


def test_jack_capture_stop_is_idempotent():
    source = JACKAudioCapture()
    source.stop()
    source.stop()
    assert source.get_stats()["running"] is False
