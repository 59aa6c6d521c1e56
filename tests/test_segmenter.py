"""Tests for turn segmentation."""
import asyncio

import pytest

from wavelength_voice.config import AudioConfig
from wavelength_voice.models import ProsodyData
from wavelength_voice.segmenter import TurnSegmenter

CALM = ProsodyData(arousal=0.2, valence=0.4, energy=0.3, events=("sigh",))


def make_segmenter(**kwargs):
    config = AudioConfig(silence_threshold=0.5, stability_threshold=0.4)
    return TurnSegmenter(config, clock=lambda: 0.0, **kwargs)


def test_recent_update_defers_the_boundary():
    segmenter = make_segmenter()
    segmenter.on_partial("I was thinking", now=10.0)
    segmenter.on_partial("I was thinking about", now=10.3)

    # timer armed by the first partial fires at 10.5, only 0.2s after the last update
    assert segmenter.check_boundary(CALM, now=10.5) is None
    assert segmenter.last_partial_text == "I was thinking about"
    assert segmenter.total_deferred_checks == 1


def test_stable_silence_finalizes_exactly_one_turn():
    segmenter = make_segmenter()
    segmenter.on_partial("I was thinking", now=10.0)
    segmenter.on_partial("I was thinking about work", now=11.0)

    turn = segmenter.check_boundary(CALM, now=11.5)

    assert turn is not None
    assert turn.user_transcript == "I was thinking about work"
    assert turn.duration == pytest.approx(1.5)
    assert turn.prosody_snapshot.prosody == CALM
    assert turn.prosody_snapshot.transcript == "I was thinking about work"
    assert segmenter.check_boundary(CALM, now=12.0) is None
    assert segmenter.total_turns == 1


def test_finalize_resets_state():
    segmenter = make_segmenter()
    segmenter.on_partial("hello", now=1.0)
    segmenter.finalize("hello", CALM, now=2.0)

    assert segmenter.last_partial_text == ""
    assert segmenter.last_partial_update_time is None
    assert segmenter.turn_start_time is None
    assert not segmenter.has_partial


def test_finalize_with_empty_text_creates_no_turn():
    segmenter = make_segmenter()
    segmenter.on_partial("  ", now=1.0)
    assert segmenter.finalize("  ", CALM, now=2.0) is None
    assert segmenter.total_turns == 0


def test_snapshot_tags_combine_events_and_tagger():
    segmenter = make_segmenter(tagger=lambda text: ["work"] if "work" in text else [])
    segmenter.on_partial("stressed about work", now=0.0)
    turn = segmenter.finalize("stressed about work", CALM, now=2.0)
    assert turn.prosody_snapshot.tags == frozenset({"sigh", "work"})


def test_failing_tagger_does_not_lose_the_turn():
    def broken(text):
        raise RuntimeError("model unavailable")

    segmenter = make_segmenter(tagger=broken)
    turn = segmenter.finalize("still here", CALM, now=1.0)
    assert turn.user_transcript == "still here"
    assert turn.prosody_snapshot.tags == frozenset({"sigh"})


def test_speaking_rate():
    segmenter = make_segmenter()
    assert segmenter.speaking_rate(5, now=3.0) == 0.0

    segmenter.on_partial("one", now=10.0)
    assert segmenter.speaking_rate(1, now=10.0) == 0.0
    assert segmenter.speaking_rate(30, now=20.0) == pytest.approx(180.0)


@pytest.mark.asyncio
async def test_cancelled_timer_never_fires():
    segmenter = TurnSegmenter(AudioConfig(silence_threshold=0.02, stability_threshold=0.01))
    fired = []
    segmenter.arm(asyncio.get_running_loop(), lambda: fired.append(True))
    assert segmenter.has_pending_timer

    segmenter.cancel_timer()
    await asyncio.sleep(0.05)

    assert fired == []
    assert not segmenter.has_pending_timer


@pytest.mark.asyncio
async def test_mid_sentence_pause_does_not_split_the_turn():
    # Timings are scaled down; what matters is that the pause is shorter than
    # the silence threshold. A literal 600 ms pause would exceed the default
    # 500 ms threshold, so it is expressed relative to the threshold here.
    config = AudioConfig(silence_threshold=0.3, stability_threshold=0.2)
    segmenter = TurnSegmenter(config)
    loop = asyncio.get_running_loop()
    turns = []

    def on_silence():
        turn = segmenter.check_boundary(CALM)
        if turn is not None:
            turns.append(turn)

    async def speak(words):
        for word in words:
            text = f"{segmenter.last_partial_text} {word}".strip()
            segmenter.on_partial(text)
            segmenter.arm(loop, on_silence)
            await asyncio.sleep(0.02)

    await speak(["today", "I", "went", "for", "a", "long"])
    await asyncio.sleep(0.12)  # pause shorter than the silence threshold
    await speak(["walk", "by", "the", "river"])
    assert turns == []

    await asyncio.sleep(0.5)
    assert len(turns) == 1
    assert turns[0].user_transcript == "today I went for a long walk by the river"
