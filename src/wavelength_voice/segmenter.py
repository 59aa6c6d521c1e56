#!/usr/bin/env python3
"""
Turn Segmenter

Decides where one user utterance ends. Each partial transcript re-arms a
silence timer; when the timer fires the segmenter re-checks that nothing
arrived within the stability threshold before finalizing the turn, so a
brief mid-sentence pause never cuts an utterance in two.

The timer never touches conversation state itself: it only calls the
`on_silence` callback, which the orchestrator uses to post an event into
its own queue.
"""

import asyncio
import logging
import time
from typing import Callable, FrozenSet, Iterable, Optional

from .config import AUDIO_CONFIG, AudioConfig
from .models import ConversationTurn, ProsodyData, ProsodySnapshot, count_words

logger = logging.getLogger(__name__)

Tagger = Callable[[str], Iterable[str]]


class TurnSegmenter:
    """Silence/stability based utterance boundary detection."""

    def __init__(self,
                 config: AudioConfig = AUDIO_CONFIG,
                 clock: Callable[[], float] = time.monotonic,
                 tagger: Optional[Tagger] = None):
        """
        Args:
            config: Audio policy (silence and stability thresholds)
            clock: Monotonic time source, replaceable in tests
            tagger: Optional callable returning topic tags for a finalized transcript
        """
        self.config = config
        self.clock = clock
        self.tagger = tagger

        self.last_partial_text = ""
        self.last_partial_update_time: Optional[float] = None
        self.turn_start_time: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None

        # Stats
        self.total_turns = 0
        self.total_boundary_checks = 0
        self.total_deferred_checks = 0

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    @property
    def has_partial(self) -> bool:
        return bool(self.last_partial_text.strip())

    def on_partial(self, text: str, now: Optional[float] = None) -> None:
        """Record the latest partial transcript and when it arrived."""
        now = self.clock() if now is None else now
        if self.turn_start_time is None:
            self.turn_start_time = now
        self.last_partial_text = text
        self.last_partial_update_time = now

    def arm(self, loop: asyncio.AbstractEventLoop, on_silence: Callable[[], None]) -> None:
        """(Re)arm the silence timer; the previous one is cancelled."""
        self.cancel_timer()
        self._timer = loop.call_later(self.config.silence_threshold, self._fire, on_silence)

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, on_silence: Callable[[], None]) -> None:
        self._timer = None
        try:
            on_silence()
        except Exception as e:
            logger.error(f"Error in silence timer callback: {e}")

    def is_stable(self, now: Optional[float] = None) -> bool:
        """True when no partial arrived within the stability threshold."""
        if self.last_partial_update_time is None:
            return False
        now = self.clock() if now is None else now
        return now - self.last_partial_update_time >= self.config.stability_threshold

    def check_boundary(self, emotion: ProsodyData,
                       now: Optional[float] = None) -> Optional[ConversationTurn]:
        """
        Run the stability re-check after the silence timer fired.

        Returns:
            The finalized turn, or None if a recent update means the speaker
            has not finished (the next partial re-arms the timer)
        """
        now = self.clock() if now is None else now
        self.total_boundary_checks += 1
        if not self.has_partial:
            return None
        if not self.is_stable(now):
            self.total_deferred_checks += 1
            logger.debug(f"Turn boundary deferred: last update "
                         f"{now - self.last_partial_update_time:.3f}s ago")
            return None
        return self.finalize(self.last_partial_text, emotion, now)

    def finalize(self, text: str, emotion: ProsodyData,
                 now: Optional[float] = None) -> Optional[ConversationTurn]:
        """
        Close the current turn with `text`, binding the prosody values current
        at this moment. Resets the segmenter for the next turn.
        """
        now = self.clock() if now is None else now
        text = text.strip()
        duration = self.turn_duration(now)
        self.reset()
        if not text:
            return None

        snapshot = ProsodySnapshot(transcript=text, prosody=emotion,
                                   tags=self._tags(text, emotion))
        turn = ConversationTurn(user_transcript=text, prosody_snapshot=snapshot,
                                duration=duration)
        self.total_turns += 1
        logger.info(f"Turn finalized ({duration:.1f}s, {count_words(text)} words): {text}")
        return turn

    def turn_duration(self, now: Optional[float] = None) -> float:
        if self.turn_start_time is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, now - self.turn_start_time)

    def speaking_rate(self, word_count: int, now: Optional[float] = None) -> float:
        """Words per minute over the current turn; 0 when no time has elapsed."""
        duration = self.turn_duration(now)
        if duration <= 0:
            return 0.0
        return word_count / (duration / 60.0)

    def reset(self) -> None:
        self.cancel_timer()
        self.last_partial_text = ""
        self.last_partial_update_time = None
        self.turn_start_time = None

    def _tags(self, text: str, emotion: ProsodyData) -> FrozenSet[str]:
        tags = set(emotion.events)
        if self.tagger is not None:
            try:
                tags.update(str(tag) for tag in self.tagger(text))
            except Exception as e:
                logger.warning(f"Tagger failed: {e}")
        return frozenset(tags)

    def get_stats(self) -> dict:
        return {
            "total_turns": self.total_turns,
            "total_boundary_checks": self.total_boundary_checks,
            "total_deferred_checks": self.total_deferred_checks,
            "pending_timer": self.has_pending_timer,
        }
