#!/usr/bin/env python3
"""
Conversation Orchestrator

Drives one live conversation: captures microphone audio, fans it out to the
dialogue and prosody channels, segments the user's speech into turns and
keeps the UI-facing state (conversation state, live caption, emotion strip,
turn list).

Everything runs on one event loop. Channel messages, channel closures,
capture failures and the silence timer never mutate state directly: they post
events into a single queue drained by one consumer task. Every event carries
the session generation it was produced in; events from an earlier session are
discarded, so a late timer or a dying socket can never touch a newer session.

States:
    idle -> listening -> transcribing -> analyzing -> listening
                     \\-> responding -> listening
    any active state -> error(reason);   stop / kill switch -> idle
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from .audio.batcher import AudioBatcher
from .audio.capture import AudioCaptureSource
from .audio.resampler import resample
from .channels.base_channel import ChannelConnection
from .channels.events import AssistantReply, ChannelError, ProsodyUpdate, ReplyPhase, TranscriptUpdate
from .config import AUDIO_CONFIG, AudioConfig
from .errors import (AudioCaptureFailedError, ConnectedModeError, ProsodyAnalysisFailedError,
                     TranscriptionFailedError)
from .models import (ANALYZING, IDLE, LISTENING, RESPONDING, TRANSCRIBING, AudioBlock,
                     ChannelState, ConversationPhase, ConversationState, ConversationTurn,
                     EmotionStripState, EmotionTrend, LiveCaptionState, ProsodyData, count_words)
from .segmenter import TurnSegmenter

logger = logging.getLogger(__name__)

PARTIAL_CONFIDENCE = 0.9
TREND_THRESHOLD = 0.05

_P = ConversationPhase
_TRANSITIONS = {
    _P.IDLE: {_P.LISTENING, _P.ERROR},
    _P.LISTENING: {_P.TRANSCRIBING, _P.ANALYZING, _P.RESPONDING, _P.ERROR, _P.IDLE},
    _P.TRANSCRIBING: {_P.ANALYZING, _P.LISTENING, _P.RESPONDING, _P.ERROR, _P.IDLE},
    _P.ANALYZING: {_P.LISTENING, _P.RESPONDING, _P.ERROR, _P.IDLE},
    _P.RESPONDING: {_P.LISTENING, _P.TRANSCRIBING, _P.ANALYZING, _P.ERROR, _P.IDLE},
    _P.ERROR: {_P.IDLE, _P.LISTENING, _P.ERROR},
}


class InvalidConversationTransition(RuntimeError):
    pass


# Events posted to the orchestrator queue

@dataclass(frozen=True)
class _ChannelMessage:
    generation: int
    channel: str
    event: Any


@dataclass(frozen=True)
class _ChannelClosed:
    generation: int
    channel: str
    error: ConnectedModeError
    will_reconnect: bool


@dataclass(frozen=True)
class _ChannelStateChanged:
    generation: int
    channel: str
    state: ChannelState


@dataclass(frozen=True)
class _SilenceTimeout:
    generation: int


@dataclass(frozen=True)
class _CaptureFailed:
    generation: int
    error: AudioCaptureFailedError


class ConversationOrchestrator:
    """Owns the conversation state machine and every UI-facing value."""

    def __init__(self,
                 dialogue: ChannelConnection,
                 prosody: ChannelConnection,
                 capture: AudioCaptureSource,
                 token_client,
                 batcher: Optional[AudioBatcher] = None,
                 segmenter: Optional[TurnSegmenter] = None,
                 config: AudioConfig = AUDIO_CONFIG,
                 handoff=None):
        """
        Args:
            dialogue: Transcription / reply channel (never auto-reconnects)
            prosody: Vocal affect channel (reconnects on its own)
            capture: Microphone source
            token_client: Object with async fetch_dialogue_token() / fetch_prosody_token()
            batcher: Audio batcher; its gate is bound to "any channel open"
            segmenter: Turn segmenter
            config: Audio policy constants
            handoff: Optional ConversationHandoff run after a graceful stop
        """
        self.dialogue = dialogue
        self.prosody = prosody
        self.capture = capture
        self.token_client = token_client
        self.config = config
        self.batcher = batcher or AudioBatcher(config.max_buffer_bytes)
        if self.batcher.gate is None:
            self.batcher.gate = self._any_channel_open
        self.segmenter = segmenter or TurnSegmenter(config)
        self.handoff = handoff

        self._state = IDLE
        self._caption = LiveCaptionState()
        self._emotion = EmotionStripState()
        self._latest_prosody: Optional[ProsodyData] = None
        self._turns: List[ConversationTurn] = []
        self._error_message: Optional[str] = None

        self._generation = 0
        self._starting: Optional[object] = None
        self._session_open = False
        self._reply_active = False
        self._reply_text = ""
        self._revisable_turn_id: Optional[str] = None
        self._input_paused = False

        self._events: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._tick_tasks: List[asyncio.Task] = []

        self._on_state = None
        self._on_caption = None
        self._on_emotion = None
        self._on_turns = None
        self._on_error = None

        # Stats
        self.total_sessions = 0
        self.total_stale_events = 0
        self.total_audio_blocks = 0
        self.total_paused_blocks = 0

        for channel in (dialogue, prosody):
            channel.set_callbacks(
                on_message=lambda event, name=channel.name: self._post(
                    _ChannelMessage(self._generation, name, event)),
                on_state_change=lambda state, name=channel.name: self._post(
                    _ChannelStateChanged(self._generation, name, state)),
                on_closed=lambda error, will_reconnect, name=channel.name: self._post(
                    _ChannelClosed(self._generation, name, error, will_reconnect)),
            )

    # ------------------------------------------------------------------
    # Observable state

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def live_caption(self) -> LiveCaptionState:
        return self._caption

    @property
    def emotion_strip(self) -> EmotionStripState:
        return self._emotion

    @property
    def turns(self) -> Tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def connection_status(self) -> str:
        dialogue = "Dialogue ✅" if self.dialogue.is_open else "Dialogue ❌"
        if self.prosody.is_open:
            prosody = "Prosody ✅"
        elif self.prosody.is_reconnecting:
            prosody = "Prosody 🔄"
        else:
            prosody = "Prosody ❌"
        return f"{dialogue} | {prosody}"

    def set_callbacks(self,
                      on_state: Optional[Callable[[ConversationState], None]] = None,
                      on_caption: Optional[Callable[[LiveCaptionState], None]] = None,
                      on_emotion: Optional[Callable[[EmotionStripState], None]] = None,
                      on_turns: Optional[Callable[[Tuple[ConversationTurn, ...]], None]] = None,
                      on_error: Optional[Callable[[str], None]] = None) -> None:
        """Register observers; each receives an immutable snapshot."""
        self._on_state = on_state
        self._on_caption = on_caption
        self._on_emotion = on_emotion
        self._on_turns = on_turns
        self._on_error = on_error

    # ------------------------------------------------------------------
    # Commands

    async def start_conversation(self) -> bool:
        """
        Fetch credentials, open both channels, then start capture.

        Returns:
            bool: True when the conversation is listening. On any failure both
                  channels and capture are torn down and the state is error(reason).
        """
        if self._starting is not None:
            logger.warning("start_conversation ignored: a start is already in progress")
            return False
        if self._state.is_active:
            logger.warning(f"start_conversation ignored while {self._state}")
            return False

        attempt = object()
        self._starting = attempt
        try:
            if self._state.phase is _P.ERROR or self._session_open:
                await self._shutdown(graceful=True)
            self._generation += 1
            generation = self._generation
            self._begin_session()
            logger.info(f"Starting conversation (session {generation})")

            try:
                await self._connect_channels(generation)
                if generation != self._generation:
                    return False
                await self.capture.start(self._on_audio_block, self._on_capture_error)
            except Exception as e:
                if generation != self._generation:
                    logger.info(f"Start of session {generation} superseded: {e}")
                    return False
                logger.error(f"Failed to start conversation: {e}")
                await self._shutdown(graceful=True)
                self._report_error(str(e))
                self._set_state(ConversationState.error(str(e)))
                return False

            if generation != self._generation:
                self.capture.stop()
                return False

            self._session_open = True
            self.total_sessions += 1
            loop = asyncio.get_running_loop()
            self._tick_tasks = [
                loop.create_task(self._batch_loop(generation)),
                loop.create_task(self._emotion_loop(generation)),
            ]
            self._set_state(LISTENING)
            logger.info(f"Conversation started: {self.connection_status}")
            return True
        finally:
            if self._starting is attempt:
                self._starting = None

    async def stop_conversation(self) -> None:
        """Graceful stop: normal closure on both channels, capture off, idle.

        Safe from any state. If the session recorded turns they are handed
        to the summarizer afterwards.
        """
        hand_off = self._session_open and bool(self._turns)
        self._generation += 1
        self._session_open = False
        self._starting = None
        await self._shutdown(graceful=True)
        self._set_state(IDLE)
        logger.info("Conversation stopped")

        if hand_off and self.handoff is not None:
            await self._hand_off(tuple(self._turns))

    def kill_switch(self) -> None:
        """
        Emergency teardown. Synchronous: sockets are dropped without a closing
        handshake, every timer and task is cancelled and the caption and
        emotion strip return to their defaults. Turns are never handed off.
        """
        self._generation += 1
        self._session_open = False
        self._starting = None
        self._cancel_tasks()
        self._events = None
        self.dialogue.abort()
        self.prosody.abort()
        self.capture.stop()
        self._reset_session_values()

        self._caption = LiveCaptionState()
        self._emotion = EmotionStripState()
        self._latest_prosody = None
        self._error_message = None
        self._set_state(IDLE)
        self._emit(self._on_caption, self._caption)
        self._emit(self._on_emotion, self._emotion)
        logger.warning("Kill switch engaged: conversation torn down")

    # ------------------------------------------------------------------
    # Session lifecycle

    def _begin_session(self) -> None:
        self._turns = []
        self._caption = LiveCaptionState()
        self._emotion = EmotionStripState()
        self._latest_prosody = None
        self._error_message = None
        self._reset_session_values()
        self._events = asyncio.Queue()
        self._consumer_task = asyncio.get_running_loop().create_task(
            self._consume(self._events))

    async def _connect_channels(self, generation: int) -> None:
        tokens = await asyncio.gather(self.token_client.fetch_dialogue_token(),
                                      self.token_client.fetch_prosody_token(),
                                      return_exceptions=True)
        for result in tokens:
            if isinstance(result, BaseException):
                raise result
        dialogue_token, prosody_token = tokens
        if generation != self._generation:
            return
        self.dialogue.apply_hints(dialogue_token.config)
        self.prosody.apply_hints(prosody_token.config)

        results = await asyncio.gather(self.dialogue.connect(dialogue_token.token),
                                       self.prosody.connect(prosody_token.token),
                                       return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _shutdown(self, graceful: bool) -> None:
        self._cancel_tasks()
        self._events = None
        self.capture.stop()
        if graceful:
            await asyncio.gather(self.dialogue.close(), self.prosody.close())
        else:
            self.dialogue.abort()
            self.prosody.abort()
        self._reset_session_values()

    def _reset_session_values(self) -> None:
        self.segmenter.reset()
        self.batcher.clear()
        self._reply_active = False
        self._reply_text = ""
        self._revisable_turn_id = None
        self._input_paused = False

    def _cancel_tasks(self) -> None:
        self.segmenter.cancel_timer()
        current = _current_task()
        tasks = self._tick_tasks + ([self._consumer_task] if self._consumer_task else [])
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tick_tasks = []
        self._consumer_task = None

    async def _hand_off(self, turns: Tuple[ConversationTurn, ...]) -> None:
        try:
            await self.handoff.hand_off(turns)
        except Exception as e:
            logger.error(f"Conversation hand-off failed: {e}")
            self._report_error(f"Could not save conversation: {e}")

    # ------------------------------------------------------------------
    # Producers (run on the event loop, never mutate conversation state)

    def _post(self, event) -> None:
        if self._events is None:
            return
        self._events.put_nowait(event)

    def _on_audio_block(self, block: AudioBlock) -> None:
        self.total_audio_blocks += 1
        if self._input_paused:
            self.total_paused_blocks += 1
            return
        pcm = resample(block.data, block.sample_rate, self.config.sample_rate,
                       self.config.resample_tolerance)
        self.batcher.append(pcm)

    def _on_capture_error(self, error: AudioCaptureFailedError) -> None:
        self._post(_CaptureFailed(self._generation, error))

    def _on_silence(self, generation: int) -> None:
        self._post(_SilenceTimeout(generation))

    def _any_channel_open(self) -> bool:
        return self.dialogue.is_open or self.prosody.is_open

    async def _batch_loop(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.config.batch_interval)
            chunk = self.batcher.flush()
            if not chunk:
                continue
            logger.debug(f"Sending {len(chunk)} byte audio batch")
            self.dialogue.send(chunk)
            self.prosody.send(chunk)

    async def _emotion_loop(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.config.emotion_refresh_interval)
            self._refresh_emotion_strip()

    # ------------------------------------------------------------------
    # Single consumer

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            if event.generation != self._generation:
                self.total_stale_events += 1
                logger.debug(f"Discarding stale event {type(event).__name__} "
                             f"from session {event.generation}")
                continue
            try:
                await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}")

    async def _handle(self, event) -> None:
        if isinstance(event, _ChannelStateChanged):
            logger.debug(f"{event.channel} channel {event.state.value}: {self.connection_status}")
        elif isinstance(event, _ChannelClosed):
            await self._handle_channel_closed(event)
        elif isinstance(event, _CaptureFailed):
            if self._state.is_active:
                await self._fail(event.error)
        elif not self._state.is_active:
            logger.debug(f"Ignoring {type(event).__name__} while {self._state}")
        elif isinstance(event, _SilenceTimeout):
            self._check_turn_boundary()
        elif isinstance(event, _ChannelMessage):
            await self._handle_channel_message(event.channel, event.event)

    async def _handle_channel_message(self, channel: str, event: Any) -> None:
        if isinstance(event, TranscriptUpdate):
            self._handle_transcript(event)
        elif isinstance(event, ProsodyUpdate):
            self._latest_prosody = event.prosody
        elif isinstance(event, AssistantReply):
            self._handle_reply(event)
        elif isinstance(event, ChannelError):
            error = event.error
            if isinstance(error, (ProsodyAnalysisFailedError, TranscriptionFailedError)):
                logger.warning(f"{channel} channel reported: {error}")
                self._report_error(str(error))
            else:
                await self._fail(error)

    async def _handle_channel_closed(self, event: _ChannelClosed) -> None:
        if not self._state.is_active:
            return
        other = self.prosody if event.channel == self.dialogue.name else self.dialogue
        if other.is_open:
            # Degraded but still useful: keep capturing for the remaining channel
            if event.will_reconnect:
                logger.warning(f"{event.error}; {other.name} channel still open, reconnecting")
            else:
                logger.warning(f"{event.error}; continuing on the {other.name} channel")
                self._report_error(str(event.error))
            return
        logger.error(f"{event.error}; no channel left open")
        await self._fail(event.error)

    async def _fail(self, error: ConnectedModeError) -> None:
        reason = str(error)
        logger.error(f"Conversation failed: {reason}")
        self._cancel_ticks()
        self.segmenter.cancel_timer()
        self.capture.stop()
        await asyncio.gather(self.dialogue.close(), self.prosody.close())
        self._report_error(reason)
        self._set_state(ConversationState.error(reason))

    def _cancel_ticks(self) -> None:
        for task in self._tick_tasks:
            if not task.done():
                task.cancel()
        self._tick_tasks = []

    # ------------------------------------------------------------------
    # Turn handling

    def _handle_transcript(self, update: TranscriptUpdate) -> None:
        if update.is_final:
            self._handle_final_transcript(update)
            return

        self._revisable_turn_id = None
        self.segmenter.on_partial(update.text)
        confidence = update.confidence if update.confidence is not None else PARTIAL_CONFIDENCE
        self._update_caption(update.text, False, confidence)
        if self._state.phase is _P.LISTENING:
            self._set_state(TRANSCRIBING)
        generation = self._generation
        self.segmenter.arm(asyncio.get_running_loop(), lambda: self._on_silence(generation))

    def _handle_final_transcript(self, update: TranscriptUpdate) -> None:
        confidence = update.confidence if update.confidence is not None else 1.0
        if not self.segmenter.has_partial and self._revisable_turn_id is not None:
            # The silence timer already closed this utterance; take the final wording
            self._revise_last_turn(update.text)
            self._update_caption(update.text, True, confidence)
            return
        self._update_caption(update.text, True, confidence)
        self._complete_turn(self.segmenter.finalize(update.text, self._current_prosody()))

    def _check_turn_boundary(self) -> None:
        text = self.segmenter.last_partial_text
        rate = self.segmenter.speaking_rate(count_words(text))
        turn = self.segmenter.check_boundary(self._current_prosody())
        if turn is None:
            return
        self._update_caption(text, True, 1.0, rate)
        self._complete_turn(turn)
        self._revisable_turn_id = turn.id

    def _complete_turn(self, turn: Optional[ConversationTurn]) -> None:
        if turn is None:
            return
        self._set_state(ANALYZING)
        self._turns.append(turn)
        self._emit(self._on_turns, self.turns)
        self._set_state(RESPONDING if self._reply_active else LISTENING)

    def _revise_last_turn(self, text: str) -> None:
        text = text.strip()
        for index in range(len(self._turns) - 1, -1, -1):
            turn = self._turns[index]
            if turn.id != self._revisable_turn_id:
                continue
            snapshot = turn.prosody_snapshot
            if snapshot is not None:
                snapshot = dataclasses.replace(snapshot, transcript=text)
            self._turns[index] = dataclasses.replace(turn, user_transcript=text,
                                                     prosody_snapshot=snapshot)
            self._emit(self._on_turns, self.turns)
            break
        self._revisable_turn_id = None

    def _handle_reply(self, reply: AssistantReply) -> None:
        if reply.phase is ReplyPhase.STARTED:
            self._reply_active = True
            self._reply_text = ""
            self._pause_input()
            self._set_state(RESPONDING)
        elif reply.phase is ReplyPhase.AUDIO_DONE:
            if self._input_paused:
                self._input_paused = False
                logger.info("Assistant finished speaking; microphone input resumed")
        elif reply.phase is ReplyPhase.DELTA:
            if not self._reply_active:
                self._reply_active = True
                self._set_state(RESPONDING)
            self._reply_text += reply.text
        elif reply.phase is ReplyPhase.DONE:
            text = reply.text or self._reply_text
            self._reply_active = False
            self._reply_text = ""
            self._attach_reply(text)
            self._set_state(TRANSCRIBING if self.segmenter.has_partial else LISTENING)

    def _pause_input(self) -> None:
        """Half duplex: the assistant's own voice must not reach the dialogue input."""
        if self._input_paused:
            return
        self._input_paused = True
        self.batcher.clear()
        self.dialogue.send_event({"type": "input_audio_buffer.clear"})
        logger.info("Assistant responding; microphone input paused")

    def _attach_reply(self, text: str) -> None:
        text = text.strip()
        if not text or not self._turns:
            logger.debug("Assistant reply finished with no turn to attach to")
            return
        turn = self._turns[-1]
        if turn.assistant_response:
            logger.debug("Latest turn already has a reply; not overwriting it")
            return
        snapshot = turn.prosody_snapshot
        if snapshot is not None:
            snapshot = dataclasses.replace(snapshot, assistant_text=text)
        self._turns[-1] = dataclasses.replace(turn, assistant_response=text,
                                              prosody_snapshot=snapshot)
        logger.info(f"Assistant reply attached to turn {turn.id}: {text}")
        self._emit(self._on_turns, self.turns)

    # ------------------------------------------------------------------
    # Derived UI state

    def _update_caption(self, text: str, is_final: bool, confidence: float,
                        rate: Optional[float] = None) -> None:
        words = count_words(text)
        if rate is None:
            rate = self.segmenter.speaking_rate(words)
        self._caption = LiveCaptionState(
            partial_text=text,
            is_finalized=is_final,
            confidence=confidence,
            word_count=words,
            speaking_rate_wpm=rate,
        )
        self._emit(self._on_caption, self._caption)

    def _current_prosody(self) -> ProsodyData:
        events = self._latest_prosody.events if self._latest_prosody is not None else ()
        return self._emotion.as_prosody(events)

    def _refresh_emotion_strip(self) -> None:
        prosody = self._latest_prosody
        if prosody is None:
            return
        previous = self._emotion
        if (prosody.arousal, prosody.valence, prosody.energy) == \
                (previous.arousal, previous.valence, previous.energy):
            return
        self._emotion = EmotionStripState(
            arousal=prosody.arousal,
            valence=prosody.valence,
            energy=prosody.energy,
            trend=emotion_trend(previous, prosody),
            last_update=datetime.now(),
        )
        self._emit(self._on_emotion, self._emotion)

    # ------------------------------------------------------------------
    # Helpers

    def _set_state(self, new_state: ConversationState) -> None:
        if new_state == self._state:
            return
        if new_state.phase not in _TRANSITIONS[self._state.phase]:
            raise InvalidConversationTransition(f"{self._state} -> {new_state} is not allowed")
        old_state = self._state
        self._state = new_state
        logger.info(f"Conversation state: {old_state} -> {new_state}")
        self._emit(self._on_state, new_state)

    def _report_error(self, message: str) -> None:
        self._error_message = message
        self._emit(self._on_error, message)

    def _emit(self, callback, value) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as e:
            logger.error(f"Error in orchestrator observer callback: {e}")

    def get_stats(self) -> dict:
        return {
            "state": str(self._state),
            "generation": self._generation,
            "turns": len(self._turns),
            "connection_status": self.connection_status,
            "total_sessions": self.total_sessions,
            "total_stale_events": self.total_stale_events,
            "total_audio_blocks": self.total_audio_blocks,
            "total_paused_blocks": self.total_paused_blocks,
            "batcher": self.batcher.get_stats(),
            "segmenter": self.segmenter.get_stats(),
            "dialogue": self.dialogue.get_stats(),
            "prosody": self.prosody.get_stats(),
            "capture": self.capture.get_stats(),
        }


def emotion_trend(previous: EmotionStripState, current: ProsodyData) -> EmotionTrend:
    """Compare overall affect intensity between two readings."""
    def level(arousal, valence, energy):
        return (arousal + (valence + 1.0) / 2.0 + energy) / 3.0

    delta = (level(current.arousal, current.valence, current.energy)
             - level(previous.arousal, previous.valence, previous.energy))
    if delta > TREND_THRESHOLD:
        return EmotionTrend.INCREASING
    if delta < -TREND_THRESHOLD:
        return EmotionTrend.DECREASING
    return EmotionTrend.STABLE


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
