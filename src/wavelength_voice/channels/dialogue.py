#!/usr/bin/env python3
"""
Dialogue Channel

Realtime speech/dialogue connection. Streams PCM16 audio as base64
`input_audio_buffer.append` events and decodes transcript and assistant reply
events. Loss of this channel is reported, never retried: the orchestrator
decides what happens to the conversation.
"""

import logging
from typing import Any, Dict, List, Optional

from ..config import DEFAULT_INSTRUCTIONS
from ..errors import ChannelConnectionFailedError, RemoteServiceError, TranscriptionFailedError
from .base_channel import ChannelConnection, b64
from .events import AssistantReply, ChannelError, ReplyPhase, TranscriptUpdate
from .reconnect import NoReconnect

logger = logging.getLogger(__name__)

_PARTIAL_EVENTS = {"conversation.item.input_audio_transcription.delta"}
_FINAL_EVENTS = {"conversation.item.input_audio_transcription.completed"}
_IGNORED_EVENTS = {
    "session.created", "session.updated", "input_audio_buffer.committed",
    "input_audio_buffer.speech_started", "input_audio_buffer.speech_stopped",
    "response.content_part.done", "response.output_item.done",
    "rate_limits.updated", "response.audio.delta",
}


class DialogueChannel(ChannelConnection):
    """Speech transcription and conversational reply channel."""

    name = "dialogue"

    def __init__(self,
                 url: str,
                 voice: str = "verse",
                 transcription_model: str = "whisper-1",
                 instructions: str = DEFAULT_INSTRUCTIONS,
                 vad_threshold: float = 0.5,
                 prefix_padding_ms: int = 300,
                 silence_duration_ms: int = 200,
                 **kwargs):
        kwargs.setdefault("reconnect_policy", NoReconnect())
        super().__init__(url, **kwargs)
        self.voice = voice
        self.transcription_model = transcription_model
        self.instructions = instructions
        self.vad_threshold = vad_threshold
        self.prefix_padding_ms = prefix_padding_ms
        self.silence_duration_ms = silence_duration_ms

        # Incremental transcription deltas for the item being spoken
        self._partial_item: Optional[str] = None
        self._partial_text = ""

        # Stats
        self.total_partials = 0
        self.total_finals = 0
        self.total_replies = 0

    def build_headers(self, credential: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "OpenAI-Beta": "realtime=v1",
        }

    def initial_messages(self) -> List[Dict[str, Any]]:
        return [{
            "type": "session.update",
            "session": {
                "modalities": ["text", "audio"],
                "instructions": self.instructions,
                "voice": self.voice,
                "input_audio_format": "pcm16",
                "output_audio_format": "pcm16",
                "input_audio_transcription": {"model": self.transcription_model},
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": self.vad_threshold,
                    "prefix_padding_ms": self.prefix_padding_ms,
                    "silence_duration_ms": self.silence_duration_ms,
                },
            },
        }]

    def encode_audio(self, audio: bytes) -> Dict[str, Any]:
        return {"type": "input_audio_buffer.append", "audio": b64(audio)}

    def check_handshake(self, data: Dict[str, Any]) -> None:
        if data.get("type") == "error":
            raise ChannelConnectionFailedError(f"dialogue channel refused: {_error_message(data)}")

    def handle_message(self, data: Dict[str, Any]) -> None:
        event_type = data.get("type", "")

        # Generic transcript fields take precedence over typed events
        final_text = data.get("final_transcript")
        if isinstance(final_text, str):
            self._emit_transcript(final_text, True, data)
            return
        if event_type in _FINAL_EVENTS:
            self._partial_item = None
            self._partial_text = ""
            self._emit_transcript(str(data.get("transcript", "")), True, data)
            return
        if event_type in _PARTIAL_EVENTS:
            item_id = data.get("item_id")
            if item_id != self._partial_item:
                self._partial_item = item_id
                self._partial_text = ""
            self._partial_text += str(data.get("delta", ""))
            self._emit_transcript(self._partial_text, False, data)
            return
        partial_text = data.get("transcript")
        if isinstance(partial_text, str) and not event_type.startswith("response."):
            self._emit_transcript(partial_text, False, data)
            return

        if event_type in ("response.created", "response.output_item.added"):
            self._emit_message(AssistantReply(ReplyPhase.STARTED))
        elif event_type == "response.audio_transcript.delta":
            self._emit_message(AssistantReply(ReplyPhase.DELTA, str(data.get("delta", ""))))
        elif event_type == "response.audio_transcript.done":
            self.total_replies += 1
            self._emit_message(AssistantReply(ReplyPhase.DONE, str(data.get("transcript", ""))))
        elif event_type in ("response.audio.done", "response.done"):
            # response.done also ends text-only replies that never produce audio
            self._emit_message(AssistantReply(ReplyPhase.AUDIO_DONE))
        elif event_type == "conversation.item.input_audio_transcription.failed":
            self._emit_message(ChannelError(TranscriptionFailedError(_error_message(data))))
        elif event_type == "error":
            message = _error_message(data)
            logger.error(f"[dialogue] remote error: {message}")
            self._emit_message(ChannelError(RemoteServiceError(message)))
        elif event_type in _IGNORED_EVENTS:
            logger.debug(f"[dialogue] {event_type}")
        else:
            logger.debug(f"[dialogue] unhandled event: {event_type}")

    def _emit_transcript(self, text: str, is_final: bool, data: Dict[str, Any]) -> None:
        text = text.strip()
        if not text:
            return
        if is_final:
            self.total_finals += 1
            logger.info(f"[dialogue] final transcript: {text}")
        else:
            self.total_partials += 1
            logger.debug(f"[dialogue] partial transcript: {text}")
        self._emit_message(TranscriptUpdate(text, is_final, _confidence(data)))

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update({
            "total_partials": self.total_partials,
            "total_finals": self.total_finals,
            "total_replies": self.total_replies,
        })
        return stats


def _error_message(data: Dict[str, Any]) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or "unknown error")
    if error:
        return str(error)
    return str(data.get("message", "unknown error"))


def _confidence(data: Dict[str, Any]) -> Optional[float]:
    value = data.get("confidence")
    if isinstance(value, (int, float)):
        return float(value)
    return None
