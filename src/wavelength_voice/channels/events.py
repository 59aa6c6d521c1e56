#!/usr/bin/env python3
"""
Decoded inbound channel events handed to the orchestrator.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import ConnectedModeError
from ..models import ProsodyData


@dataclass(frozen=True)
class TranscriptUpdate:
    text: str
    is_final: bool
    confidence: Optional[float] = None


class ReplyPhase(str, Enum):
    STARTED = "started"
    DELTA = "delta"
    DONE = "done"
    AUDIO_DONE = "audio_done"   # assistant finished speaking; the microphone may resume


@dataclass(frozen=True)
class AssistantReply:
    phase: ReplyPhase
    text: str = ""


@dataclass(frozen=True)
class ProsodyUpdate:
    prosody: ProsodyData


@dataclass(frozen=True)
class ChannelError:
    """An error reported by the remote service over an open connection."""
    error: ConnectedModeError
