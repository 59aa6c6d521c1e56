#!/usr/bin/env python3
"""
Connected Mode Data Model

Immutable records shared by the orchestrator, the turn segmenter and the
downstream hand-off. Prosody values are clamped on construction so anything
the remote channel sends ends up in range.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Tuple


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


class ConversationPhase(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    RESPONDING = "responding"
    ERROR = "error"


@dataclass(frozen=True)
class ConversationState:
    """One orchestrator state; `reason` is only set for the error phase."""
    phase: ConversationPhase
    reason: Optional[str] = None

    @classmethod
    def error(cls, reason: str) -> "ConversationState":
        return cls(ConversationPhase.ERROR, reason)

    @property
    def is_active(self) -> bool:
        return self.phase not in (ConversationPhase.IDLE, ConversationPhase.ERROR)

    def __str__(self) -> str:
        if self.phase is ConversationPhase.ERROR:
            return f"error({self.reason})"
        return self.phase.value


IDLE = ConversationState(ConversationPhase.IDLE)
LISTENING = ConversationState(ConversationPhase.LISTENING)
TRANSCRIBING = ConversationState(ConversationPhase.TRANSCRIBING)
ANALYZING = ConversationState(ConversationPhase.ANALYZING)
RESPONDING = ConversationState(ConversationPhase.RESPONDING)


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class EmotionTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass(frozen=True)
class ProsodyData:
    """Vocal affect for a stretch of audio."""
    arousal: float = 0.5    # 0.0 (calm) to 1.0 (excited)
    valence: float = 0.0    # -1.0 (negative) to 1.0 (positive)
    energy: float = 0.5     # 0.0 (low) to 1.0 (high)
    events: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "arousal", _clamp(self.arousal, 0.0, 1.0))
        object.__setattr__(self, "valence", _clamp(self.valence, -1.0, 1.0))
        object.__setattr__(self, "energy", _clamp(self.energy, 0.0, 1.0))
        object.__setattr__(self, "events", tuple(str(e) for e in self.events))


@dataclass(frozen=True)
class ProsodySnapshot:
    transcript: str
    prosody: ProsodyData
    assistant_text: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ConversationTurn:
    """A finalized unit of user speech. Never mutated; replies replace the record."""
    user_transcript: str
    prosody_snapshot: Optional[ProsodySnapshot] = None
    assistant_response: Optional[str] = None
    duration: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class LiveCaptionState:
    partial_text: str = ""
    is_finalized: bool = False
    confidence: float = 1.0
    word_count: int = 0
    speaking_rate_wpm: float = 0.0


@dataclass(frozen=True)
class EmotionStripState:
    arousal: float = 0.5
    valence: float = 0.0
    energy: float = 0.5
    trend: EmotionTrend = EmotionTrend.STABLE
    last_update: datetime = field(default_factory=datetime.now)

    def as_prosody(self, events: Iterable[str] = ()) -> ProsodyData:
        return ProsodyData(arousal=self.arousal, valence=self.valence,
                           energy=self.energy, events=tuple(events))


@dataclass(frozen=True)
class AudioBlock:
    """Raw little-endian 16-bit mono samples at the hardware rate."""
    data: bytes
    sample_rate: int


def count_words(text: str) -> int:
    return len(text.split())
