#!/usr/bin/env python3
"""
Prosody Channel

Streaming vocal-affect connection. Sends PCM16 audio windows and decodes
arousal / valence / energy predictions. This channel is best-effort: it
probes the socket periodically and reconnects on its own after a drop.

Accepted inbound shapes:
    {"predictions": [{"prosody": {...}}]}
    {"prosody": {...}}
    {"prosody": {"predictions": [{"emotions": [{"name": ..., "score": ...}]}]}}
    {"error": "..."}
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ChannelConnectionFailedError, ProsodyAnalysisFailedError
from ..models import ProsodyData
from .base_channel import ChannelConnection, b64
from .events import ChannelError, ProsodyUpdate
from .reconnect import FixedBackoffReconnect

logger = logging.getLogger(__name__)

STREAM_WINDOW_MS = 1500
EVENT_SCORE_THRESHOLD = 0.3

# Emotion names folded into the three affect axes when the service returns
# raw emotion scores instead of axis values.
HIGH_AROUSAL = {"anger", "anxiety", "distress", "excitement", "fear", "horror",
                "surprise (negative)", "surprise (positive)", "ecstasy", "triumph"}
POSITIVE = {"amusement", "calmness", "contentment", "ecstasy", "excitement", "joy",
            "love", "relief", "satisfaction", "triumph", "interest", "gratitude"}
NEGATIVE = {"anger", "anxiety", "disappointment", "distress", "fear", "sadness",
            "shame", "tiredness", "pain", "guilt", "horror", "contempt"}


class ProsodyChannel(ChannelConnection):
    """Vocal affect channel with keepalive probes and automatic reconnect."""

    name = "prosody"

    def __init__(self,
                 url: str,
                 stream_window_ms: int = STREAM_WINDOW_MS,
                 **kwargs):
        kwargs.setdefault("reconnect_policy", FixedBackoffReconnect((2.0, 5.0)))
        kwargs.setdefault("keepalive_interval", 30.0)
        super().__init__(url, **kwargs)
        self.stream_window_ms = stream_window_ms

        # Stats
        self.total_predictions = 0
        self.total_errors = 0

    def build_headers(self, credential: str) -> Dict[str, str]:
        return {"X-Hume-Api-Key": credential}

    def _envelope(self) -> Dict[str, Any]:
        return {
            "models": ["prosody"],
            "stream_window_ms": self.stream_window_ms,
            "raw_text": False,
        }

    def initial_messages(self) -> List[Dict[str, Any]]:
        message = self._envelope()
        message["reset_stream"] = True
        return [message]

    def encode_audio(self, audio: bytes) -> Dict[str, Any]:
        message = self._envelope()
        message["data"] = b64(audio)
        return message

    def apply_hints(self, hints: Dict[str, Any]) -> None:
        """Use the token service's chunkMs as the analysis window."""
        chunk_ms = hints.get("chunkMs")
        if isinstance(chunk_ms, (int, float)) and not isinstance(chunk_ms, bool) and chunk_ms > 0:
            self.stream_window_ms = int(chunk_ms)
            logger.info(f"[prosody] stream window set to {self.stream_window_ms} ms")

    def check_handshake(self, data: Dict[str, Any]) -> None:
        if data.get("error"):
            raise ChannelConnectionFailedError(f"prosody channel refused: {data['error']}")

    def handle_message(self, data: Dict[str, Any]) -> None:
        if data.get("error"):
            self.total_errors += 1
            logger.warning(f"[prosody] analysis error: {data['error']}")
            self._emit_message(ChannelError(ProsodyAnalysisFailedError(str(data["error"]))))
            return

        prosody = parse_prosody(data)
        if prosody is None:
            logger.debug(f"[prosody] no prediction in message: {list(data.keys())}")
            return
        self.total_predictions += 1
        logger.debug(f"[prosody] arousal={prosody.arousal:.2f} valence={prosody.valence:.2f} "
                     f"energy={prosody.energy:.2f} events={list(prosody.events)}")
        self._emit_message(ProsodyUpdate(prosody))

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update({
            "total_predictions": self.total_predictions,
            "total_errors": self.total_errors,
        })
        return stats


def parse_prosody(data: Dict[str, Any]) -> Optional[ProsodyData]:
    """Extract ProsodyData from any accepted inbound shape, or None."""
    block = None
    predictions = data.get("predictions")
    if isinstance(predictions, list) and predictions and isinstance(predictions[0], dict):
        block = predictions[0].get("prosody")
    if block is None:
        block = data.get("prosody")
    if not isinstance(block, dict):
        return None

    if any(key in block for key in ("arousal", "valence", "energy")):
        return ProsodyData(
            arousal=_number(block.get("arousal"), 0.5),
            valence=_number(block.get("valence"), 0.0),
            energy=_number(block.get("energy"), 0.5),
            events=tuple(str(e) for e in block.get("events") or ()),
        )

    nested = block.get("predictions")
    if isinstance(nested, list) and nested and isinstance(nested[0], dict):
        emotions = nested[0].get("emotions")
        if isinstance(emotions, list) and emotions:
            return fold_emotions(emotions)

    if "warning" in block:
        logger.debug(f"[prosody] service warning: {block['warning']}")
    return None


def fold_emotions(emotions: Iterable[Dict[str, Any]]) -> ProsodyData:
    """Reduce named emotion scores to arousal, valence and energy."""
    scores = {}
    for item in emotions:
        if not isinstance(item, dict) or "name" not in item:
            continue
        scores[str(item["name"]).lower()] = _number(item.get("score"), 0.0)
    if not scores:
        return ProsodyData()

    def peak(names):
        return max((scores[n] for n in names if n in scores), default=0.0)

    events = tuple(name for name, score in sorted(scores.items(), key=lambda kv: -kv[1])
                   if score >= EVENT_SCORE_THRESHOLD)
    return ProsodyData(
        arousal=peak(HIGH_AROUSAL),
        valence=peak(POSITIVE) - peak(NEGATIVE),
        energy=max(scores.values()),
        events=events,
    )


def _number(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    return default
