#!/usr/bin/env python3
"""
Connected Mode Configuration

Audio policy constants and deployment settings for the live conversation
pipeline. Audio constants are fixed policy knobs; deployment settings come
from environment variables (a local .env file is honoured).
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioConfig:
    """Canonical transport format and turn-detection timing."""
    sample_rate: int = 16000
    channels: int = 1
    bit_depth: int = 16
    silence_threshold: float = 0.5     # seconds without a partial before checking the turn
    stability_threshold: float = 0.4   # quiet time required to trust the turn has ended
    batch_interval: float = 0.5        # seconds between batched audio sends
    max_buffer_bytes: int = 48000      # cap on a single flush
    emotion_refresh_interval: float = 0.25  # emotion strip display cadence (~4 Hz)
    resample_tolerance: float = 0.01

    @property
    def bytes_per_sample(self) -> int:
        return self.bit_depth // 8


AUDIO_CONFIG = AudioConfig()

DEFAULT_INSTRUCTIONS = (
    "You are a warm, trauma-informed counselor. Use OARS techniques. "
    "Keep responses brief and gentle. Speak with empathy and understanding. "
    "Always respond in English."
)


@dataclass(frozen=True)
class ConnectedModeSettings:
    """Deployment settings for the token service and both remote channels."""
    token_service_url: str = "http://localhost:3000"
    dialogue_ws_url: str = "wss://api.openai.com/v1/realtime?model=gpt-realtime"
    prosody_ws_url: str = "wss://api.hume.ai/v0/stream/models"
    dialogue_model: str = "gpt-realtime"
    dialogue_voice: str = "verse"
    transcription_model: str = "whisper-1"
    instructions: str = DEFAULT_INSTRUCTIONS
    connect_timeout: float = 5.0
    token_timeout: float = 10.0
    prosody_keepalive_interval: float = 30.0
    prosody_reconnect_delays: Tuple[float, ...] = (2.0, 5.0)
    summarize_on_stop: bool = True
    jack_client_name: str = "WavelengthMic"
    audio: AudioConfig = field(default_factory=AudioConfig)


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _delays(env: Mapping[str, str], name: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        delays = tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ValueError(f"{name} must be a comma separated list of seconds, got {raw!r}")
    if not delays or any(d < 0 for d in delays):
        raise ValueError(f"{name} must contain at least one non-negative delay, got {raw!r}")
    return delays


def load_settings(env: Optional[Mapping[str, str]] = None) -> ConnectedModeSettings:
    """
    Build settings from environment variables.

    Args:
        env: Mapping to read instead of os.environ (a .env file is only loaded
             when reading the real environment)

    Environment Variables:
        WAVELENGTH_API_URL: Base URL of the local token / summarization service
        DIALOGUE_WS_URL, PROSODY_WS_URL: Remote channel endpoints
        DIALOGUE_MODEL, DIALOGUE_VOICE, TRANSCRIPTION_MODEL, DIALOGUE_INSTRUCTIONS
        CHANNEL_CONNECT_TIMEOUT: Seconds allowed for connect + handshake (default: 5)
        PROSODY_KEEPALIVE_INTERVAL: Seconds between keepalive probes (default: 30)
        PROSODY_RECONNECT_DELAYS: Comma separated backoff, last value repeats (default: 2,5)
        SUMMARIZE_ON_STOP: Hand finished conversations to the summarizer (default: true)
        JACK_CLIENT_NAME: JACK client name used for microphone capture
    """
    if env is None:
        load_dotenv()
        env = os.environ

    defaults = ConnectedModeSettings()
    settings = ConnectedModeSettings(
        token_service_url=env.get("WAVELENGTH_API_URL", defaults.token_service_url).rstrip("/"),
        dialogue_ws_url=env.get("DIALOGUE_WS_URL", defaults.dialogue_ws_url),
        prosody_ws_url=env.get("PROSODY_WS_URL", defaults.prosody_ws_url),
        dialogue_model=env.get("DIALOGUE_MODEL", defaults.dialogue_model),
        dialogue_voice=env.get("DIALOGUE_VOICE", defaults.dialogue_voice),
        transcription_model=env.get("TRANSCRIPTION_MODEL", defaults.transcription_model),
        instructions=env.get("DIALOGUE_INSTRUCTIONS", defaults.instructions),
        connect_timeout=_float(env, "CHANNEL_CONNECT_TIMEOUT", defaults.connect_timeout),
        token_timeout=_float(env, "TOKEN_TIMEOUT", defaults.token_timeout),
        prosody_keepalive_interval=_float(env, "PROSODY_KEEPALIVE_INTERVAL",
                                          defaults.prosody_keepalive_interval),
        prosody_reconnect_delays=_delays(env, "PROSODY_RECONNECT_DELAYS",
                                         defaults.prosody_reconnect_delays),
        summarize_on_stop=env.get("SUMMARIZE_ON_STOP", "true").lower() in ("true", "1", "yes", "on"),
        jack_client_name=env.get("JACK_CLIENT_NAME", defaults.jack_client_name),
    )
    logger.debug(f"Loaded connected mode settings: api={settings.token_service_url}, "
                 f"connect_timeout={settings.connect_timeout}s, "
                 f"reconnect_delays={settings.prosody_reconnect_delays}")
    return settings
