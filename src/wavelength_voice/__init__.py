#!/usr/bin/env python3
"""
Wavelength Connected Mode

Real-time voice conversation pipeline for the journal: microphone capture,
dialogue and prosody channels, turn segmentation and the conversation
orchestrator.
"""

from .config import AUDIO_CONFIG, AudioConfig, ConnectedModeSettings, load_settings
from .errors import ConnectedModeError, ErrorKind
from .factory import build_orchestrator
from .models import (ConversationPhase, ConversationState, ConversationTurn, EmotionStripState,
                     LiveCaptionState, ProsodyData, ProsodySnapshot)
from .orchestrator import ConversationOrchestrator
from .segmenter import TurnSegmenter

__version__ = "0.1.0"

__all__ = [
    'AUDIO_CONFIG', 'AudioConfig', 'ConnectedModeSettings', 'load_settings',
    'ConnectedModeError', 'ErrorKind', 'build_orchestrator',
    'ConversationPhase', 'ConversationState', 'ConversationTurn', 'EmotionStripState',
    'LiveCaptionState', 'ProsodyData', 'ProsodySnapshot',
    'ConversationOrchestrator', 'TurnSegmenter',
]
