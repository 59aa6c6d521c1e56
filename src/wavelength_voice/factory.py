#!/usr/bin/env python3
"""
Connected Mode Factory

Wires a ConversationOrchestrator from deployment settings.
"""

import logging
from typing import Optional

from .audio.batcher import AudioBatcher
from .audio.capture import AudioCaptureSource, JACKAudioCapture
from .channels.dialogue import DialogueChannel
from .channels.prosody import ProsodyChannel
from .channels.reconnect import FixedBackoffReconnect, NoReconnect
from .config import ConnectedModeSettings, load_settings
from .orchestrator import ConversationOrchestrator
from .segmenter import Tagger, TurnSegmenter
from .summarization import ConversationHandoff, JournalStore, SummarizationClient
from .tokens import TokenClient

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Optional[ConnectedModeSettings] = None,
                       store: Optional[JournalStore] = None,
                       capture: Optional[AudioCaptureSource] = None,
                       tagger: Optional[Tagger] = None) -> ConversationOrchestrator:
    """
    Create a fully wired orchestrator.

    Args:
        settings: Deployment settings (default: load_settings() from the environment)
        store: Journal store receiving finished conversations. Without a store,
               or with SUMMARIZE_ON_STOP disabled, nothing is handed off.
        capture: Microphone source (default: JACK capture)
        tagger: Optional topic tagger applied to finalized turns

    Returns:
        ConversationOrchestrator: Idle orchestrator ready for start_conversation()
    """
    if settings is None:
        settings = load_settings()
    audio = settings.audio

    dialogue = DialogueChannel(
        settings.dialogue_ws_url,
        voice=settings.dialogue_voice,
        transcription_model=settings.transcription_model,
        instructions=settings.instructions,
        reconnect_policy=NoReconnect(),
        connect_timeout=settings.connect_timeout,
    )
    prosody = ProsodyChannel(
        settings.prosody_ws_url,
        reconnect_policy=FixedBackoffReconnect(settings.prosody_reconnect_delays),
        connect_timeout=settings.connect_timeout,
        keepalive_interval=settings.prosody_keepalive_interval,
    )
    token_client = TokenClient(
        settings.token_service_url,
        model=settings.dialogue_model,
        voice=settings.dialogue_voice,
        instructions=settings.instructions,
        timeout=settings.token_timeout,
    )

    handoff = None
    if store is not None and settings.summarize_on_stop:
        handoff = ConversationHandoff(SummarizationClient(settings.token_service_url), store)

    logger.info(f"Building orchestrator: dialogue={settings.dialogue_ws_url}, "
                f"prosody={settings.prosody_ws_url}, hand-off={'on' if handoff else 'off'}")
    return ConversationOrchestrator(
        dialogue=dialogue,
        prosody=prosody,
        capture=capture or JACKAudioCapture(client_name=settings.jack_client_name),
        token_client=token_client,
        batcher=AudioBatcher(audio.max_buffer_bytes),
        segmenter=TurnSegmenter(audio, tagger=tagger),
        config=audio,
        handoff=handoff,
    )
