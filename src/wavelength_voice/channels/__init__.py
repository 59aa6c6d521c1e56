#!/usr/bin/env python3
"""
Remote analysis channels for Connected Mode
"""

from .base_channel import ChannelConnection, InvalidChannelTransition
from .dialogue import DialogueChannel
from .events import AssistantReply, ChannelError, ProsodyUpdate, ReplyPhase, TranscriptUpdate
from .prosody import ProsodyChannel
from .reconnect import FixedBackoffReconnect, NoReconnect, ReconnectPolicy

__all__ = [
    'ChannelConnection', 'InvalidChannelTransition', 'DialogueChannel', 'ProsodyChannel',
    'ReconnectPolicy', 'NoReconnect', 'FixedBackoffReconnect',
    'TranscriptUpdate', 'AssistantReply', 'ReplyPhase', 'ProsodyUpdate', 'ChannelError',
]
