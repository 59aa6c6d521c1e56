#!/usr/bin/env python3
"""
Audio Capture and Processing for Connected Mode
"""

from .batcher import AudioBatcher
from .capture import AudioCaptureSource, JACKAudioCapture, float_to_pcm16
from .resampler import resample

__all__ = ['AudioBatcher', 'AudioCaptureSource', 'JACKAudioCapture', 'float_to_pcm16', 'resample']
