#!/usr/bin/env python3
"""
Decimating Resampler

Converts 16-bit little-endian mono PCM at the hardware rate to the 16 kHz
transport rate by keeping every Nth sample, N = floor(from_rate / 16000).

This is a lossy decimation without a low-pass stage. It is good enough for
transcription and prosody scoring and keeps the audio path cheap.
"""

import logging

import numpy as np

from ..config import AUDIO_CONFIG

logger = logging.getLogger(__name__)

_PCM16_LE = np.dtype("<i2")


def decimation_factor(from_rate: float, to_rate: int = AUDIO_CONFIG.sample_rate) -> int:
    """Integer step between kept samples; 1 means pass-through."""
    return max(1, int(from_rate // to_rate))


def resample(raw_block: bytes, from_rate: float,
             to_rate: int = AUDIO_CONFIG.sample_rate,
             tolerance: float = AUDIO_CONFIG.resample_tolerance) -> bytes:
    """
    Bring a PCM16 block to the transport rate.

    Args:
        raw_block: Little-endian 16-bit mono samples
        from_rate: Sample rate the block was captured at
        to_rate: Transport sample rate (default: 16000)
        tolerance: Relative rate difference treated as "already at the transport rate"

    Returns:
        bytes: The input unchanged when the rates match, otherwise every
               floor(from_rate / to_rate)-th sample
    """
    if from_rate <= 0:
        raise ValueError(f"Invalid source sample rate: {from_rate}")

    ratio = from_rate / to_rate
    if abs(ratio - 1.0) < tolerance:
        return raw_block

    factor = decimation_factor(from_rate, to_rate)
    if factor == 1:
        # Below 2x the transport rate there is nothing to drop; upsampling is not done.
        logger.debug(f"Source rate {from_rate} Hz below decimation range, passing through")
        return raw_block

    usable = len(raw_block) - (len(raw_block) % 2)
    samples = np.frombuffer(raw_block[:usable], dtype=_PCM16_LE)
    return samples[::factor].tobytes()
