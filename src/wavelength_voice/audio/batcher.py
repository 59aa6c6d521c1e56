#!/usr/bin/env python3
"""
Audio Batcher

Accumulates resampled PCM16 bytes and releases them in bounded chunks on the
batch tick. Owned by the event loop thread only; it is never touched from
the capture callback thread.
"""

import logging
from typing import Callable, Optional

from ..config import AUDIO_CONFIG

logger = logging.getLogger(__name__)


class AudioBatcher:
    """Bounded byte buffer that feeds the channel fan-out."""

    def __init__(self,
                 max_buffer_bytes: int = AUDIO_CONFIG.max_buffer_bytes,
                 gate: Optional[Callable[[], bool]] = None):
        """
        Args:
            max_buffer_bytes: Largest chunk a single flush returns; also the
                              retention bound before an append
            gate: Returns True while at least one consumer can accept audio.
                  Without a gate the batcher always releases data.
        """
        if max_buffer_bytes <= 0 or max_buffer_bytes % 2:
            raise ValueError("max_buffer_bytes must be a positive, even number of bytes")
        self.max_buffer_bytes = max_buffer_bytes
        self.gate = gate
        self._buffer = bytearray()

        # Stats
        self.total_bytes_in = 0
        self.total_bytes_out = 0
        self.total_bytes_dropped = 0
        self.total_flushes = 0

    def __len__(self) -> int:
        return len(self._buffer)

    def append(self, data: bytes) -> None:
        """Queue bytes for the next flush, discarding the oldest overflow."""
        if not data:
            return
        self.total_bytes_in += len(data)

        overflow = len(self._buffer) - self.max_buffer_bytes
        if overflow > 0:
            # Producer outran the flush tick; keep sample alignment when trimming.
            overflow += overflow % 2
            del self._buffer[:overflow]
            self.total_bytes_dropped += overflow
            logger.debug(f"Audio batcher over capacity, dropped {overflow} oldest bytes")

        self._buffer.extend(data)

    def flush(self) -> Optional[bytes]:
        """
        Release up to max_buffer_bytes, oldest first.

        Returns:
            bytes or None: None when the buffer is empty or no consumer is open.
                           With no consumer open the buffer is cleared.
        """
        if self.gate is not None and not self.gate():
            if self._buffer:
                self.total_bytes_dropped += len(self._buffer)
                self._buffer.clear()
            return None

        if not self._buffer:
            return None

        chunk = bytes(self._buffer[:self.max_buffer_bytes])
        del self._buffer[:self.max_buffer_bytes]
        self.total_bytes_out += len(chunk)
        self.total_flushes += 1
        return chunk

    def clear(self) -> None:
        self._buffer.clear()

    def get_stats(self) -> dict:
        return {
            "buffered_bytes": len(self._buffer),
            "max_buffer_bytes": self.max_buffer_bytes,
            "total_bytes_in": self.total_bytes_in,
            "total_bytes_out": self.total_bytes_out,
            "total_bytes_dropped": self.total_bytes_dropped,
            "total_flushes": self.total_flushes,
        }
