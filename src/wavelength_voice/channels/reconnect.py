#!/usr/bin/env python3
"""
Reconnection Policies

Strategies a channel consults after an unexpected closure. The channel owns
the retry loop; the policy only decides whether, and after how long, the next
attempt happens.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional, Tuple


class ReconnectPolicy(ABC):
    """Decides the delay before reconnect attempt number `attempt` (0-based)."""

    @abstractmethod
    def next_delay(self, attempt: int) -> Optional[float]:
        """Return seconds to wait, or None to give up."""

    @property
    def reconnects(self) -> bool:
        return self.next_delay(0) is not None


class NoReconnect(ReconnectPolicy):
    """Never reconnect; the closure is reported and left to the owner."""

    def next_delay(self, attempt: int) -> Optional[float]:
        return None

    def __repr__(self) -> str:
        return "NoReconnect()"


class FixedBackoffReconnect(ReconnectPolicy):
    """
    Walk a fixed list of delays, repeating the last one forever
    (e.g. 2s, then 5s, 5s, 5s...), optionally up to max_attempts.
    """

    def __init__(self, delays: Iterable[float] = (2.0, 5.0), max_attempts: Optional[int] = None):
        self.delays: Tuple[float, ...] = tuple(float(d) for d in delays)
        if not self.delays:
            raise ValueError("FixedBackoffReconnect needs at least one delay")
        self.max_attempts = max_attempts

    def next_delay(self, attempt: int) -> Optional[float]:
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return None
        return self.delays[min(attempt, len(self.delays) - 1)]

    def __repr__(self) -> str:
        return f"FixedBackoffReconnect(delays={self.delays}, max_attempts={self.max_attempts})"
