#!/usr/bin/env python3
"""
Microphone Capture

JACK-based capture of the physical microphone input. The JACK process
callback runs on the real-time thread and only copies float32 frames into a
ring buffer; an asyncio reader task drains it, converts to 16-bit PCM and
hands AudioBlock objects to the consumer on the event loop.

The microphone is exclusive: only one capture source may hold it at a time.

Notes:
- Uses python-jack-client (import jack)
- Block size and sample rate come from the JACK server, not from us
- stop() is synchronous and idempotent so emergency teardown never waits
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np

from ..errors import AudioCaptureFailedError
from ..models import AudioBlock

try:
    import jack
    JACK_AVAILABLE = True
    _jack_import_error = None
except Exception as e:
    JACK_AVAILABLE = False
    _jack_import_error = e

logger = logging.getLogger(__name__)

BlockCallback = Callable[[AudioBlock], None]
ErrorCallback = Callable[[AudioCaptureFailedError], None]

_microphone_lock = threading.Lock()
_microphone_holder: Optional["AudioCaptureSource"] = None


def float_to_pcm16(audio_f32: np.ndarray) -> bytes:
    """Clip float samples to [-1, 1] and encode as little-endian int16."""
    clipped = np.clip(audio_f32, -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


class AudioCaptureSource(ABC):
    """Hardware-paced producer of raw sample blocks."""

    def __init__(self):
        self._on_block: Optional[BlockCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @abstractmethod
    async def start(self, on_block: BlockCallback,
                    on_error: Optional[ErrorCallback] = None) -> None:
        """
        Acquire the microphone and begin delivering blocks.

        Starting an already running source is a no-op. Failure to acquire
        the device raises AudioCaptureFailedError.
        """

    @abstractmethod
    def stop(self) -> None:
        """Release the microphone. Safe to call at any time, any number of times."""

    def _acquire_microphone(self) -> None:
        global _microphone_holder
        with _microphone_lock:
            if _microphone_holder is not None and _microphone_holder is not self:
                raise AudioCaptureFailedError("microphone is held by another capture source")
            _microphone_holder = self

    def _release_microphone(self) -> None:
        global _microphone_holder
        with _microphone_lock:
            if _microphone_holder is self:
                _microphone_holder = None

    def _deliver(self, block: AudioBlock) -> None:
        if self._on_block is None:
            return
        try:
            self._on_block(block)
        except Exception as e:
            logger.error(f"Error in capture block callback: {e}")

    def _fail(self, error: AudioCaptureFailedError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception as e:
            logger.error(f"Error in capture error callback: {e}")

    def get_stats(self) -> dict:
        return {"running": self._running}


class JACKAudioCapture(AudioCaptureSource):
    """Capture from the first physical JACK capture port."""

    def __init__(self,
                 client_name: str = "WavelengthMic",
                 block_duration_s: float = 0.1,
                 ring_seconds: float = 5.0):
        super().__init__()
        self.client_name = client_name
        self.block_duration_s = float(block_duration_s)
        self.ring_seconds = float(ring_seconds)

        self.client = None
        self.inport = None
        self.rb = None

        self.server_rate: Optional[int] = None
        self.bytes_per_sample = 4  # JACK uses float32 mono per port
        self.selected_port_name: Optional[str] = None

        self._reader_task: Optional[asyncio.Task] = None

        # Stats
        self.total_blocks = 0
        self.total_frames = 0

    async def start(self, on_block: BlockCallback,
                    on_error: Optional[ErrorCallback] = None) -> None:
        if self._running:
            logger.warning("JACKAudioCapture already running")
            return
        if not JACK_AVAILABLE:
            raise AudioCaptureFailedError(f"python-jack-client not available: {_jack_import_error}")

        self._acquire_microphone()
        self._on_block = on_block
        self._on_error = on_error
        try:
            self._open_client()
        except Exception as e:
            self.stop()
            if isinstance(e, AudioCaptureFailedError):
                raise
            raise AudioCaptureFailedError(str(e)) from e

        self._running = True
        self._reader_task = asyncio.create_task(self._reader_loop())
        logger.info(f"JACKAudioCapture started at server_rate={self.server_rate} Hz from '{self.selected_port_name}'")

    def _open_client(self) -> None:
        self.client = jack.Client(self.client_name)
        self.server_rate = int(self.client.samplerate)
        self.inport = self.client.inports.register('input')

        rb_bytes = int(self.server_rate * self.ring_seconds * self.bytes_per_sample)
        self.rb = jack.RingBuffer(rb_bytes)

        @self.client.set_process_callback
        def _process(frames):
            try:
                buf = self.inport.get_array()
                if buf is None:
                    return
                data = buf.tobytes()
                if self.rb is not None:
                    space = self.rb.write_space
                    if space >= len(data):
                        self.rb.write(data)
                    elif space > 0:
                        self.rb.write(data[:space])
            except Exception:
                # Never raise/log from RT thread
                pass

        self.client.activate()

        ports = self.client.get_ports(is_audio=True, is_output=True, is_physical=True)
        if not ports:
            raise AudioCaptureFailedError("no physical JACK capture ports available")
        self.client.connect(ports[0], self.inport)
        self.selected_port_name = ports[0].name

    def stop(self) -> None:
        was_running = self._running
        self._running = False
        self._on_block = None
        self._on_error = None

        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        self._reader_task = None

        try:
            if self.client is not None:
                try:
                    self.client.deactivate()
                finally:
                    self.client.close()
        except Exception as e:
            logger.warning(f"Error closing JACK client: {e}")
        finally:
            self.client = None
            self.inport = None
            self.rb = None
            self._release_microphone()

        if was_running:
            logger.info(f"JACKAudioCapture stopped ({self.total_blocks} blocks)")

    async def _reader_loop(self) -> None:
        """Drain the ring buffer and deliver PCM16 blocks at the server rate."""
        block_frames = max(1, int(self.block_duration_s * self.server_rate))
        block_bytes = block_frames * self.bytes_per_sample

        try:
            while self._running:
                rb = self.rb
                if rb is None or rb.read_space < block_bytes:
                    await asyncio.sleep(0.01)
                    continue

                data = rb.read(block_bytes)
                if not data:
                    await asyncio.sleep(0.005)
                    continue

                audio_f32 = np.frombuffer(data, dtype=np.float32)
                self.total_blocks += 1
                self.total_frames += audio_f32.size
                if self.total_blocks % 50 == 0:
                    rms = float(np.sqrt(np.mean(audio_f32 ** 2))) if audio_f32.size else 0.0
                    logger.debug(f"JACKCapture block#{self.total_blocks} rms={rms:.6f}")

                self._deliver(AudioBlock(float_to_pcm16(audio_f32), self.server_rate))
        except asyncio.CancelledError:
            pass
        except Exception as e:
            if self._running:
                logger.error(f"JACKAudioCapture reader error: {e}")
                self._fail(AudioCaptureFailedError(str(e)))

    def get_stats(self) -> dict:
        return {
            "running": self._running,
            "server_rate": self.server_rate,
            "client": self.client_name,
            "port": self.selected_port_name,
            "total_blocks": self.total_blocks,
            "total_frames": self.total_frames,
        }
