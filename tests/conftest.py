"""Pytest configuration and shared fakes."""
import asyncio
import json
import sys
from pathlib import Path

import pytest

# Ensure src/ is importable when the package is not installed
src_root = Path(__file__).parent.parent / "src"
if str(src_root) not in sys.path:
    sys.path.insert(0, str(src_root))

from wavelength_voice.audio import capture as capture_module
from wavelength_voice.audio.capture import AudioCaptureSource
from wavelength_voice.channels.dialogue import DialogueChannel
from wavelength_voice.channels.prosody import ProsodyChannel
from wavelength_voice.channels.reconnect import FixedBackoffReconnect
from wavelength_voice.config import AudioConfig
from wavelength_voice.errors import AudioCaptureFailedError
from wavelength_voice.models import AudioBlock
from wavelength_voice.orchestrator import ConversationOrchestrator
from wavelength_voice.tokens import ChannelCredential

FAST_AUDIO = AudioConfig(
    silence_threshold=0.05,
    stability_threshold=0.03,
    batch_interval=0.02,
    emotion_refresh_interval=0.01,
)

_CLOSED = object()


class FakeTransport:
    def __init__(self):
        self.aborted = False

    def abort(self):
        self.aborted = True


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, first_reply='{"type": "session.created"}', answer_pings=True):
        self.first_reply = first_reply
        self.answer_pings = answer_pings
        self.sent = []
        self.incoming = asyncio.Queue()
        self.transport = FakeTransport()
        self.closed = False
        self.close_code = None
        self.pings = 0

    async def send(self, payload):
        self.sent.append(payload)

    async def recv(self):
        if self.first_reply is None:
            await asyncio.Event().wait()
        if isinstance(self.first_reply, dict):
            return json.dumps(self.first_reply)
        return self.first_reply

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.001)
        return waiter

    async def close(self, code=1000, reason=""):
        self.closed = True
        self.close_code = code
        self.incoming.put_nowait(_CLOSED)

    # Test helpers

    def push(self, message):
        """Deliver one inbound message to the receive loop."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self.incoming.put_nowait(message)

    def drop(self, error=None):
        """Simulate the server going away."""
        self.incoming.put_nowait(error if error is not None else _CLOSED)

    def sent_json(self):
        return [json.loads(payload) for payload in self.sent]


class FakeConnector:
    """Replaces websockets.connect; hands out queued sockets or raises queued errors."""

    def __init__(self, *items, delay=0.0):
        self.items = list(items)
        self.delay = delay
        self.calls = []
        self.sockets = []

    async def __call__(self, url, additional_headers=None, ping_interval=None):
        self.calls.append((url, additional_headers))
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.items.pop(0) if self.items else FakeWebSocket()
        if isinstance(item, BaseException):
            raise item
        self.sockets.append(item)
        return item

    @property
    def last(self):
        return self.sockets[-1]


class FakeCapture(AudioCaptureSource):
    def __init__(self, error=None):
        super().__init__()
        self.error = error
        self.starts = 0
        self.stops = 0

    async def start(self, on_block, on_error=None):
        if self._running:
            return
        if self.error is not None:
            raise self.error
        self._acquire_microphone()
        self._on_block = on_block
        self._on_error = on_error
        self._running = True
        self.starts += 1

    def stop(self):
        self.stops += 1
        self._running = False
        self._on_block = None
        self._on_error = None
        self._release_microphone()

    def emit(self, data, sample_rate=16000):
        self._deliver(AudioBlock(data, sample_rate))

    def break_device(self, message="device unplugged"):
        self._fail(AudioCaptureFailedError(message))


class FakeTokenClient:
    def __init__(self, dialogue_error=None, prosody_error=None, prosody_config=None):
        self.dialogue_error = dialogue_error
        self.prosody_error = prosody_error
        self.prosody_config = prosody_config or {}
        self.calls = 0

    async def fetch_dialogue_token(self):
        self.calls += 1
        if self.dialogue_error is not None:
            raise self.dialogue_error
        return ChannelCredential("dialogue-token", session_id="sess_1")

    async def fetch_prosody_token(self):
        self.calls += 1
        if self.prosody_error is not None:
            raise self.prosody_error
        return ChannelCredential("prosody-token", config=self.prosody_config)


class FakeHandoff:
    def __init__(self, error=None):
        self.error = error
        self.received = []

    async def hand_off(self, turns):
        self.received.append(tuple(turns))
        if self.error is not None:
            raise self.error
        return "entry-1"


class Rig:
    """An orchestrator wired to fakes, plus handles on every fake."""

    def __init__(self, dialogue_items=(), prosody_items=(), tokens=None, capture=None,
                 handoff=None, dialogue_delay=0.0, config=FAST_AUDIO):
        self.dialogue_connector = FakeConnector(*dialogue_items, delay=dialogue_delay)
        self.prosody_connector = FakeConnector(*prosody_items)
        self.dialogue = DialogueChannel("wss://dialogue.test/realtime",
                                        connector=self.dialogue_connector,
                                        connect_timeout=0.5)
        self.prosody = ProsodyChannel("wss://prosody.test/stream",
                                      connector=self.prosody_connector,
                                      connect_timeout=0.5,
                                      reconnect_policy=FixedBackoffReconnect((0.02,)),
                                      keepalive_interval=None)
        self.capture = capture or FakeCapture()
        self.tokens = tokens or FakeTokenClient()
        self.handoff = handoff
        self.orchestrator = ConversationOrchestrator(
            self.dialogue, self.prosody, self.capture, self.tokens,
            config=config, handoff=handoff)

    @property
    def dialogue_ws(self):
        return self.dialogue_connector.last

    @property
    def prosody_ws(self):
        return self.prosody_connector.last


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def release_microphone():
    """Never let one test's capture source hold the microphone for the next."""
    yield
    capture_module._microphone_holder = None
