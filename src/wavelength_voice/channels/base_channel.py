#!/usr/bin/env python3
"""
Base Channel Connection

Owns one remote websocket: connect + handshake, fire-and-forget sends,
the receive loop, optional keepalive probes, the reconnect policy and close.
Dialogue and prosody channels subclass this and supply headers, the initial
configuration message, the audio envelope and inbound message decoding.

State machine (illegal transitions raise InvalidChannelTransition):

    idle -> connecting -> open -> closing -> closed
               |           |                  |
               +-> closed  +-> closed         +-> connecting (reconnect / new session)
"""

import asyncio
import base64
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import websockets

from ..errors import ChannelConnectionFailedError, ConnectedModeError
from ..models import ChannelState
from .reconnect import NoReconnect, ReconnectPolicy

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000

_TRANSITIONS = {
    ChannelState.IDLE: {ChannelState.CONNECTING},
    ChannelState.CONNECTING: {ChannelState.OPEN, ChannelState.CLOSED},
    ChannelState.OPEN: {ChannelState.CLOSING, ChannelState.CLOSED},
    ChannelState.CLOSING: {ChannelState.CLOSED},
    ChannelState.CLOSED: {ChannelState.CONNECTING},
}


class InvalidChannelTransition(RuntimeError):
    pass


def b64(audio: bytes) -> str:
    return base64.b64encode(audio).decode("ascii")


def _describe(error: Optional[BaseException]) -> str:
    if error is None:
        return "connection closed by server"
    if isinstance(error, asyncio.TimeoutError) and not str(error):
        return "timed out"
    return str(error) or type(error).__name__


class ChannelConnection(ABC):
    """Lifecycle of a single remote analysis channel."""

    name = "channel"

    def __init__(self,
                 url: str,
                 reconnect_policy: Optional[ReconnectPolicy] = None,
                 connect_timeout: float = 5.0,
                 keepalive_interval: Optional[float] = None,
                 keepalive_timeout: float = 10.0,
                 max_pending_sends: int = 64,
                 connector: Optional[Callable[..., Any]] = None):
        """
        Args:
            url: Websocket endpoint
            reconnect_policy: Strategy consulted after an unexpected closure
                              (default: never reconnect)
            connect_timeout: Seconds allowed for socket open + handshake
            keepalive_interval: Seconds between ping probes while open (None disables)
            keepalive_timeout: Seconds to wait for the pong of a probe
            max_pending_sends: Outbound queue size; the oldest message is dropped when full
            connector: Coroutine function opening the socket (default: websockets.connect)
        """
        self.url = url
        self.reconnect_policy = reconnect_policy or NoReconnect()
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.keepalive_timeout = keepalive_timeout
        self.max_pending_sends = max_pending_sends
        self._connector = connector or websockets.connect

        self._state = ChannelState.IDLE
        self.ws = None
        self._credential: Optional[str] = None
        self._closing = False
        self._epoch = 0

        self._outbox: Optional[asyncio.Queue] = None
        self._io_tasks: List[asyncio.Task] = []
        self._reconnect_task: Optional[asyncio.Task] = None
        self._handshake_task: Optional[asyncio.Task] = None

        self._on_message_callback: Optional[Callable[[Any], None]] = None
        self._on_state_callback: Optional[Callable[[ChannelState], None]] = None
        self._on_closed_callback: Optional[Callable[[ConnectedModeError, bool], None]] = None

        # Stats
        self.total_bytes_sent = 0
        self.total_messages_sent = 0
        self.total_messages_received = 0
        self.total_dropped_sends = 0
        self.total_disconnects = 0
        self.total_reconnect_attempts = 0
        self.total_reconnections = 0
        self.last_message_time: Optional[float] = None
        self.connection_start_time: Optional[float] = None

    # ------------------------------------------------------------------
    # Subclass hooks

    @abstractmethod
    def build_headers(self, credential: str) -> Dict[str, str]:
        """Authentication headers for the websocket upgrade."""

    @abstractmethod
    def initial_messages(self) -> List[Dict[str, Any]]:
        """Configuration events sent right after the socket opens."""

    @abstractmethod
    def encode_audio(self, audio: bytes) -> Dict[str, Any]:
        """Wrap one PCM16 chunk in the channel's outbound envelope."""

    @abstractmethod
    def handle_message(self, data: Dict[str, Any]) -> None:
        """Decode one inbound JSON object and emit domain events."""

    def check_handshake(self, data: Dict[str, Any]) -> None:
        """Raise ChannelConnectionFailedError if the first reply is a rejection."""

    def apply_hints(self, hints: Dict[str, Any]) -> None:
        """Adopt stream hints issued alongside the credential (default: none used)."""

    # ------------------------------------------------------------------
    # Public API

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def set_callbacks(self,
                      on_message: Optional[Callable[[Any], None]] = None,
                      on_state_change: Optional[Callable[[ChannelState], None]] = None,
                      on_closed: Optional[Callable[[ConnectedModeError, bool], None]] = None) -> None:
        """
        Args:
            on_message: Called with each decoded inbound event
            on_state_change: Called with the new ChannelState after every transition
            on_closed: Called after an unexpected closure with the error and
                       whether a reconnect is scheduled
        """
        self._on_message_callback = on_message
        self._on_state_callback = on_state_change
        self._on_closed_callback = on_closed

    async def connect(self, credential: str) -> ChannelState:
        """
        Open the socket, send the initial configuration and wait for the first
        inbound message. Only then is the channel open.

        Raises:
            ChannelConnectionFailedError: on timeout, refusal or transport failure
        """
        if self._state in (ChannelState.CONNECTING, ChannelState.OPEN, ChannelState.CLOSING):
            logger.warning(f"[{self.name}] connect() ignored while {self._state.value}")
            return self._state

        self._credential = credential
        self._closing = False
        self._cancel_reconnect()
        await self._open(credential)
        return self._state

    def send(self, audio: bytes) -> None:
        """Queue an audio chunk. A no-op unless open; never blocks."""
        if not audio or self._state is not ChannelState.OPEN:
            return
        self._enqueue(json.dumps(self.encode_audio(audio)), len(audio))

    def send_event(self, event: Dict[str, Any]) -> None:
        """Queue a JSON control event. A no-op unless open."""
        if self._state is not ChannelState.OPEN:
            return
        self._enqueue(json.dumps(event), 0)

    async def close(self) -> None:
        """Graceful shutdown with a normal-closure code. Safe in any state."""
        self._closing = True
        self._epoch += 1
        self._cancel_reconnect()
        self._cancel_handshake()

        if self._state in (ChannelState.IDLE, ChannelState.CLOSED):
            return

        if self._state is ChannelState.OPEN:
            self._set_state(ChannelState.CLOSING)

        tasks = self._cancel_io_tasks()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        ws, self.ws = self.ws, None
        self._outbox = None
        if ws is not None:
            try:
                await asyncio.wait_for(ws.close(code=NORMAL_CLOSURE, reason="conversation ended"),
                                       timeout=self.connect_timeout)
            except Exception as e:
                logger.warning(f"[{self.name}] error during graceful close: {e}")

        self._set_state(ChannelState.CLOSED)
        logger.info(f"[{self.name}] channel closed")

    def abort(self) -> None:
        """Drop the connection immediately without a closing handshake."""
        self._closing = True
        self._epoch += 1
        self._cancel_reconnect()
        self._cancel_handshake()
        self._cancel_io_tasks()

        ws, self.ws = self.ws, None
        self._outbox = None
        if ws is not None:
            self._abort_socket(ws)

        if self._state not in (ChannelState.IDLE, ChannelState.CLOSED):
            self._set_state(ChannelState.CLOSED)

    def get_stats(self) -> dict:
        return {
            "channel": self.name,
            "state": self._state.value,
            "reconnect_policy": repr(self.reconnect_policy),
            "total_bytes_sent": self.total_bytes_sent,
            "total_messages_sent": self.total_messages_sent,
            "total_messages_received": self.total_messages_received,
            "total_dropped_sends": self.total_dropped_sends,
            "total_disconnects": self.total_disconnects,
            "total_reconnect_attempts": self.total_reconnect_attempts,
            "total_reconnections": self.total_reconnections,
            "connection_duration_seconds": (time.time() - self.connection_start_time
                                            if self.connection_start_time and self.is_open else 0),
        }

    # ------------------------------------------------------------------
    # Connection internals

    def _set_state(self, new_state: ChannelState) -> None:
        if new_state is self._state:
            return
        if new_state not in _TRANSITIONS[self._state]:
            raise InvalidChannelTransition(
                f"{self.name}: {self._state.value} -> {new_state.value} is not allowed")
        old_state = self._state
        self._state = new_state
        logger.info(f"[{self.name}] {old_state.value} -> {new_state.value}")
        if self._on_state_callback:
            try:
                self._on_state_callback(new_state)
            except Exception as e:
                logger.error(f"Error in {self.name} state callback: {e}")

    async def _open(self, credential: str) -> None:
        epoch = self._epoch
        self._set_state(ChannelState.CONNECTING)
        logger.info(f"[{self.name}] connecting to {self.url}")

        # The handshake runs in its own task so close()/abort() can cancel it
        handshake = asyncio.ensure_future(self._handshake(credential))
        self._handshake_task = handshake
        try:
            done, _ = await asyncio.wait({handshake}, timeout=self.connect_timeout)
        except asyncio.CancelledError:
            handshake.cancel()
            raise
        finally:
            if self._handshake_task is handshake:
                self._handshake_task = None

        try:
            if not done:
                handshake.cancel()
                raise asyncio.TimeoutError()
            if handshake.cancelled():
                raise ChannelConnectionFailedError(f"{self.name} channel connect aborted")
            ws, first = handshake.result()
        except Exception as e:
            if epoch == self._epoch and self._state is ChannelState.CONNECTING:
                self._set_state(ChannelState.CLOSED)
            if isinstance(e, ChannelConnectionFailedError):
                raise
            if isinstance(e, asyncio.TimeoutError):
                raise ChannelConnectionFailedError(
                    f"{self.name} channel timed out after {self.connect_timeout:.1f}s") from e
            raise ChannelConnectionFailedError(f"{self.name} channel: {_describe(e)}") from e

        if epoch != self._epoch:
            # close()/abort() ran while we were connecting
            self._abort_socket(ws)
            raise ChannelConnectionFailedError(f"{self.name} channel connect aborted")

        self.ws = ws
        self._outbox = asyncio.Queue(maxsize=self.max_pending_sends)
        self.connection_start_time = time.time()
        self._set_state(ChannelState.OPEN)

        self._io_tasks = [
            asyncio.create_task(self._receive_loop(ws)),
            asyncio.create_task(self._sender_loop(ws, self._outbox)),
        ]
        if self.keepalive_interval:
            self._io_tasks.append(asyncio.create_task(self._keepalive_loop(ws)))

        self._dispatch(first)

    async def _handshake(self, credential: str):
        ws = await self._connector(self.url,
                                   additional_headers=self.build_headers(credential),
                                   ping_interval=None)
        try:
            for message in self.initial_messages():
                await ws.send(json.dumps(message))
            first = await ws.recv()
            try:
                data = json.loads(first)
            except (TypeError, ValueError):
                data = None
            if isinstance(data, dict):
                self.check_handshake(data)
        except asyncio.CancelledError:
            self._abort_socket(ws)
            raise
        except Exception:
            await self._close_quietly(ws)
            raise
        return ws, first

    def _enqueue(self, payload: str, audio_bytes: int) -> None:
        outbox = self._outbox
        if outbox is None:
            return
        if outbox.full():
            try:
                outbox.get_nowait()
                self.total_dropped_sends += 1
            except asyncio.QueueEmpty:
                pass
        outbox.put_nowait(payload)
        self.total_bytes_sent += audio_bytes

    async def _sender_loop(self, ws, outbox: asyncio.Queue) -> None:
        try:
            while True:
                payload = await outbox.get()
                await ws.send(payload)
                self.total_messages_sent += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._connection_lost(ws, e)

    async def _receive_loop(self, ws) -> None:
        error: Optional[BaseException] = None
        try:
            async for message in ws:
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed as e:
            error = e
        except Exception as e:
            error = e
        self._connection_lost(ws, error)

    async def _keepalive_loop(self, ws) -> None:
        try:
            while True:
                await asyncio.sleep(self.keepalive_interval)
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.keepalive_timeout)
                logger.debug(f"[{self.name}] keepalive ok")
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._connection_lost(ws, asyncio.TimeoutError("keepalive probe timed out"))
        except Exception as e:
            self._connection_lost(ws, e)

    def _dispatch(self, message) -> None:
        self.total_messages_received += 1
        self.last_message_time = time.time()
        if isinstance(message, (bytes, bytearray)):
            logger.debug(f"[{self.name}] ignoring {len(message)} byte binary frame")
            return
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.error(f"[{self.name}] failed to parse message: {e}")
            return
        if not isinstance(data, dict):
            logger.debug(f"[{self.name}] ignoring non-object message")
            return
        try:
            self.handle_message(data)
        except Exception as e:
            logger.error(f"[{self.name}] error handling message: {e}")

    def _emit_message(self, event: Any) -> None:
        if self._on_message_callback:
            try:
                self._on_message_callback(event)
            except Exception as e:
                logger.error(f"Error in {self.name} message callback: {e}")

    def _connection_lost(self, ws, error: Optional[BaseException]) -> None:
        if ws is not self.ws or self._closing:
            return

        current = asyncio.current_task()
        for task in self._io_tasks:
            if task is not current and not task.done():
                task.cancel()
        self._io_tasks = []
        self.ws = None
        self._outbox = None
        self._abort_socket(ws)

        self.total_disconnects += 1
        self._set_state(ChannelState.CLOSED)

        reason = _describe(error)
        failure = ChannelConnectionFailedError(f"{self.name} channel lost: {reason}")
        will_reconnect = self.reconnect_policy.reconnects
        logger.warning(f"[{self.name}] connection lost ({reason}); "
                       f"{'reconnecting' if will_reconnect else 'not reconnecting'}")
        if will_reconnect:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop(self._epoch))
        self._emit_closed(failure, will_reconnect)

    async def _reconnect_loop(self, epoch: int) -> None:
        attempt = 0
        while epoch == self._epoch:
            delay = self.reconnect_policy.next_delay(attempt)
            if delay is None:
                logger.warning(f"[{self.name}] giving up after {attempt} reconnect attempts")
                self._emit_closed(ChannelConnectionFailedError(
                    f"{self.name} channel could not reconnect after {attempt} attempts"), False)
                return
            logger.info(f"[{self.name}] reconnect attempt {attempt + 1} in {delay:.1f}s")
            await asyncio.sleep(delay)
            if epoch != self._epoch:
                return

            attempt += 1
            self.total_reconnect_attempts += 1
            try:
                await self._open(self._credential)
            except ChannelConnectionFailedError as e:
                logger.warning(f"[{self.name}] reconnect attempt {attempt} failed: {e}")
                continue
            self.total_reconnections += 1
            logger.info(f"[{self.name}] reconnected after {attempt} attempt(s)")
            return

    def _emit_closed(self, error: ConnectedModeError, will_reconnect: bool) -> None:
        if self._on_closed_callback:
            try:
                self._on_closed_callback(error, will_reconnect)
            except Exception as e:
                logger.error(f"Error in {self.name} closed callback: {e}")

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _cancel_handshake(self) -> None:
        task = self._handshake_task
        self._handshake_task = None
        if task is not None and not task.done():
            logger.info(f"[{self.name}] cancelling in-flight handshake")
            task.cancel()

    def _cancel_io_tasks(self) -> List[asyncio.Task]:
        tasks = [t for t in self._io_tasks if not t.done()]
        for task in tasks:
            task.cancel()
        self._io_tasks = []
        return tasks

    def _abort_socket(self, ws) -> None:
        transport = getattr(ws, "transport", None)
        if transport is not None:
            transport.abort()

    async def _close_quietly(self, ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[{self.name}] ignoring close error: {e}")
