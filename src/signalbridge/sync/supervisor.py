"""
Reconnect Supervisor

Wraps the single TransportChannel in a connection state machine::

    DISCONNECTED → CONNECTING → CONNECTED
                       ↑            │ (close)
                       │            ▼
                       └──── RECONNECTING
                                    │ (max attempts)
                                    ▼
                                  FAILED

The attempt counter counts consecutive failed opens and is reset on every
entry into CONNECTED. FAILED is terminal until ``reconnect()`` is called.

While CONNECTED a heartbeat ping is sent on a fixed period. The heartbeat
does not feed the state machine; a silent peer is only detected when the
socket itself reports the loss.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..errors import TransportError
from ..transport.channel import TransportChannel
from ..transport.protocol import ping_frame
from .backoff import BackoffPolicy, FixedBackoff

logger = logging.getLogger(__name__)

StateListener = Callable[["ConnectionState", "ConnectionState"], Any]
Hook = Callable[[], Any]


class ConnectionState(Enum):
    """Connection state enumeration"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class ConnectionStatus:
    """Observable connection attributes"""
    state: ConnectionState = ConnectionState.DISCONNECTED
    attempts: int = 0
    last_error: Optional[str] = None
    last_open_at: Optional[float] = None
    last_close_code: Optional[int] = None
    connections_opened: int = 0


class ReconnectSupervisor:
    """
    Owns the TransportChannel and keeps it connected.

    Collaborators register hooks instead of touching the channel:
    ``on_connected`` hooks run right after the transition into CONNECTED
    (subscription replay), ``on_disconnected`` hooks run once when that
    connection is lost or torn down.
    """

    def __init__(
        self,
        channel: TransportChannel,
        url: str,
        backoff: Optional[BackoffPolicy] = None,
        max_attempts: int = 10,
        heartbeat_interval: float = 30.0,
    ):
        self._channel = channel
        self.url = url
        self.backoff = backoff or FixedBackoff(5.0)
        self.max_attempts = max_attempts
        self.heartbeat_interval = heartbeat_interval

        self.status = ConnectionStatus()
        self._state_listeners: List[StateListener] = []
        self._connected_hooks: List[Hook] = []
        self._disconnected_hooks: List[Hook] = []

        self._task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._session_live = False
        self.pings_sent = 0

        channel.on_error(self._on_channel_error)

    # ------------------------------------------------------------- properties

    @property
    def state(self) -> ConnectionState:
        return self.status.state

    @property
    def connected(self) -> bool:
        return self.status.state is ConnectionState.CONNECTED and self._channel.is_open

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------ hooks

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> bool:
        try:
            self._state_listeners.remove(listener)
            return True
        except ValueError:
            return False

    def on_connected(self, hook: Hook) -> None:
        self._connected_hooks.append(hook)

    def on_disconnected(self, hook: Hook) -> None:
        self._disconnected_hooks.append(hook)

    # -------------------------------------------------------------------- I/O

    def send(self, message: Mapping[str, Any]) -> bool:
        """Send a frame if connected; never raises."""
        if not self.connected:
            return False
        return self._channel.send(message)

    # -------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        """Start connecting in the background. No-op if already running."""
        if self.running:
            return
        self._stopping = False
        self.status.attempts = 0
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop reconnecting, close the channel and go to DISCONNECTED."""
        self._stopping = True
        self._stop_heartbeat()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._channel.shutdown()
        self._end_session()
        self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self) -> None:
        """Restart the connection loop, e.g. after FAILED."""
        if self.running:
            return
        logger.info(f"Manual reconnect to {self.url}")
        await self.start()

    # -------------------------------------------------------------- main loop

    async def _run(self) -> None:
        attempt = 0
        try:
            while not self._stopping:
                self._set_state(ConnectionState.CONNECTING)
                try:
                    await self._channel.open(self.url)
                except TransportError as e:
                    attempt += 1
                    self.status.attempts = attempt
                    self.status.last_error = str(e)
                    logger.warning(f"Connection attempt {attempt}/{self.max_attempts} failed: {e}")
                    if attempt >= self.max_attempts:
                        logger.error(f"Giving up on {self.url} after {attempt} attempts")
                        self._set_state(ConnectionState.FAILED)
                        return
                    self._set_state(ConnectionState.RECONNECTING)
                    await asyncio.sleep(self.backoff.delay(attempt))
                    continue

                attempt = 0
                self.status.attempts = 0
                self.status.last_open_at = time.time()
                self.status.connections_opened += 1
                self._begin_session()

                code = await self._channel.wait_closed()
                self.status.last_close_code = code
                self._end_session()
                if self._stopping:
                    break

                logger.warning(f"Connection to {self.url} lost (code={code}); reconnecting")
                self._set_state(ConnectionState.RECONNECTING)
                await asyncio.sleep(self.backoff.delay(1))
        finally:
            self._stop_heartbeat()

    def _begin_session(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        self._session_live = True
        for hook in list(self._connected_hooks):
            try:
                hook()
            except Exception as e:
                logger.error(f"Error in connected hook: {e}", exc_info=True)
        self._start_heartbeat()

    def _end_session(self) -> None:
        if not self._session_live:
            return
        self._session_live = False
        self._stop_heartbeat()
        for hook in list(self._disconnected_hooks):
            try:
                hook()
            except Exception as e:
                logger.error(f"Error in disconnected hook: {e}", exc_info=True)

    # -------------------------------------------------------------- heartbeat

    def _start_heartbeat(self) -> None:
        if self.heartbeat_interval <= 0:
            return
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self.send(ping_frame()):
                self.pings_sent += 1

    # ---------------------------------------------------------------- helpers

    def _set_state(self, new: ConnectionState) -> None:
        old = self.status.state
        if old is new:
            return
        self.status.state = new
        logger.debug(f"Connection state {old.value} -> {new.value}")
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception as e:
                logger.error(f"Error in state listener: {e}", exc_info=True)

    def _on_channel_error(self, error: Exception) -> None:
        if isinstance(error, TransportError):
            self.status.last_error = str(error)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.status.state.value,
            "url": self.url,
            "attempts": self.status.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.status.last_error,
            "last_open_at": self.status.last_open_at,
            "last_close_code": self.status.last_close_code,
            "connections_opened": self.status.connections_opened,
            "pings_sent": self.pings_sent,
            "frames_sent": self._channel.frames_sent,
            "frames_received": self._channel.frames_received,
            "frames_dropped": self._channel.frames_dropped,
        }
