"""
SyncClient - Signal Synchronization Service

The one object an application constructs to keep its view in sync with the
backend. It wires together:

- a TransportChannel (WebSocket by default) owned by a ReconnectSupervisor
- the SubscriptionRegistry, replayed on every Connected transition
- the SignalStore, fed by inbound updates
- the BindingEvaluator for component bindings
- the CommandChannel for writes
- optionally an MQTT topic registry and topic map

Usage::

    async with SyncClient(SyncConfig.from_environment()) as client:
        client.bind("tank-1", {"currentLevel": 0}, [
            {"property": "currentLevel", "signal": "tank.level"},
        ])
        client.set_value("system.demand", 2500)

Cached values are evicted when the last reference to a signal is released,
and updates for signals nobody is subscribed to are dropped.
"""

import asyncio
import logging
import time
from collections import deque
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Union

from .binding.evaluator import BindingEvaluator, BindingSpec, ChangeCallback
from .config import SyncConfig
from .core.signal import Signal
from .core.values import SignalValue, Unset, from_python
from .errors import ConfigurationError, RemoteError, SignalBridgeError
from .store.signal_store import SignalStore, StoreListener
from .sync.backoff import make_backoff
from .sync.commands import CommandChannel, PendingWrite
from .sync.registry import SubscriptionHandle, SubscriptionRegistry
from .sync.supervisor import ConnectionState, ReconnectSupervisor, StateListener
from .transport.channel import TransportChannel, running_in
from .transport.protocol import (
    BatchUpdateMessage,
    ConnectedMessage,
    ErrorMessage,
    InboundMessage,
    MqttUpdateMessage,
    PongMessage,
    SignalUpdateMessage,
    ping_frame,
    subscribe_mqtt_frame,
    unsubscribe_mqtt_frame,
)
from .transport.websocket import WebSocketChannel

logger = logging.getLogger(__name__)

ErrorListener = Callable[[SignalBridgeError], Any]

RATE_WINDOW = 1.0  # seconds


class SyncClient:
    """Explicit service object; create one per backend connection."""

    def __init__(self, config: Optional[SyncConfig] = None, channel: Optional[TransportChannel] = None):
        self.config = (config or SyncConfig()).validate()
        conn = self.config.connection
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._channel = channel or WebSocketChannel(
            open_timeout=conn.open_timeout,
            outbox_size=conn.outbox_size,
        )
        self._supervisor = ReconnectSupervisor(
            self._channel,
            conn.url,
            backoff=make_backoff(conn.backoff, conn.reconnect_interval, conn.max_backoff, conn.jitter),
            max_attempts=conn.max_reconnect_attempts,
            heartbeat_interval=conn.heartbeat_interval,
        )

        self._store = SignalStore()
        self._registry = SubscriptionRegistry(self._supervisor)
        self._registry.on_released(self._evict)
        self._evaluator = BindingEvaluator(self._store, self._registry)
        self._commands = CommandChannel(self._supervisor, self._store)
        self._commands.on_rejected(self._report_error)

        self._topics: Dict[str, Any] = {}
        self._topic_registry: Optional[SubscriptionRegistry] = None
        if self.config.mqtt.enabled:
            self._topic_registry = SubscriptionRegistry(
                self._supervisor,
                frames=(subscribe_mqtt_frame, unsubscribe_mqtt_frame),
                kind="topic",
            )
            self._topic_registry.on_released(self._forget_topic)

        self._supervisor.on_connected(self._on_connected)
        self._supervisor.on_disconnected(self._on_disconnected)
        self._channel.on_message(self._route)

        self._error_listeners: List[ErrorListener] = []
        self._latency_waiters: List[asyncio.Future] = []
        self.last_latency_ms: Optional[float] = None
        self.server_version: Optional[str] = None

        self.messages_received = 0
        self.updates_dropped = 0
        self._receipts: Deque[float] = deque()

    # -------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        """Begin connecting; returns immediately while the supervisor works."""
        logger.info(f"Starting sync client for {self.config.connection.url}")
        self._loop = asyncio.get_running_loop()
        await self._supervisor.start()

    async def stop(self) -> None:
        """Close the connection. Subscriptions and bindings survive a restart."""
        await self._supervisor.stop()
        self._release_latency_waiters()
        logger.info("Sync client stopped")

    async def reconnect(self) -> None:
        await self._supervisor.reconnect()

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until CONNECTED; returns False on timeout or FAILED."""
        if self.connected:
            return True
        loop = asyncio.get_running_loop()
        done = loop.create_future()

        def listener(old: ConnectionState, new: ConnectionState) -> None:
            if done.done():
                return
            if new is ConnectionState.CONNECTED:
                done.set_result(True)
            elif new is ConnectionState.FAILED:
                done.set_result(False)

        self._supervisor.on_state_change(listener)
        try:
            return await asyncio.wait_for(done, timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._supervisor.remove_state_listener(listener)

    async def __aenter__(self) -> "SyncClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------ state

    @property
    def connected(self) -> bool:
        return self._supervisor.connected

    @property
    def state(self) -> ConnectionState:
        return self._supervisor.state

    @property
    def signals(self) -> Mapping[str, Any]:
        """Snapshot of signal name → plain value"""
        return self._store.values

    @property
    def quality(self) -> Mapping[str, str]:
        """Snapshot of signal name → quality"""
        return self._store.qualities

    @property
    def topics(self) -> Mapping[str, Any]:
        """Snapshot of MQTT topic → last payload"""
        return MappingProxyType(dict(self._topics))

    @property
    def store(self) -> SignalStore:
        return self._store

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def evaluator(self) -> BindingEvaluator:
        return self._evaluator

    @property
    def supervisor(self) -> ReconnectSupervisor:
        return self._supervisor

    def get(self, name: str) -> Union[SignalValue, Unset]:
        return self._store.get(name)

    def get_signal(self, name: str) -> Optional[Signal]:
        return self._store.get_signal(name)

    # ---------------------------------------------------------- subscriptions

    def subscribe(self, name: str) -> SubscriptionHandle:
        return self._registry.subscribe(name)

    def unsubscribe(self, name: str) -> bool:
        return self._registry.unsubscribe(name)

    def add_listener(self, callback: StoreListener, signals: Optional[Iterable[str]] = None) -> int:
        return self._store.add_listener(callback, signals)

    def remove_listener(self, listener_id: int) -> bool:
        return self._store.remove_listener(listener_id)

    # --------------------------------------------------------------- bindings

    def bind(
        self,
        component_id: str,
        properties: Mapping[str, Any],
        bindings: Iterable[BindingSpec],
        on_change: Optional[ChangeCallback] = None,
    ) -> Mapping[str, Any]:
        return self._evaluator.attach(component_id, properties, bindings, on_change)

    def unbind(self, component_id: str) -> bool:
        return self._evaluator.detach(component_id)

    def properties(self, component_id: str) -> Mapping[str, Any]:
        return self._evaluator.properties(component_id)

    # ----------------------------------------------------------------- writes

    def set_value(self, signal: str, value: Any) -> PendingWrite:
        return self._commands.set_value(signal, value)

    def batch_set(self, values: Mapping[str, Any]) -> List[PendingWrite]:
        return self._commands.batch_set(values)

    def toggle(self, signal: str) -> PendingWrite:
        return self._commands.toggle(signal)

    def step(self, signal: str, delta: Union[int, float]) -> PendingWrite:
        return self._commands.step(signal, delta)

    # ------------------------------------------------------------------- MQTT

    def subscribe_mqtt(self, topic: str) -> SubscriptionHandle:
        return self._require_mqtt().subscribe(topic)

    def unsubscribe_mqtt(self, topic: str) -> bool:
        return self._require_mqtt().unsubscribe(topic)

    def publish_mqtt(self, topic: str, payload: Any) -> None:
        self._require_mqtt()
        self._commands.publish_mqtt(topic, payload)

    def _require_mqtt(self) -> SubscriptionRegistry:
        if self._topic_registry is None:
            raise ConfigurationError("MQTT passthrough is disabled (mqtt.enabled = false)")
        return self._topic_registry

    def _forget_topic(self, topic: str) -> None:
        self._call_on_loop(self._topics.pop, topic, None)

    def _evict(self, name: str) -> None:
        self._call_on_loop(self._store.evict, name)

    def _call_on_loop(self, callback: Callable[..., Any], *args) -> None:
        """Run store-side effects of a release on the event loop thread."""
        loop = self._loop
        if loop is None or loop.is_closed() or running_in(loop):
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    # ---------------------------------------------------------------- errors

    def add_error_listener(self, listener: ErrorListener) -> None:
        """Receive backend error frames and rejected writes."""
        self._error_listeners.append(listener)

    def remove_error_listener(self, listener: ErrorListener) -> bool:
        try:
            self._error_listeners.remove(listener)
            return True
        except ValueError:
            return False

    def add_state_listener(self, listener: StateListener) -> None:
        self._supervisor.on_state_change(listener)

    def _report_error(self, error: SignalBridgeError) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Error listener failed: {e}", exc_info=True)

    # ---------------------------------------------------------------- latency

    async def measure_latency(self, timeout: float = 5.0) -> Optional[float]:
        """
        Round-trip time of one ping/pong exchange in milliseconds.

        Returns None when not connected or when no pong arrives in time.
        """
        if not self.connected:
            return None
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._latency_waiters.append(waiter)
        started = loop.time()
        try:
            if not self._supervisor.send(ping_frame()):
                return None
            if not await asyncio.wait_for(waiter, timeout):
                return None
        except asyncio.TimeoutError:
            return None
        finally:
            if waiter in self._latency_waiters:
                self._latency_waiters.remove(waiter)

        self.last_latency_ms = (loop.time() - started) * 1000.0
        return self.last_latency_ms

    def _release_latency_waiters(self) -> None:
        for waiter in self._latency_waiters:
            if not waiter.done():
                waiter.set_result(False)
        self._latency_waiters.clear()

    # ---------------------------------------------------------------- routing

    def _on_connected(self) -> None:
        self._registry.replay()
        if self._topic_registry is not None:
            self._topic_registry.replay()

    def _on_disconnected(self) -> None:
        self._registry.connection_lost()
        if self._topic_registry is not None:
            self._topic_registry.connection_lost()
        self._release_latency_waiters()

    def _route(self, message: InboundMessage) -> None:
        self.messages_received += 1
        now = time.monotonic()
        self._receipts.append(now)
        self._prune_receipts(now)
        match message:
            case SignalUpdateMessage(data=data):
                if self._wanted(data.signal):
                    self._store.apply_signal(data.to_signal())
            case BatchUpdateMessage(updates=updates):
                signals = [u.to_signal() for u in updates if self._wanted(u.signal)]
                if signals:
                    self._store.apply_batch(signals)
            case MqttUpdateMessage(data=data):
                self._on_mqtt_update(data.topic, data.payload)
            case ErrorMessage(error=error):
                logger.error(f"Backend error: {error}")
                self._report_error(RemoteError(error))
            case ConnectedMessage(version=version):
                self.server_version = version
                logger.info(f"Backend acknowledged connection (version={version})")
            case PongMessage():
                for waiter in list(self._latency_waiters):
                    if not waiter.done():
                        waiter.set_result(True)

    def _wanted(self, signal: str) -> bool:
        if self._registry.refcount(signal) > 0:
            return True
        self.updates_dropped += 1
        logger.debug(f"Dropping update for unsubscribed signal {signal!r}")
        return False

    def _on_mqtt_update(self, topic: str, payload: Any) -> None:
        if self._topic_registry is None:
            self.updates_dropped += 1
            logger.debug(f"Dropping mqtt_update for {topic!r}: MQTT passthrough disabled")
            return

        if topic in self._topic_registry:
            self._topics[topic] = payload

        prefix = self.config.mqtt.signal_prefix
        if prefix and topic.startswith(prefix):
            signal = topic[len(prefix):]
            if not signal or not self._wanted(signal):
                return
            try:
                value = from_python(payload)
            except TypeError:
                logger.warning(f"Ignoring non-scalar MQTT payload for signal {signal!r}")
                return
            self._store.apply_update(signal, value)

    # ------------------------------------------------------------------ stats

    @property
    def message_rate(self) -> float:
        """Inbound messages per second over the last RATE_WINDOW seconds"""
        self._prune_receipts(time.monotonic())
        return len(self._receipts) / RATE_WINDOW

    def _prune_receipts(self, now: float) -> None:
        horizon = now - RATE_WINDOW
        while self._receipts and self._receipts[0] <= horizon:
            self._receipts.popleft()

    def get_connection_stats(self) -> Dict[str, Any]:
        stats = self._supervisor.get_stats()
        stats.update({
            "subscriptions": len(self._registry),
            "subscribe_frames_sent": self._registry.subscribe_frames_sent,
            "unsubscribe_frames_sent": self._registry.unsubscribe_frames_sent,
            "topics": len(self._topic_registry) if self._topic_registry is not None else 0,
            "signals_cached": len(self._store),
            "messages_received": self.messages_received,
            "message_rate": self.message_rate,
            "updates_dropped": self.updates_dropped,
            "writes_sent": self._commands.writes_sent,
            "writes_rejected": self._commands.writes_rejected,
            "bound_components": len(self._evaluator),
            "last_latency_ms": self.last_latency_ms,
            "server_version": self.server_version,
        })
        return stats
