"""
Subscription Registry

Reference-counted registry of the signal names some binding currently wants.
The registry is the only authority over desired-subscription state; the
refcount of a name is by construction the number of live SubscriptionHandles
for it.

Wire bookkeeping: the registry remembers which names have been subscribed on
the current connection. A 0→1 transition sends a subscribe frame only when
connected; otherwise the name waits for ``replay`` on the next Connected
transition. ``connection_lost`` forgets the wire state, so each desired name is
subscribed exactly once per connection.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from ..transport.protocol import subscribe_frame, unsubscribe_frame

logger = logging.getLogger(__name__)

FrameBuilder = Callable[[str], Mapping[str, Any]]
ReleaseListener = Callable[[str], Any]


class FrameSink(Protocol):
    """Anything that can report connectivity and send frames (the supervisor)."""

    @property
    def connected(self) -> bool: ...

    def send(self, message: Mapping[str, Any]) -> bool: ...


class SubscriptionHandle:
    """
    Proof of one reference on a subscription.

    ``release`` is idempotent; a handle can also be used as a context manager.
    """

    __slots__ = ("name", "_registry", "_released")

    def __init__(self, name: str, registry: "SubscriptionRegistry"):
        self.name = name
        self._registry = registry
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released

    def release(self) -> bool:
        """Drop this reference. Returns False if it was already released."""
        return self._registry._release(self)

    def __enter__(self) -> "SubscriptionHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self):
        state = "released" if self._released else "active"
        return f"SubscriptionHandle({self.name!r}, {state})"


class SubscriptionRegistry:
    """
    Refcounted subscriptions that survive reconnects.

    All mutations are serialized by a re-entrant lock so refcounts can never
    tear or go negative. They may be called from threads other than the event
    loop's; release listeners then run on the calling thread.
    """

    def __init__(
        self,
        sink: Optional[FrameSink] = None,
        frames: Tuple[FrameBuilder, FrameBuilder] = (subscribe_frame, unsubscribe_frame),
        kind: str = "signal",
    ):
        self._sink = sink
        self._subscribe_frame, self._unsubscribe_frame = frames
        self.kind = kind

        self._handles: Dict[str, List[SubscriptionHandle]] = {}
        self._wire: Set[str] = set()
        self._lock = threading.RLock()
        self._release_listeners: List[ReleaseListener] = []

        self.subscribe_frames_sent = 0
        self.unsubscribe_frames_sent = 0

    def attach(self, sink: FrameSink) -> None:
        with self._lock:
            self._sink = sink

    def on_released(self, listener: ReleaseListener) -> None:
        """Register a callback fired when a name's refcount returns to zero."""
        self._release_listeners.append(listener)

    # ---------------------------------------------------------------- queries

    def refcount(self, name: str) -> int:
        with self._lock:
            return len(self._handles.get(name, ()))

    def active(self) -> List[str]:
        """Names with a nonzero refcount, in first-subscribed order."""
        with self._lock:
            return list(self._handles)

    def on_wire(self, name: str) -> bool:
        with self._lock:
            return name in self._wire

    def __contains__(self, name: str) -> bool:
        return self.refcount(name) > 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    # -------------------------------------------------------------- mutations

    def subscribe(self, name: str) -> SubscriptionHandle:
        """Take one reference on ``name``; sends a subscribe frame on 0→1."""
        if not name:
            raise ValueError(f"{self.kind} name must not be empty")

        with self._lock:
            handle = SubscriptionHandle(name, self)
            handles = self._handles.setdefault(name, [])
            handles.append(handle)
            if len(handles) == 1:
                logger.debug(f"Subscribing {self.kind} {name!r}")
                self._send_subscribe(name)
            return handle

    def unsubscribe(self, name: str) -> bool:
        """
        Drop one reference on ``name`` (the oldest live handle).

        A name at refcount 0 is a no-op and returns False.
        """
        with self._lock:
            handles = self._handles.get(name)
            if not handles:
                return False
            return self._release(handles[0])

    def _release(self, handle: SubscriptionHandle) -> bool:
        with self._lock:
            if handle._released:
                return False
            handle._released = True

            name = handle.name
            handles = self._handles.get(name)
            if handles is None or handle not in handles:
                return False
            handles.remove(handle)
            if handles:
                return True

            del self._handles[name]
            logger.debug(f"Unsubscribing {self.kind} {name!r}")
            if name in self._wire:
                self._wire.discard(name)
                if self._sink is not None and self._sink.connected:
                    if self._sink.send(self._unsubscribe_frame(name)):
                        self.unsubscribe_frames_sent += 1

            for listener in list(self._release_listeners):
                try:
                    listener(name)
                except Exception as e:
                    logger.error(f"Release listener failed for {name!r}: {e}", exc_info=True)
            return True

    # ------------------------------------------------------- connection hooks

    def replay(self) -> List[str]:
        """
        Subscribe every desired name that is not yet on the wire.

        Called on entering Connected. The lock is held for the whole replay,
        so concurrent subscribe/unsubscribe calls wait until it is complete.

        Returns:
            Names for which a subscribe frame was sent
        """
        with self._lock:
            sent = []
            for name in list(self._handles):
                if name in self._wire:
                    continue
                if self._send_subscribe(name):
                    sent.append(name)
            if sent:
                logger.info(f"Replayed {len(sent)} {self.kind} subscription(s)")
            return sent

    def connection_lost(self) -> None:
        """Forget wire state; everything desired will be replayed on reconnect."""
        with self._lock:
            self._wire.clear()

    def clear(self) -> None:
        """Release every handle (teardown)."""
        with self._lock:
            for handles in list(self._handles.values()):
                for handle in list(handles):
                    handle.release()

    def _send_subscribe(self, name: str) -> bool:
        if self._sink is None or not self._sink.connected:
            return False
        if not self._sink.send(self._subscribe_frame(name)):
            return False
        self._wire.add(name)
        self.subscribe_frames_sent += 1
        return True
