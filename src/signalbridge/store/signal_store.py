"""
Signal Store - Authoritative In-Memory Mirror

Holds the latest value and quality of every signal the client currently
receives. The store is mutated only through ``apply_update`` and
``apply_batch``; everything else sees it read-only.

Listener dispatch is push-based and scoped: a listener declares the signal
names it is interested in and is called with exactly the subset of changed
names it cares about. A batch is written completely before any listener runs,
and each listener runs at most once per batch, so no listener ever observes a
half-applied batch.
"""

import itertools
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    Any, Callable, Deque, Dict, FrozenSet, Iterable, Iterator, Mapping,
    Optional, Set, Union,
)

from ..core.signal import Quality, Signal, now_ms
from ..core.values import UNSET, SignalValue, Unset, from_python

logger = logging.getLogger(__name__)

StoreListener = Callable[[FrozenSet[str]], Any]
BatchEntry = Union[Signal, Mapping[str, Any]]


@dataclass
class _Listener:
    listener_id: int
    callback: StoreListener
    signals: Optional[FrozenSet[str]]  # None means every signal


class SignalStore:
    """
    Map from signal name to latest Signal with scoped change notification.
    """

    def __init__(self):
        self._signals: Dict[str, Signal] = {}
        self._listeners: Dict[int, _Listener] = {}
        self._by_signal: Dict[str, Set[int]] = defaultdict(set)
        self._wildcard: Set[int] = set()
        self._ids = itertools.count(1)

        # Re-entrant notifications are queued and delivered in order
        self._dispatching = False
        self._pending: Deque[FrozenSet[str]] = deque()

        self.updates_applied = 0
        self.batches_applied = 0
        self.listener_errors = 0

    # ------------------------------------------------------------------ reads

    def get(self, name: str) -> Union[SignalValue, Unset]:
        """Current value of a signal, or UNSET if none has been received."""
        signal = self._signals.get(name)
        return signal.value if signal is not None else UNSET

    def get_signal(self, name: str) -> Optional[Signal]:
        return self._signals.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._signals

    def __len__(self) -> int:
        return len(self._signals)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._signals))

    @property
    def values(self) -> Mapping[str, Any]:
        """Read-only snapshot: name → plain Python value"""
        return MappingProxyType({name: s.raw for name, s in self._signals.items()})

    @property
    def qualities(self) -> Mapping[str, str]:
        """Read-only snapshot: name → quality string"""
        return MappingProxyType({name: s.quality.value for name, s in self._signals.items()})

    # ----------------------------------------------------------------- writes

    def apply_update(
        self,
        name: str,
        value: Any,
        quality: Union[Quality, str, None] = None,
        timestamp: Optional[int] = None,
    ) -> Signal:
        """
        Replace the stored state of one signal (last received wins).

        Args:
            name: Signal name
            value: SignalValue or plain bool/number/str/None
            quality: Quality or wire string; missing means good
            timestamp: Backend timestamp in ms; defaults to now

        Returns:
            The stored Signal
        """
        signal = self._build(name, value, quality, timestamp)
        self._signals[name] = signal
        self.updates_applied += 1
        self._notify(frozenset((name,)))
        return signal

    def apply_signal(self, signal: Signal) -> Signal:
        self._signals[signal.name] = signal
        self.updates_applied += 1
        self._notify(frozenset((signal.name,)))
        return signal

    def apply_batch(self, updates: Iterable[BatchEntry]) -> FrozenSet[str]:
        """
        Apply many updates atomically from a listener's point of view.

        Every entry is validated first, then all are written, then listeners
        are notified once. A later entry for the same name wins.

        Returns:
            The set of changed signal names
        """
        signals = [self._coerce_entry(entry) for entry in updates]
        if not signals:
            return frozenset()

        for signal in signals:
            self._signals[signal.name] = signal

        changed = frozenset(s.name for s in signals)
        self.updates_applied += len(signals)
        self.batches_applied += 1
        self._notify(changed)
        return changed

    def evict(self, name: str) -> bool:
        """Drop the cached state of one signal. No listener is notified."""
        return self._signals.pop(name, None) is not None

    def clear(self) -> None:
        self._signals.clear()

    # -------------------------------------------------------------- listeners

    def add_listener(self, callback: StoreListener, signals: Optional[Iterable[str]] = None) -> int:
        """
        Register a change listener.

        Args:
            callback: Called with the frozenset of changed names of interest
            signals: Names of interest; None subscribes to every signal

        Returns:
            Listener id for ``remove_listener``
        """
        listener_id = next(self._ids)
        interest = frozenset(signals) if signals is not None else None
        self._listeners[listener_id] = _Listener(listener_id, callback, interest)
        self._index(listener_id, interest)
        return listener_id

    def update_listener(self, listener_id: int, signals: Optional[Iterable[str]]) -> None:
        listener = self._listeners.get(listener_id)
        if listener is None:
            return
        self._unindex(listener_id, listener.signals)
        listener.signals = frozenset(signals) if signals is not None else None
        self._index(listener_id, listener.signals)

    def remove_listener(self, listener_id: int) -> bool:
        listener = self._listeners.pop(listener_id, None)
        if listener is None:
            return False
        self._unindex(listener_id, listener.signals)
        return True

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    # ---------------------------------------------------------------- helpers

    def _index(self, listener_id: int, interest: Optional[FrozenSet[str]]) -> None:
        if interest is None:
            self._wildcard.add(listener_id)
            return
        for name in interest:
            self._by_signal[name].add(listener_id)

    def _unindex(self, listener_id: int, interest: Optional[FrozenSet[str]]) -> None:
        if interest is None:
            self._wildcard.discard(listener_id)
            return
        for name in interest:
            ids = self._by_signal.get(name)
            if ids is None:
                continue
            ids.discard(listener_id)
            if not ids:
                del self._by_signal[name]

    def _notify(self, changed: FrozenSet[str]) -> None:
        if self._dispatching:
            self._pending.append(changed)
            return

        self._dispatching = True
        try:
            batch = changed
            while True:
                self._dispatch(batch)
                if not self._pending:
                    break
                batch = self._pending.popleft()
        finally:
            self._dispatching = False

    def _dispatch(self, changed: FrozenSet[str]) -> None:
        targets: Set[int] = set(self._wildcard)
        for name in changed:
            targets.update(self._by_signal.get(name, ()))

        for listener_id in sorted(targets):
            listener = self._listeners.get(listener_id)
            if listener is None:
                continue
            relevant = changed if listener.signals is None else changed & listener.signals
            if not relevant:
                continue
            try:
                listener.callback(relevant)
            except Exception as e:
                self.listener_errors += 1
                logger.error(f"Signal store listener {listener_id} failed: {e}", exc_info=True)

    @staticmethod
    def _build(name: str, value: Any, quality: Union[Quality, str, None], timestamp: Optional[int]) -> Signal:
        if not isinstance(quality, Quality):
            quality = Quality.parse(quality)
        return Signal(
            name=name,
            value=from_python(value),
            quality=quality,
            timestamp=int(timestamp) if timestamp is not None else now_ms(),
        )

    def _coerce_entry(self, entry: BatchEntry) -> Signal:
        if isinstance(entry, Signal):
            return entry
        name = entry.get("signal", entry.get("name"))
        if not name:
            raise ValueError(f"Batch entry without signal name: {entry!r}")
        return self._build(name, entry.get("value"), entry.get("quality"), entry.get("timestamp"))
