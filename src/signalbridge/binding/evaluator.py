"""
Binding Evaluator

Turns store notifications into property values for visual components.

For every attached component the evaluator holds one subscription handle per
binding and one store listener scoped to the component's signals. When any of
those signals change, the affected bindings are re-evaluated and, if a
property actually changed, a new read-only snapshot replaces the old one.
Snapshots are never mutated after publication, so a renderer holding one can
keep using it safely.

A binding failure (unparseable transform, runtime error, bad format spec) is
logged and leaves the property at its previous value.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from ..core.binding import Binding
from ..core.values import UNSET, to_python
from ..errors import TransformError
from ..store.signal_store import SignalStore
from ..sync.registry import SubscriptionHandle, SubscriptionRegistry
from .transform import Transform, compile_transform

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, Mapping[str, Any]], Any]
BindingSpec = Union[Binding, Mapping[str, Any]]

_MISSING = object()


@dataclass
class _CompiledBinding:
    binding: Binding
    transform: Optional[Transform] = None
    compile_error: Optional[str] = None


@dataclass
class _Component:
    component_id: str
    bindings: List[_CompiledBinding]
    properties: Mapping[str, Any]
    on_change: Optional[ChangeCallback] = None
    handles: List[SubscriptionHandle] = field(default_factory=list)
    listener_id: Optional[int] = None

    @property
    def signals(self) -> FrozenSet[str]:
        return frozenset(b.binding.signal for b in self.bindings)


class BindingEvaluator:
    """Evaluates component bindings against the signal store."""

    def __init__(self, store: SignalStore, registry: SubscriptionRegistry):
        self._store = store
        self._registry = registry
        self._components: Dict[str, _Component] = {}
        self.evaluations = 0
        self.errors = 0

    # -------------------------------------------------------------- lifecycle

    def attach(
        self,
        component_id: str,
        properties: Mapping[str, Any],
        bindings: Iterable[BindingSpec],
        on_change: Optional[ChangeCallback] = None,
    ) -> Mapping[str, Any]:
        """
        Bind a component's properties to signals.

        Args:
            component_id: Unique component identifier; re-attaching replaces
                the previous bindings
            properties: Initial property values; copied, never mutated
            bindings: Binding models or dicts with property/signal/transform/format
            on_change: Called with (component_id, snapshot) after each change

        Returns:
            The initial property snapshot, already evaluated for signals the
            store has values for
        """
        if component_id in self._components:
            self.detach(component_id)

        compiled = [self._compile(component_id, b) for b in bindings]
        component = _Component(
            component_id=component_id,
            bindings=compiled,
            properties=MappingProxyType(dict(properties)),
            on_change=on_change,
        )
        self._components[component_id] = component

        for entry in compiled:
            component.handles.append(self._registry.subscribe(entry.binding.signal))

        if compiled:
            component.listener_id = self._store.add_listener(
                lambda changed, cid=component_id: self._on_store_change(cid, changed),
                component.signals,
            )

        present = frozenset(s for s in component.signals if s in self._store)
        if present:
            self._evaluate(component, present, notify=False)

        logger.debug(f"Attached {component_id} with {len(compiled)} binding(s)")
        return component.properties

    def detach(self, component_id: str) -> bool:
        """Release every subscription and the store listener of a component."""
        component = self._components.pop(component_id, None)
        if component is None:
            return False
        if component.listener_id is not None:
            self._store.remove_listener(component.listener_id)
        for handle in component.handles:
            handle.release()
        component.handles.clear()
        logger.debug(f"Detached {component_id}")
        return True

    def detach_all(self) -> None:
        for component_id in list(self._components):
            self.detach(component_id)

    # ----------------------------------------------------------------- access

    def properties(self, component_id: str) -> Mapping[str, Any]:
        component = self._components.get(component_id)
        if component is None:
            raise KeyError(f"Component not attached: {component_id}")
        return component.properties

    def components(self) -> List[str]:
        return list(self._components)

    def __contains__(self, component_id: str) -> bool:
        return component_id in self._components

    def __len__(self) -> int:
        return len(self._components)

    # ------------------------------------------------------------- evaluation

    def _compile(self, component_id: str, spec: BindingSpec) -> _CompiledBinding:
        binding = spec if isinstance(spec, Binding) else Binding.model_validate(spec)
        if binding.transform is None:
            return _CompiledBinding(binding)
        try:
            return _CompiledBinding(binding, transform=compile_transform(binding.transform))
        except TransformError as e:
            self.errors += 1
            logger.error(
                f"Invalid transform for {component_id}.{binding.property}: "
                f"{binding.transform!r}: {e}"
            )
            return _CompiledBinding(binding, compile_error=str(e))

    def _on_store_change(self, component_id: str, changed: FrozenSet[str]) -> None:
        component = self._components.get(component_id)
        if component is None:
            return
        self._evaluate(component, changed, notify=True)

    def _evaluate(self, component: _Component, changed: FrozenSet[str], notify: bool) -> None:
        updated: Dict[str, Any] = {}
        for entry in component.bindings:
            if entry.binding.signal not in changed:
                continue
            result = self._evaluate_binding(component.component_id, entry)
            if result is not _MISSING:
                updated[entry.binding.property] = result

        if not updated:
            return
        current = component.properties
        if all(k in current and current[k] == v and type(current[k]) is type(v) for k, v in updated.items()):
            return

        snapshot = dict(current)
        snapshot.update(updated)
        component.properties = MappingProxyType(snapshot)

        if notify and component.on_change is not None:
            try:
                component.on_change(component.component_id, component.properties)
            except Exception as e:
                logger.error(f"Change callback for {component.component_id} failed: {e}", exc_info=True)

    def _evaluate_binding(self, component_id: str, entry: _CompiledBinding) -> Any:
        binding = entry.binding
        if entry.compile_error is not None:
            logger.debug(f"Skipping {component_id}.{binding.property}: transform does not compile")
            return _MISSING

        value = self._store.get(binding.signal)
        if value is UNSET:
            return _MISSING

        self.evaluations += 1
        result = to_python(value)
        try:
            if entry.transform is not None:
                result = entry.transform(result)
            if binding.format is not None:
                result = format(result, binding.format)
        except TransformError as e:
            self.errors += 1
            logger.error(f"Transform for {component_id}.{binding.property} failed: {e}")
            return _MISSING
        except (ValueError, TypeError) as e:
            self.errors += 1
            logger.error(
                f"Format {binding.format!r} for {component_id}.{binding.property} failed: {e}"
            )
            return _MISSING
        return result
