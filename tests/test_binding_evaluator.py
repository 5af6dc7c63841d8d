"""
Tests for the binding evaluator.
"""

import logging

import pytest
from pydantic import ValidationError

from signalbridge.binding import BindingEvaluator
from signalbridge.core import Binding
from signalbridge.store import SignalStore
from signalbridge.sync.registry import SubscriptionRegistry


@pytest.fixture
def store():
    return SignalStore()


@pytest.fixture
def registry(sink):
    return SubscriptionRegistry(sink)


@pytest.fixture
def evaluator(store, registry):
    return BindingEvaluator(store, registry)


def test_attach_subscribes_and_tracks_updates(evaluator, store, registry, sink):
    initial = {"currentLevel": 0, "label": "Tank 1"}
    snapshot = evaluator.attach("tank-1", initial, [
        {"property": "currentLevel", "signal": "tank.level"},
    ])
    assert snapshot == initial
    assert registry.refcount("tank.level") == 1
    assert sink.frames("subscribe_signal") == [{"type": "subscribe_signal", "signal": "tank.level"}]

    store.apply_update("tank.level", 12.5)
    assert evaluator.properties("tank-1")["currentLevel"] == 12.5
    assert evaluator.properties("tank-1")["label"] == "Tank 1"
    assert initial["currentLevel"] == 0
    print("✓ Bound property follows the signal")


def test_snapshots_are_replaced_not_mutated(evaluator, store):
    changes = []
    evaluator.attach(
        "tank-1",
        {"currentLevel": 0},
        [Binding(property="currentLevel", signal="tank.level")],
        on_change=lambda cid, props: changes.append((cid, props)),
    )
    before = evaluator.properties("tank-1")

    store.apply_update("tank.level", 4)
    after = evaluator.properties("tank-1")

    assert before is not after
    assert before["currentLevel"] == 0
    assert after["currentLevel"] == 4
    assert changes == [("tank-1", after)]

    with pytest.raises(TypeError):
        after["currentLevel"] = 5


def test_unchanged_values_do_not_publish(evaluator, store):
    changes = []
    evaluator.attach("tank-1", {}, [{"property": "level", "signal": "tank.level"}],
                     on_change=lambda cid, props: changes.append(props))
    store.apply_update("tank.level", 4)
    store.apply_update("tank.level", 4)
    assert len(changes) == 1

    # 1 and True are different property values
    store.apply_update("tank.level", 1)
    store.apply_update("tank.level", True)
    assert len(changes) == 3


def test_status_transform(evaluator, store):
    evaluator.attach("pump-1", {"status": "unknown"}, [
        {"property": "status", "signal": "pump1.running", "transform": "value ? 'running' : 'stopped'"},
    ])
    store.apply_update("pump1.running", True)
    assert evaluator.properties("pump-1")["status"] == "running"
    store.apply_update("pump1.running", False)
    assert evaluator.properties("pump-1")["status"] == "stopped"


def test_malformed_transform_keeps_prior_value(evaluator, store, caplog):
    with caplog.at_level(logging.ERROR, logger="signalbridge"):
        evaluator.attach("pump-1", {"status": "unknown"}, [
            {"property": "status", "signal": "pump1.running", "transform": "value ? 'running'"},
        ])
        store.apply_update("pump1.running", True)

    assert evaluator.properties("pump-1")["status"] == "unknown"
    assert "Invalid transform" in caplog.text
    assert evaluator.errors == 1


def test_runtime_failure_keeps_prior_value(evaluator, store, caplog):
    evaluator.attach("ratio", {"ratio": None}, [
        {"property": "ratio", "signal": "flow", "transform": "10 / value"},
    ])
    store.apply_update("flow", 5)
    assert evaluator.properties("ratio")["ratio"] == 2

    with caplog.at_level(logging.ERROR, logger="signalbridge"):
        store.apply_update("flow", 0)
    assert evaluator.properties("ratio")["ratio"] == 2
    assert "Division by zero" in caplog.text


def test_format_spec(evaluator, store):
    evaluator.attach("gauge", {"text": ""}, [
        {"property": "text", "signal": "tank.level", "format": ".1f"},
        {"property": "percent", "signal": "tank.fill", "transform": "value / 100", "format": ".0%"},
        {"property": "broken", "signal": "tank.level", "format": "d"},
    ])
    store.apply_update("tank.level", 12.46)
    store.apply_update("tank.fill", 42)

    props = evaluator.properties("gauge")
    assert props["text"] == "12.5"
    assert props["percent"] == "42%"
    assert "broken" not in props


def test_attach_uses_existing_values(evaluator, store):
    store.apply_update("tank.level", 7)
    snapshot = evaluator.attach("tank-1", {"level": 0}, [{"property": "level", "signal": "tank.level"}])
    assert snapshot["level"] == 7


def test_batch_produces_one_snapshot(evaluator, store):
    changes = []
    evaluator.attach("pump-1", {}, [
        {"property": "running", "signal": "pump1.running"},
        {"property": "speed", "signal": "pump1.speed"},
    ], on_change=lambda cid, props: changes.append(props))

    store.apply_batch([
        {"signal": "pump1.running", "value": True},
        {"signal": "pump1.speed", "value": 1450},
    ])
    assert changes == [{"running": True, "speed": 1450}]


def test_detach_releases_subscriptions(evaluator, store, registry, sink):
    evaluator.attach("pump-1", {}, [
        {"property": "running", "signal": "pump1.running"},
        {"property": "label", "signal": "pump1.running", "transform": "value ? 'on' : 'off'"},
    ])
    assert registry.refcount("pump1.running") == 2
    assert store.listener_count == 1

    assert evaluator.detach("pump-1")
    assert not evaluator.detach("pump-1")
    assert registry.refcount("pump1.running") == 0
    assert store.listener_count == 0
    assert len(sink.frames("unsubscribe_signal")) == 1

    with pytest.raises(KeyError):
        evaluator.properties("pump-1")


def test_reattach_replaces_bindings(evaluator, registry):
    evaluator.attach("c", {}, [{"property": "x", "signal": "a"}])
    evaluator.attach("c", {}, [{"property": "x", "signal": "b"}])
    assert registry.refcount("a") == 0
    assert registry.refcount("b") == 1
    assert len(evaluator) == 1

    evaluator.detach_all()
    assert len(evaluator) == 0
    assert registry.refcount("b") == 0


def test_deeply_nested_transform_keeps_prior_value(evaluator, store, caplog):
    with caplog.at_level(logging.ERROR, logger="signalbridge"):
        evaluator.attach("tank-1", {"level": 0}, [
            {"property": "level", "signal": "tank.level", "transform": "(" * 63 + "value" + ")" * 63},
        ])
        store.apply_update("tank.level", 5)
    assert evaluator.properties("tank-1")["level"] == 0
    assert "nested too deeply" in caplog.text


@pytest.mark.parametrize("spec", [">1000000000", ".1000000000f", "0>99999"])
def test_oversized_format_is_rejected(evaluator, registry, spec):
    with pytest.raises(ValidationError):
        Binding(property="text", signal="tank.level", format=spec)
    with pytest.raises(ValidationError):
        evaluator.attach("gauge", {}, [{"property": "text", "signal": "tank.level", "format": spec}])
    assert "gauge" not in evaluator
    assert registry.refcount("tank.level") == 0
    assert Binding(property="text", signal="tank.level", format=">200").format == ">200"
