"""
Tests for the reference-counted subscription registry.
"""

import random
import threading

import pytest

from conftest import RecordingSink
from signalbridge.sync.registry import SubscriptionRegistry
from signalbridge.transport.protocol import subscribe_mqtt_frame, unsubscribe_mqtt_frame


def test_shared_subscription_sends_one_frame_each_way(sink):
    registry = SubscriptionRegistry(sink)

    first = registry.subscribe("pump1.running")
    second = registry.subscribe("pump1.running")
    assert registry.refcount("pump1.running") == 2
    assert len(sink.frames("subscribe_signal")) == 1

    first.release()
    assert registry.refcount("pump1.running") == 1
    assert sink.frames("unsubscribe_signal") == []

    second.release()
    assert registry.refcount("pump1.running") == 0
    assert sink.frames("unsubscribe_signal") == [
        {"type": "unsubscribe_signal", "signal": "pump1.running"},
    ]
    print("✓ Refcounted subscribe/unsubscribe works")


def test_unsubscribe_at_zero_is_noop(sink):
    registry = SubscriptionRegistry(sink)
    assert registry.unsubscribe("never.subscribed") is False
    assert sink.sent == []

    handle = registry.subscribe("a")
    assert registry.unsubscribe("a") is True
    assert registry.unsubscribe("a") is False
    assert handle.release() is False
    assert len(sink.frames("unsubscribe_signal")) == 1


def test_handle_release_is_idempotent_and_scoped():
    registry = SubscriptionRegistry(RecordingSink())
    with registry.subscribe("a") as handle:
        assert handle.active
        assert "a" in registry
    assert not handle.active
    assert "a" not in registry
    assert handle.release() is False


def test_subscribe_while_disconnected_waits_for_replay():
    sink = RecordingSink(connected=False)
    registry = SubscriptionRegistry(sink)
    registry.subscribe("well.running")
    registry.subscribe("tank.level")
    assert sink.sent == []

    sink.connected = True
    assert registry.replay() == ["well.running", "tank.level"]
    assert registry.replay() == []
    assert len(sink.frames("subscribe_signal")) == 2


def test_replay_after_connection_loss_subscribes_exactly_once(sink):
    registry = SubscriptionRegistry(sink)
    registry.subscribe("well.running")
    registry.subscribe("well.running")
    sink.sent.clear()

    sink.connected = False
    registry.connection_lost()
    assert not registry.on_wire("well.running")

    sink.connected = True
    registry.replay()
    registry.replay()
    assert sink.frames("subscribe_signal") == [
        {"type": "subscribe_signal", "signal": "well.running"},
    ]


def test_release_while_disconnected_sends_nothing():
    sink = RecordingSink()
    registry = SubscriptionRegistry(sink)
    handle = registry.subscribe("a")

    sink.connected = False
    registry.connection_lost()
    handle.release()
    sink.connected = True

    assert sink.frames("unsubscribe_signal") == []
    assert registry.replay() == []


def test_release_listener_fires_on_zero(sink):
    released = []
    registry = SubscriptionRegistry(sink)
    registry.on_released(released.append)

    a1 = registry.subscribe("a")
    a2 = registry.subscribe("a")
    a1.release()
    assert released == []
    a2.release()
    assert released == ["a"]


def test_clear_releases_everything(sink):
    registry = SubscriptionRegistry(sink)
    handles = [registry.subscribe(name) for name in ("a", "b", "a")]
    registry.clear()
    assert len(registry) == 0
    assert all(not h.active for h in handles)
    assert len(sink.frames("unsubscribe_signal")) == 2


def test_empty_name_is_rejected(sink):
    registry = SubscriptionRegistry(sink)
    with pytest.raises(ValueError):
        registry.subscribe("")


def test_refcount_matches_live_handles_under_random_interleaving(sink):
    rng = random.Random(1234)
    registry = SubscriptionRegistry(sink)
    names = ["a", "b", "c"]
    live = {name: [] for name in names}

    for _ in range(500):
        name = rng.choice(names)
        action = rng.random()
        if action < 0.45:
            live[name].append(registry.subscribe(name))
        elif action < 0.75 and live[name]:
            live[name].pop(rng.randrange(len(live[name]))).release()
        elif action < 0.9:
            removed = registry.unsubscribe(name)
            if live[name]:
                assert removed
                # the registry releases the oldest handle
                live[name].pop(0)
            else:
                assert not removed
        else:
            sink.connected = not sink.connected
            if sink.connected:
                registry.replay()
            else:
                registry.connection_lost()

        for n in names:
            assert registry.refcount(n) == len(live[n]) >= 0


def test_concurrent_subscribe_from_threads(sink):
    registry = SubscriptionRegistry(sink)
    handles = []
    lock = threading.Lock()

    def worker():
        for _ in range(200):
            handle = registry.subscribe("shared")
            with lock:
                handles.append(handle)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert registry.refcount("shared") == 800
    assert len(sink.frames("subscribe_signal")) == 1

    for handle in handles:
        handle.release()
    assert registry.refcount("shared") == 0
    assert len(sink.frames("unsubscribe_signal")) == 1


def test_topic_registry_uses_mqtt_frames(sink):
    topics = SubscriptionRegistry(
        sink, frames=(subscribe_mqtt_frame, unsubscribe_mqtt_frame), kind="topic",
    )
    handle = topics.subscribe("plant/status")
    handle.release()
    assert [f["type"] for f in sink.sent] == ["subscribe_mqtt", "unsubscribe_mqtt"]
