"""Unit tests for the in-process event bus."""

from __future__ import annotations

import threading

import pytest

from workflow_coordinator.orchestrator.events import (
    Event,
    EventBus,
    EventTimeoutError,
    WorkflowEvents,
    get_event_bus,
    reset_event_bus,
)


def test_listeners_run_in_registration_order() -> None:
    bus = EventBus()
    calls: list[str] = []
    bus.subscribe("stage:completed", "a", lambda e: calls.append("a"))
    bus.subscribe("stage:completed", "b", lambda e: calls.append("b"))
    bus.subscribe("*", "all", lambda e: calls.append("all"))

    bus.publish("stage:completed", {"workflow_id": "wf"})

    assert calls == ["a", "b", "all"]


def test_resubscribing_replaces_handler() -> None:
    bus = EventBus()
    calls: list[str] = []
    bus.subscribe("x", "ui", lambda e: calls.append("old"))
    bus.subscribe("x", "ui", lambda e: calls.append("new"))

    bus.publish("x")

    assert calls == ["new"]
    assert bus.listener_count("x") == 1


def test_failing_listener_does_not_block_others() -> None:
    bus = EventBus()
    calls: list[str] = []

    def boom(event: Event) -> None:
        raise RuntimeError("listener bug")

    bus.subscribe("x", "bad", boom)
    bus.subscribe("x", "good", lambda e: calls.append(e.type))

    bus.publish("x")

    assert calls == ["x"]


def test_unsubscribe_handle_and_by_id() -> None:
    bus = EventBus()
    off = bus.subscribe("x", "a", lambda e: None)
    bus.subscribe("y", "b", lambda e: None)

    off()
    assert bus.listener_count("x") == 0
    assert bus.unsubscribe("y", "b") is True
    assert bus.unsubscribe("y", "b") is False


def test_stale_unsubscribe_handle_keeps_replacement() -> None:
    bus = EventBus()
    off = bus.subscribe("x", "a", lambda e: None)
    bus.subscribe("x", "a", lambda e: None)

    off()

    assert bus.listener_count("x") == 1


def test_history_is_bounded_and_filterable() -> None:
    bus = EventBus(max_history=3)
    for i in range(5):
        bus.publish("tick" if i % 2 == 0 else "tock", {"i": i})

    history = bus.get_history()
    assert [e.payload["i"] for e in history] == [2, 3, 4]
    assert [e.payload["i"] for e in bus.get_history("tick")] == [2, 4]
    assert [e.payload["i"] for e in bus.get_history(limit=1)] == [4]


def test_plugin_hooks_wrap_listeners() -> None:
    bus = EventBus()
    calls: list[str] = []
    bus.subscribe("x", "listener", lambda e: calls.append("listener"))
    bus.register_plugin(
        "audit",
        {
            "pre:x": lambda e: calls.append("pre:x"),
            "pre:*": lambda e: calls.append("pre:*"),
            "post:x": lambda e: calls.append("post:x"),
        },
    )

    bus.publish("x")
    bus.unregister_plugin("audit")
    bus.publish("x")

    assert calls == ["pre:x", "pre:*", "listener", "post:x", "listener"]


def test_failing_plugin_hook_is_isolated() -> None:
    bus = EventBus()
    calls: list[str] = []

    def broken(event: Event) -> None:
        raise ValueError("plugin bug")

    bus.register_plugin("broken", {"pre:*": broken})
    bus.subscribe("x", "listener", lambda e: calls.append("listener"))

    bus.publish("x")

    assert calls == ["listener"]


def test_wait_for_returns_matching_event() -> None:
    bus = EventBus()

    def publish_later() -> None:
        bus.publish(WorkflowEvents.WORKFLOW_COMPLETED, {"workflow_id": "other"})
        bus.publish(WorkflowEvents.WORKFLOW_COMPLETED, {"workflow_id": "wf-1"})

    timer = threading.Timer(0.05, publish_later)
    timer.start()
    try:
        event = bus.wait_for(
            WorkflowEvents.WORKFLOW_COMPLETED,
            timeout_ms=2000,
            filter=lambda e: e.payload["workflow_id"] == "wf-1",
        )
    finally:
        timer.join()

    assert event.payload["workflow_id"] == "wf-1"
    assert bus.listener_count(WorkflowEvents.WORKFLOW_COMPLETED) == 0


def test_wait_for_times_out_and_cleans_up() -> None:
    bus = EventBus()

    with pytest.raises(EventTimeoutError) as exc_info:
        bus.wait_for("never", timeout_ms=20)

    assert exc_info.value.event_type == "never"
    assert bus.listener_count() == 0


def test_stats_and_clear() -> None:
    bus = EventBus()
    bus.subscribe("a", "s1", lambda e: None)
    bus.register_plugin("p", {})
    bus.publish("a")
    bus.publish("a")
    bus.publish("b")

    stats = bus.get_stats()
    assert stats["total_events"] == 3
    assert stats["subscriber_count"] == 1
    assert stats["plugin_count"] == 1
    assert stats["event_counts"] == {"a": 2, "b": 1}

    bus.clear()
    assert bus.get_stats()["total_events"] == 0
    assert bus.listener_count() == 0


def test_event_to_dict_has_id_and_timestamp() -> None:
    event = EventBus().publish("x", {"k": 1})
    data = event.to_dict()
    assert data["id"].startswith("evt_")
    assert data["payload"] == {"k": 1}
    assert data["timestamp"]


def test_default_bus_is_process_wide_until_reset() -> None:
    reset_event_bus()
    first = get_event_bus()
    assert get_event_bus() is first
    reset_event_bus()
    assert get_event_bus() is not first
    reset_event_bus()
