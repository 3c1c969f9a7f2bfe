"""In-process event bus for workflow lifecycle events.

Publishers and listeners never talk to each other directly: the state machine
publishes, and UI bridges, notifiers and agents subscribe by event type.

Delivery is synchronous and in registration order. A listener or plugin that
raises is logged and skipped; later listeners still run.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


logger = logging.getLogger(__name__)

WILDCARD = "*"


class WorkflowEvents:
    """Event type names published by the coordinator."""

    WORKFLOW_INITIALIZED = "workflow:initialized"
    WORKFLOW_STARTED = "workflow:started"
    WORKFLOW_COMPLETED = "workflow:completed"
    WORKFLOW_FAILED = "workflow:failed"
    WORKFLOW_CANCELLED = "workflow:cancelled"
    WORKFLOW_ROLLED_BACK = "workflow:rolledBack"

    STAGE_STARTED = "stage:started"
    STAGE_COMPLETED = "stage:completed"
    STAGE_FAILED = "stage:failed"
    STAGE_SKIPPED = "stage:skipped"
    STAGE_RETRYING = "stage:retrying"

    ARTIFACT_CREATED = "artifact:created"
    ARTIFACT_VALIDATED = "artifact:validated"
    ARTIFACT_INVALID = "artifact:invalid"

    AGENT_STARTED = "agent:started"
    AGENT_COMPLETED = "agent:completed"
    AGENT_ERROR = "agent:error"
    AGENT_HANDOFF = "agent:handoff"

    STATE_SAVED = "state:saved"
    STATE_LOADED = "state:loaded"
    HEALTH_CHECK = "health:check"
    METRICS_UPDATED = "metrics:updated"


@dataclass(frozen=True, slots=True)
class Event:
    type: str
    payload: dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "id": self.id,
        }


EventHandler = Callable[[Event], object]
Plugin = Mapping[str, EventHandler]


class EventTimeoutError(TimeoutError):
    """Raised by :meth:`EventBus.wait_for` when no matching event arrives in time."""

    def __init__(self, event_type: str, timeout_ms: int) -> None:
        super().__init__(f"Timeout waiting for event: {event_type} ({timeout_ms}ms)")
        self.event_type = event_type
        self.timeout_ms = timeout_ms


class EventBus:
    """Publish/subscribe hub with bounded history and plugin hooks.

    Listeners are keyed by ``(event_type, subscriber_id)``; subscribing again
    with the same pair replaces the previous handler. The event type ``"*"``
    receives every event.

    Plugins are mappings of hook name to callable. Recognised hook names are
    ``pre:<type>``, ``post:<type>``, ``pre:*`` and ``post:*``.
    """

    def __init__(self, max_history: int = 100) -> None:
        self._history: deque[Event] = deque(maxlen=max_history)
        self._listeners: dict[str, dict[str, EventHandler]] = {}
        self._plugins: dict[str, Plugin] = {}
        self._lock = threading.RLock()

    # -- publishing ---------------------------------------------------------

    def publish(self, event_type: str, payload: Mapping[str, Any] | None = None) -> Event:
        event = Event(type=event_type, payload=dict(payload or {}))

        with self._lock:
            self._history.append(event)
            handlers = list(self._listeners.get(event_type, {}).items())
            if event_type != WILDCARD:
                handlers.extend(self._listeners.get(WILDCARD, {}).items())

        self._run_hooks("pre", event)
        for subscriber_id, handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"event_type": event_type, "subscriber_id": subscriber_id},
                )
        self._run_hooks("post", event)
        return event

    def _run_hooks(self, timing: str, event: Event) -> None:
        with self._lock:
            plugins = list(self._plugins.items())

        for plugin_id, plugin in plugins:
            for hook_name in (f"{timing}:{event.type}", f"{timing}:{WILDCARD}"):
                hook = plugin.get(hook_name)
                if hook is None:
                    continue
                try:
                    hook(event)
                except Exception:
                    logger.warning(
                        "Plugin hook failed",
                        exc_info=True,
                        extra={"plugin_id": plugin_id, "hook": hook_name},
                    )

    # -- subscriptions ------------------------------------------------------

    def subscribe(
        self, event_type: str, subscriber_id: str, handler: EventHandler
    ) -> Callable[[], None]:
        """Register ``handler`` and return a callable that unsubscribes it."""

        with self._lock:
            listeners = self._listeners.setdefault(event_type, {})
            # Re-inserting moves a replaced subscriber to the end of the order.
            listeners.pop(subscriber_id, None)
            listeners[subscriber_id] = handler

        def _unsubscribe() -> None:
            self._remove(event_type, subscriber_id, handler)

        return _unsubscribe

    def unsubscribe(self, event_type: str, subscriber_id: str) -> bool:
        with self._lock:
            listeners = self._listeners.get(event_type)
            if not listeners or subscriber_id not in listeners:
                return False
            del listeners[subscriber_id]
            if not listeners:
                del self._listeners[event_type]
            return True

    def _remove(self, event_type: str, subscriber_id: str, handler: EventHandler) -> None:
        # Only remove if the registration has not been replaced since.
        with self._lock:
            listeners = self._listeners.get(event_type)
            if listeners and listeners.get(subscriber_id) is handler:
                self.unsubscribe(event_type, subscriber_id)

    def wait_for(
        self,
        event_type: str,
        *,
        timeout_ms: int = 30000,
        filter: Callable[[Event], bool] | None = None,  # noqa: A002 (mirrors bus API)
    ) -> Event:
        """Block until a matching event is published, or raise EventTimeoutError.

        Exactly one temporary subscription is created and it is always removed,
        whatever the outcome.
        """

        matched: list[Event] = []
        done = threading.Event()

        def _handler(event: Event) -> None:
            if done.is_set():
                return
            if filter is None or filter(event):
                matched.append(event)
                done.set()

        subscriber_id = f"wait_for:{uuid.uuid4().hex}"
        self.subscribe(event_type, subscriber_id, _handler)
        try:
            if not done.wait(timeout_ms / 1000):
                raise EventTimeoutError(event_type, timeout_ms)
            return matched[0]
        finally:
            self.unsubscribe(event_type, subscriber_id)

    # -- plugins ------------------------------------------------------------

    def register_plugin(self, plugin_id: str, plugin: Plugin) -> None:
        with self._lock:
            self._plugins[plugin_id] = plugin

    def unregister_plugin(self, plugin_id: str) -> None:
        with self._lock:
            self._plugins.pop(plugin_id, None)

    # -- introspection ------------------------------------------------------

    def get_history(self, event_type: str | None = None, limit: int = 50) -> list[Event]:
        """Return the most recent events, oldest first."""

        with self._lock:
            events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        if limit <= 0:
            return []
        return events[-limit:]

    def listener_count(self, event_type: str | None = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._listeners.get(event_type, {}))
            return sum(len(listeners) for listeners in self._listeners.values())

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            counts = Counter(e.type for e in self._history)
            return {
                "total_events": len(self._history),
                "subscriber_count": self.listener_count(),
                "plugin_count": len(self._plugins),
                "event_counts": dict(counts),
            }

    def clear(self) -> None:
        """Drop history, listeners and plugins."""

        with self._lock:
            self._history.clear()
            self._listeners.clear()
            self._plugins.clear()


_default_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Process-wide bus for top-level wiring only.

    Components receive their bus through their constructor; nothing inside the
    package looks it up here.
    """

    global _default_bus
    if _default_bus is None:
        _default_bus = EventBus()
    return _default_bus


def reset_event_bus() -> None:
    global _default_bus
    _default_bus = None
