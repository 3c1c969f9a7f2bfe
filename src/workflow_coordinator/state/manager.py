"""Debounced persistence for the workflow state document.

Workflow mutations are frequent (every stage event, every artifact). Instead of
writing on each one, callers mark the state dirty and a single flush runs after
``debounce_ms`` of quiet, or immediately once ``max_wait_ms`` has passed since
the previous flush.

The manager never installs signal handlers. The host process calls
:meth:`StateManager.shutdown` (or :meth:`flush_sync`) from its own exit path.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from pydantic import ValidationError

from workflow_coordinator.core.config import StateSettings
from workflow_coordinator.orchestrator.errors import WorkflowError
from workflow_coordinator.orchestrator.events import EventBus, WorkflowEvents
from workflow_coordinator.state.models import WorkflowStateDocument, utc_now

logger = logging.getLogger(__name__)


class StateManager:
    """Owns the in-memory state document and its single durable file.

    All reads and writes of the state file go through :meth:`load`,
    :meth:`flush` and :meth:`flush_sync`. Callers mutating ``state`` must hold
    :attr:`lock` so a flush never serialises a half-applied change.
    """

    def __init__(
        self,
        config: StateSettings,
        *,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the state manager.

        Args:
            config: State configuration.
            event_bus: Optional bus receiving ``state:saved``/``state:loaded``.
            clock: Monotonic clock in seconds (injectable for tests).
        """
        self.config = config
        self.storage_path = config.storage_path
        self.state_file = self.storage_path / config.state_file_name
        self.event_bus = event_bus
        self._clock = clock

        self.lock = threading.RLock()
        # Serialises file writes; snapshots carry a sequence number so an older
        # payload is never written over a newer one.
        self._write_lock = threading.RLock()
        self._snapshot_seq = 0
        self._written_seq = 0
        self.state: WorkflowStateDocument = WorkflowStateDocument()

        self._dirty = False
        self._pending_changes = 0
        self._last_flush_time = clock()
        self._timer: threading.Timer | None = None
        self._pending_save: Future[None] | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="state-writer")
        self._closed = False

        self._metrics = {
            "save_count": 0,
            "saves_avoided": 0,
            "async_writes": 0,
            "sync_writes": 0,
            "write_failures": 0,
            "superseded_writes": 0,
        }

        self.storage_path.mkdir(parents=True, exist_ok=True)

    # -- loading ------------------------------------------------------------

    def load(self) -> WorkflowStateDocument:
        """Load state from disk, falling back to a fresh document."""

        with self.lock:
            if not self.state_file.exists():
                logger.info("No existing state found, starting fresh")
                self.state = WorkflowStateDocument()
            else:
                try:
                    raw = json.loads(self.state_file.read_text(encoding="utf-8"))
                    self.state = WorkflowStateDocument.model_validate(raw)
                    logger.info(
                        "State loaded",
                        extra={
                            "path": str(self.state_file),
                            "workflow_count": len(self.state.workflows),
                        },
                    )
                except (OSError, json.JSONDecodeError, ValidationError) as e:
                    WorkflowError.wrap(e, "STATE_LOAD_FAILED", {"path": str(self.state_file)})
                    logger.warning("Using fresh state")
                    self.state = WorkflowStateDocument()

            workflow_count = len(self.state.workflows)

        self._publish(WorkflowEvents.STATE_LOADED, {"workflow_count": workflow_count})
        return self.state

    # -- debounced writes ---------------------------------------------------

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def save_count(self) -> int:
        return self._metrics["save_count"]

    def mark_dirty(self) -> None:
        """Record a mutation and schedule (or force) a flush."""

        with self.lock:
            self._dirty = True
            self._pending_changes += 1

            waited_ms = (self._clock() - self._last_flush_time) * 1000
            if waited_ms >= self.config.max_wait_ms:
                self.flush()
                return

            if self._timer is None and not self._closed:
                self._timer = threading.Timer(self.config.debounce_ms / 1000, self._on_timer)
                self._timer.daemon = True
                self._timer.start()

    def _on_timer(self) -> None:
        with self.lock:
            self._timer = None
        self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _take_snapshot(self) -> tuple[int, str]:
        """Serialise state and reset the dirty bookkeeping. Caller holds the lock."""

        if self._pending_changes > 1:
            self._metrics["saves_avoided"] += self._pending_changes - 1
        self._dirty = False
        self._pending_changes = 0
        self._last_flush_time = self._clock()
        self._metrics["save_count"] += 1

        self.state.last_updated = utc_now()
        self._snapshot_seq += 1
        return self._snapshot_seq, self.state.model_dump_json(by_alias=True, indent=2) + "\n"

    def flush(self) -> Future[None] | None:
        """Write pending changes.

        With ``prefer_async`` the write happens on a background writer thread
        and the returned future completes once it is durable. Returns ``None``
        when there was nothing to write or the write was performed inline.
        """

        with self.lock:
            self._cancel_timer()
            if not self._dirty:
                return None
            seq, payload = self._take_snapshot()

            if self.config.prefer_async and not self._closed:
                future = self._executor.submit(self._write_async, seq, payload)
                self._pending_save = future
                return future

        self._write_sync(seq, payload)
        return None

    def flush_sync(self) -> None:
        """Write pending changes synchronously, bypassing any timer.

        Intended for process-exit paths.
        """

        with self.lock:
            self._cancel_timer()
            if not self._dirty:
                return
            seq, payload = self._take_snapshot()
        self._write_sync(seq, payload)

    def save_now(self) -> None:
        """Persist the current state immediately and wait until it is on disk."""

        with self.lock:
            self._cancel_timer()
            self._dirty = True
            future = self.flush()
        if future is not None:
            future.result()

    def wait_for_pending_save(self) -> None:
        """Block until any in-flight write completes and nothing is left dirty."""

        pending = self._pending_save
        if pending is not None:
            pending.result()
        if self._dirty:
            future = self.flush()
            if future is not None:
                future.result()

    def shutdown(self) -> None:
        """Flush everything and stop the writer thread."""

        pending = self._pending_save
        if pending is not None:
            pending.result()
        with self.lock:
            self._closed = True
        self.flush_sync()
        self._executor.shutdown(wait=True)
        logger.info("State manager shut down", extra={"path": str(self.state_file)})

    # -- raw writes ---------------------------------------------------------

    def _superseded(self, seq: int) -> bool:
        """True when a newer snapshot already reached disk. Caller holds the write lock."""

        if seq > self._written_seq:
            return False
        self._metrics["superseded_writes"] += 1
        logger.debug(
            "Skipping superseded state snapshot",
            extra={"seq": seq, "written_seq": self._written_seq},
        )
        return True

    def _write_async(self, seq: int, payload: str) -> None:
        tmp = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        failure: OSError | None = None
        with self._write_lock:
            if self._superseded(seq):
                return
            try:
                tmp.write_text(payload, encoding="utf-8")
                os.replace(tmp, self.state_file)
            except OSError as e:
                failure = e
            else:
                self._written_seq = seq
                self._metrics["async_writes"] += 1
        if failure is not None:
            logger.error(
                "Background state write failed; falling back to synchronous write",
                extra={"path": str(self.state_file), "error": str(failure)},
            )
            self._write_sync(seq, payload)
            return
        self._after_write()

    def _write_sync(self, seq: int, payload: str) -> None:
        # Never take ``self.lock`` while holding the write lock: callers may
        # already hold ``self.lock`` when they reach this method.
        failure: OSError | None = None
        with self._write_lock:
            if self._superseded(seq):
                return
            try:
                self.state_file.parent.mkdir(parents=True, exist_ok=True)
                self.state_file.write_text(payload, encoding="utf-8")
            except OSError as e:
                failure = e
                self._metrics["write_failures"] += 1
            else:
                self._written_seq = seq
                self._metrics["sync_writes"] += 1
        if failure is not None:
            WorkflowError.wrap(failure, "STATE_SAVE_FAILED", {"path": str(self.state_file)})
            # Keep the change pending so the next flush retries it.
            with self.lock:
                self._dirty = True
                self._pending_changes += 1
            return
        self._after_write()

    def _after_write(self) -> None:
        logger.debug("State saved", extra={"path": str(self.state_file)})
        self._publish(
            WorkflowEvents.STATE_SAVED,
            {"path": str(self.state_file), "save_count": self._metrics["save_count"]},
        )

    def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, {**payload, "source": "StateManager"})

    # -- introspection ------------------------------------------------------

    def state_file_size(self) -> int:
        try:
            return self.state_file.stat().st_size
        except OSError:
            return 0

    def get_performance_metrics(self) -> dict[str, Any]:
        saves = self._metrics["save_count"]
        avoided = self._metrics["saves_avoided"]
        efficiency = round(avoided / (saves + avoided) * 100) if saves else 0
        return {
            **self._metrics,
            "pending_changes": self._pending_changes,
            "is_dirty": self._dirty,
            "seconds_since_last_save": round(self._clock() - self._last_flush_time, 3),
            "efficiency": efficiency,
        }
