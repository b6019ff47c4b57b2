"""Per-instance locks and escalation timers.

Both are keyed by instance id and owned by :class:`~workflow_core.workflow.api.WorkflowAPI`.
Operations on different instances never contend on the same lock.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

logger = logging.getLogger(__name__)


class InstanceLocks:
    """Registry of re-entrant locks, one per instance id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, instance_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[instance_id] = lock
            return lock

    @contextmanager
    def hold(self, instance_id: str) -> Iterator[None]:
        lock = self._lock_for(instance_id)
        with lock:
            yield

    def discard(self, instance_id: str) -> None:
        """Forget the lock of an instance that can no longer change state.

        A thread already waiting on the old lock still acquires it and then
        re-reads the instance in its terminal status.
        """

        with self._guard:
            self._locks.pop(instance_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class Cancellable(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], Cancellable]


def _thread_timer(delay_seconds: float, callback: Callable[[], None]) -> Cancellable:
    timer = threading.Timer(delay_seconds, callback)
    timer.daemon = True
    return timer


@dataclass(frozen=True, slots=True)
class TimerHandle:
    """A scheduled escalation for one visit to one state."""

    instance_id: str
    entered_at: datetime
    state: str
    transition_name: str
    timer: Cancellable


class EscalationTimers:
    """Single-shot timers keyed by instance id.

    At most one timer exists per instance; scheduling a new one or calling
    :meth:`cancel` drops the previous timer.
    """

    def __init__(self, timer_factory: TimerFactory | None = None) -> None:
        self._factory = timer_factory or _thread_timer
        self._lock = threading.Lock()
        self._handles: dict[str, TimerHandle] = {}

    def schedule(
        self,
        *,
        instance_id: str,
        entered_at: datetime,
        state: str,
        transition_name: str,
        delay_ms: int,
        fire: Callable[[TimerHandle], None],
    ) -> TimerHandle:
        handle_box: list[TimerHandle] = []

        def _fire() -> None:
            handle = handle_box[0]
            with self._lock:
                if self._handles.get(instance_id) is handle:
                    del self._handles[instance_id]
            fire(handle)

        timer = self._factory(delay_ms / 1000.0, _fire)
        handle = TimerHandle(
            instance_id=instance_id,
            entered_at=entered_at,
            state=state,
            transition_name=transition_name,
            timer=timer,
        )
        handle_box.append(handle)

        with self._lock:
            previous = self._handles.pop(instance_id, None)
            self._handles[instance_id] = handle
        if previous is not None:
            previous.timer.cancel()
        timer.start()
        logger.debug(
            "Escalation timer scheduled",
            extra={"instance_id": instance_id, "state": state, "delay_ms": delay_ms},
        )
        return handle

    def cancel(self, instance_id: str) -> None:
        with self._lock:
            handle = self._handles.pop(instance_id, None)
        if handle is not None:
            handle.timer.cancel()
            logger.debug("Escalation timer cancelled", extra={"instance_id": instance_id})

    def get(self, instance_id: str) -> TimerHandle | None:
        with self._lock:
            return self._handles.get(instance_id)

    def cancel_all(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.timer.cancel()
