"""
cargo_services.event_dispatcher -- in-process publish/subscribe for workflow events.

Responsibility:
    Delivers committed ``WorkflowEvent`` objects to the listeners
    subscribed to their event type.

Architecture position:
    Services -- runs after the kernel transaction has committed.  The
    kernel only records events on ``PendingEvents``; ``WorkflowRuntime``
    hands them here once the commit succeeded.

Invariants enforced:
    - One FIFO queue and one worker thread per event type: events of the
      same type are delivered in publish order.
    - A failing listener never affects the publisher or other listeners;
      the exception is logged and kept as a ``DeliveryFailure``.
    - Synchronous mode delivers inline, in subscription order.

Failure modes:
    - Listener exception: logged with traceback, recorded, swallowed.
    - ``publish`` after ``shutdown``: RuntimeError.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from cargo_kernel.domain.clock import Clock, SystemClock
from cargo_kernel.domain.documents import plain_value
from cargo_kernel.domain.events import EventType, WorkflowEvent
from cargo_kernel.logging_config import LogContext, get_logger

logger = get_logger("services.event_dispatcher")

Handler = Callable[[WorkflowEvent], None]

_STOP = object()


@dataclass(frozen=True)
class DeliveryFailure:
    """A listener raised while handling an event."""

    event_id: UUID
    event_type: str
    listener: str
    error_type: str
    error: str
    failed_at: datetime


class EventDispatcher:
    """Per-event-type queues drained by daemon worker threads.

    Contract:
        - ``subscribe`` before or after workers start; a handler sees every
          event published after it subscribed.
        - ``join`` waits until every queued event has been delivered.

    Non-goals:
        - NOT durable: queued events are lost if the process dies.
        - Does NOT retry failed deliveries.
    """

    def __init__(self, synchronous: bool = False, clock: Clock | None = None):
        self._synchronous = synchronous
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._handlers: dict[str, list[tuple[str, Handler]]] = {}
        self._queues: dict[str, queue.Queue] = {}
        self._workers: dict[str, threading.Thread] = {}
        self._pending = 0
        self._failures: list[DeliveryFailure] = []
        self._closed = False

    @property
    def synchronous(self) -> bool:
        return self._synchronous

    @property
    def failures(self) -> tuple[DeliveryFailure, ...]:
        with self._lock:
            return tuple(self._failures)

    def subscribe(
        self, event_type: EventType | str, handler: Handler, name: str | None = None
    ) -> None:
        key = plain_value(event_type)
        label = name or getattr(handler, "__qualname__", repr(handler))
        with self._lock:
            self._handlers.setdefault(key, []).append((label, handler))
        logger.debug("listener_subscribed", extra={"event_type": key, "listener": label})

    def subscribers(self, event_type: EventType | str) -> tuple[str, ...]:
        with self._lock:
            return tuple(label for label, _ in self._handlers.get(plain_value(event_type), ()))

    # -- publishing -----------------------------------------------------

    def publish(self, event: WorkflowEvent) -> None:
        key = plain_value(event.event_type)
        with self._lock:
            if self._closed:
                raise RuntimeError("EventDispatcher has been shut down")
            work = None if self._synchronous else self._queue_for(key)
        if work is None:
            self._deliver(key, event)
        else:
            work.put(event)

    def _queue_for(self, key: str) -> queue.Queue:
        # Caller holds the lock
        work = self._queues.get(key)
        if work is None:
            work = queue.Queue()
            self._queues[key] = work
            worker = threading.Thread(
                target=self._run_worker,
                args=(key, work),
                name=f"events-{key}",
                daemon=True,
            )
            self._workers[key] = worker
            worker.start()
        self._pending += 1
        return work

    def publish_all(self, events: Iterable[WorkflowEvent]) -> None:
        for event in events:
            self.publish(event)

    def join(self, timeout: float | None = None) -> bool:
        """Block until all queued events are delivered.  False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Drain the queues and stop the workers."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            queues = list(self._queues.values())
            workers = list(self._workers.values())
        for work in queues:
            work.put(_STOP)
        for worker in workers:
            worker.join(timeout=timeout)
        logger.info("event_dispatcher_stopped", extra={"workers": len(workers)})

    # -- delivery -------------------------------------------------------

    def _run_worker(self, key: str, work: queue.Queue) -> None:
        while True:
            event = work.get()
            if event is _STOP:
                break
            try:
                self._deliver(key, event)
            finally:
                with self._idle:
                    self._pending -= 1
                    if self._pending == 0:
                        self._idle.notify_all()

    def _deliver(self, key: str, event: WorkflowEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(key, ()))
        for label, handler in handlers:
            with LogContext.bind(
                correlation_id=event.event_id,
                actor_id=event.actor_id,
                entity_kind=event.entity_kind,
                entity_id=event.entity_id,
            ):
                try:
                    handler(event)
                except Exception as exc:
                    logger.exception(
                        "listener_failed",
                        extra={"event_type": key, "listener": label},
                    )
                    with self._lock:
                        self._failures.append(
                            DeliveryFailure(
                                event_id=event.event_id,
                                event_type=key,
                                listener=label,
                                error_type=type(exc).__name__,
                                error=str(exc),
                                failed_at=self._clock.now(),
                            )
                        )
