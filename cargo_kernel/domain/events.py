"""
Workflow events (``cargo_kernel.domain.events``).

Responsibility
--------------
Immutable notifications of document changes and the in-transaction
collector that holds them until commit.  Kernel services record events;
``cargo_services`` publishes them once the originating transaction has
committed and drops them when it rolls back.

Architecture position
---------------------
**Kernel domain layer** -- pure values.  ZERO I/O.

Invariants enforced
-------------------
* An event is never published for a transaction that did not commit
  (enforced by the runtime that drains ``PendingEvents``).
* ``event_id`` is unique per recorded event, so listeners can
  de-duplicate at-least-once deliveries.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import UUID, uuid4


class EventType(str, Enum):
    MASTER_WAYBILL_STATE_CHANGED = "master_waybill.state_changed"
    MASTER_WAYBILL_LOANED = "master_waybill.loaned"
    MASTER_WAYBILL_RETURNED = "master_waybill.returned"
    COORDINATION_STATE_CHANGED = "coordination.state_changed"
    COORDINATION_CUT = "coordination.cut"
    CHILD_WAYBILL_STATE_CHANGED = "child_waybill.state_changed"
    CHILD_WAYBILL_ASSIGNED = "child_waybill.assigned"


@dataclass(frozen=True)
class WorkflowEvent:
    """A single document notification.

    Contract: frozen; ``payload`` is a read-only mapping.
    """

    event_type: EventType
    entity_kind: str
    entity_id: UUID
    actor_id: UUID
    occurred_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_type", EventType(self.event_type))
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))


class PendingEvents:
    """Events recorded inside one transaction, in order."""

    def __init__(self) -> None:
        self._events: list[WorkflowEvent] = []

    def record(self, event: WorkflowEvent) -> WorkflowEvent:
        self._events.append(event)
        return event

    def drain(self) -> list[WorkflowEvent]:
        """Return and forget everything recorded so far."""
        events, self._events = self._events, []
        return events

    def discard(self) -> int:
        """Drop everything recorded so far; returns how many were dropped."""
        count = len(self._events)
        self._events = []
        return count

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))
