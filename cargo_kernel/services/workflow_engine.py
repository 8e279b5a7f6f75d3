"""
WorkflowEngine -- transition validation and execution for every document kind.

Responsibility:
    Validates a requested state change against the configured transition
    table (existence, role gate, mandatory comment) and executes it: the
    entity's current-state pointer and a new StateHistoryEntry are written
    together inside one SAVEPOINT, then a state-changed event is recorded
    for publication after commit.

Architecture position:
    Kernel > Services -- imperative shell over the pure
    ``cargo_kernel.domain.workflow.WorkflowTable``.  The decision itself is
    the pure ``WorkflowTable.decide``; this service only loads the table,
    picks the row to mutate by entity kind, and persists the outcome.

Invariants enforced:
    - Every validation happens before the first write.  A forbidden
      transition, missing comment, unknown entity or stale origin leaves
      the store untouched.
    - Pointer update and history append commit or fail together.
    - History is append-only and numbered per entity (``position``).
    - The entity's optimistic ``version`` guards the pointer update; a lost
      race surfaces as ConcurrentModificationError.

Failure modes:
    - ForbiddenTransitionError: no definition for the triple, or role mismatch.
    - MissingCommentError: transition requires a comment, none given.
    - NotFoundError (kind-specific subclass): entity does not exist.
    - StateMismatchError: entity is not in the claimed origin state.
    - ConcurrentModificationError: version check failed at flush.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from cargo_kernel.domain.clock import Clock, SystemClock
from cargo_kernel.domain.documents import EntityKind, plain_value
from cargo_kernel.domain.events import EventType, PendingEvents, WorkflowEvent
from cargo_kernel.domain.workflow import (
    StateDef,
    TransitionDef,
    TransitionOutcome,
    WorkflowTable,
)
from cargo_kernel.exceptions import (
    ChildWaybillNotFoundError,
    ConcurrentModificationError,
    CoordinationNotFoundError,
    ForbiddenTransitionError,
    MasterWaybillNotFoundError,
    MissingCommentError,
    StateMismatchError,
)
from cargo_kernel.logging_config import LogContext, get_logger
from cargo_kernel.models.coordination import CoordinationRecord
from cargo_kernel.models.waybill import ChildWaybill, MasterWaybill
from cargo_kernel.models.workflow import (
    AllowedTransition,
    DocumentState,
    StateHistoryEntry,
)
from cargo_kernel.selectors.document_selector import DocumentSelector, HistoryEntryDTO
from cargo_kernel.services.base import BaseService

logger = get_logger("services.workflow_engine")

# Entity kind -> row to mutate
ENTITY_MODELS: dict[str, type] = {
    EntityKind.MASTER_WAYBILL.value: MasterWaybill,
    EntityKind.COORDINATION.value: CoordinationRecord,
    EntityKind.CHILD_WAYBILL.value: ChildWaybill,
}

_NOT_FOUND = {
    EntityKind.MASTER_WAYBILL.value: MasterWaybillNotFoundError,
    EntityKind.COORDINATION.value: CoordinationNotFoundError,
    EntityKind.CHILD_WAYBILL.value: ChildWaybillNotFoundError,
}

STATE_CHANGED_EVENTS: dict[str, EventType] = {
    EntityKind.MASTER_WAYBILL.value: EventType.MASTER_WAYBILL_STATE_CHANGED,
    EntityKind.COORDINATION.value: EventType.COORDINATION_STATE_CHANGED,
    EntityKind.CHILD_WAYBILL.value: EventType.CHILD_WAYBILL_STATE_CHANGED,
}


@dataclass(frozen=True)
class TransitionRecord:
    """Outcome of a successful ``execute``."""

    entity_kind: str
    entity_id: UUID
    origin_state: StateDef
    destination_state: StateDef
    actor_id: UUID
    comment: str
    history_entry_id: UUID
    changed_at: datetime


def load_workflow_table(session: Session) -> WorkflowTable:
    """Read the seeded state and transition tables into a WorkflowTable."""
    states = session.execute(select(DocumentState)).scalars().all()
    transitions = session.execute(select(AllowedTransition)).scalars().all()
    return WorkflowTable(
        states=tuple(s.to_domain() for s in states),
        transitions=tuple(t.to_domain() for t in transitions),
    )


def _event_context(kind: str, entity: Any) -> dict[str, Any]:
    if kind == EntityKind.CHILD_WAYBILL.value:
        return {"coordination_record_id": entity.coordination_record_id}
    if kind == EntityKind.COORDINATION.value:
        return {"master_waybill_id": entity.master_waybill_id}
    return {}


class WorkflowEngine(BaseService[StateHistoryEntry]):
    """
    Generic state machine executor shared by all document kinds.

    Contract:
        ``execute`` either performs exactly one pointer update plus exactly
        one history append, or raises before writing anything.

    Non-goals:
        - Does NOT check kind-specific business preconditions (loan flags,
          child waybill counts); the lifecycle services do that first.
        - Does NOT publish events; it records them on ``PendingEvents``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        events: PendingEvents | None = None,
        table: WorkflowTable | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._events = events if events is not None else PendingEvents()
        self._table = table
        self._selector = DocumentSelector(session)

    @property
    def table(self) -> WorkflowTable:
        if self._table is None:
            self._table = load_workflow_table(self.session)
        return self._table

    @property
    def events(self) -> PendingEvents:
        return self._events

    # -- lookups --------------------------------------------------------

    def state(self, state_id: UUID) -> StateDef:
        return self.table.state(state_id)

    def state_named(self, entity_kind: str, name: str) -> StateDef:
        return self.table.state_named(entity_kind, name)

    def initial_state(self, entity_kind: str) -> StateDef:
        return self.table.initial_state(entity_kind)

    def is_in(self, entity: Any, entity_kind: str, name: str) -> bool:
        return entity.current_state_id == self.state_named(entity_kind, name).id

    def validate_transition(
        self,
        entity_kind: str,
        origin_state_id: UUID,
        destination_state_id: UUID,
        actor_roles: Iterable[str] | None = None,
    ) -> bool:
        return self.table.validate(
            entity_kind, origin_state_id, destination_state_id, actor_roles
        )

    def transitions_from(
        self,
        entity_kind: str,
        state_id: UUID,
        actor_roles: Iterable[str] | None = None,
    ) -> tuple[TransitionDef, ...]:
        return self.table.transitions_from(entity_kind, state_id, actor_roles)

    def history(self, entity_kind: str, entity_id: UUID) -> list[HistoryEntryDTO]:
        return self._selector.history(plain_value(entity_kind), entity_id)

    def load_entity(self, entity_kind: str, entity_id: UUID, lock: bool = True) -> Any:
        kind = plain_value(entity_kind)
        model = ENTITY_MODELS[kind]
        entity = self.session.get(
            model,
            entity_id,
            with_for_update=lock,
            populate_existing=True,
        )
        if entity is None:
            raise _NOT_FOUND[kind](str(entity_id))
        return entity

    # -- writes ---------------------------------------------------------

    def _append_history(
        self,
        kind: str,
        entity_id: UUID,
        state_id: UUID,
        actor_id: UUID,
        comment: str | None,
        changed_at: datetime,
    ) -> StateHistoryEntry:
        entry = StateHistoryEntry(
            entity_kind=kind,
            entity_id=entity_id,
            position=self._selector.last_history_position(kind, entity_id) + 1,
            state_id=state_id,
            actor_id=actor_id,
            comment=comment,
            changed_at=changed_at,
        )
        self.session.add(entry)
        return entry

    def record_initial_state(
        self,
        entity_kind: str,
        entity: Any,
        actor_id: UUID,
        comment: str | None = None,
    ) -> StateHistoryEntry:
        """
        Write the first history entry for a freshly flushed entity.

        Preconditions: ``entity.current_state_id`` is the kind's initial state
        and ``entity.id`` is assigned.
        """
        kind = plain_value(entity_kind)
        initial = self.initial_state(kind)
        entry = self._append_history(
            kind,
            entity.id,
            initial.id,
            actor_id,
            comment or f"Created in state {initial.name}",
            self._clock.now(),
        )
        self.session.flush()
        return entry

    def execute(
        self,
        entity_kind: str,
        entity_id: UUID,
        origin_state_id: UUID,
        destination_state_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
        actor_roles: Iterable[str] | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> TransitionRecord:
        """
        Move one entity from ``origin_state_id`` to ``destination_state_id``.

        ``actor_roles=None`` is reserved for internal, system-attributed calls
        that are not role-gated.

        Raises:
            ForbiddenTransitionError, MissingCommentError, NotFoundError,
            StateMismatchError, ConcurrentModificationError.
        """
        kind = plain_value(entity_kind)
        decision = self.table.decide(
            kind, origin_state_id, destination_state_id, actor_roles, comment
        )

        if decision.outcome in (
            TransitionOutcome.NO_TRANSITION,
            TransitionOutcome.ROLE_DENIED,
        ):
            reason = (
                "no transition defined"
                if decision.outcome == TransitionOutcome.NO_TRANSITION
                else "actor roles not allowed"
            )
            logger.warning(
                "transition_forbidden",
                extra={
                    "entity_kind": kind,
                    "entity_id": str(entity_id),
                    "origin_state_id": str(origin_state_id),
                    "destination_state_id": str(destination_state_id),
                    "reason": reason,
                },
            )
            raise ForbiddenTransitionError(
                kind, str(origin_state_id), str(destination_state_id), reason
            )
        if decision.outcome == TransitionOutcome.COMMENT_REQUIRED:
            raise MissingCommentError(
                kind, str(origin_state_id), str(destination_state_id)
            )

        entity = self.load_entity(kind, entity_id)
        if entity.current_state_id != origin_state_id:
            raise StateMismatchError(
                kind, str(entity_id), str(origin_state_id), str(entity.current_state_id)
            )

        origin = self.state(origin_state_id)
        destination = self.state(destination_state_id)
        text = comment.strip() if comment and comment.strip() else (
            f"State changed to {destination.name}"
        )
        changed_at = self._clock.now()

        with LogContext.bind(entity_kind=kind, entity_id=entity_id, actor_id=actor_id):
            try:
                with self.session.begin_nested():
                    entity.current_state_id = destination_state_id
                    entity.updated_by_id = actor_id
                    entry = self._append_history(
                        kind, entity_id, destination_state_id, actor_id, text, changed_at
                    )
                    self.session.flush()
            except StaleDataError as exc:
                logger.warning(
                    "transition_version_conflict",
                    extra={"entity_kind": kind, "entity_id": str(entity_id)},
                )
                raise ConcurrentModificationError(kind, str(entity_id)) from exc

            logger.info(
                "transition_executed",
                extra={
                    "from_state": origin.name,
                    "to_state": destination.name,
                    "position": entry.position,
                },
            )

        event_payload: dict[str, Any] = {
            "from_state_id": origin.id,
            "from_state": origin.name,
            "to_state_id": destination.id,
            "to_state": destination.name,
            "comment": text,
        }
        event_payload.update(_event_context(kind, entity))
        if payload:
            event_payload.update(payload)
        self._events.record(
            WorkflowEvent(
                event_type=STATE_CHANGED_EVENTS[kind],
                entity_kind=kind,
                entity_id=entity_id,
                actor_id=actor_id,
                occurred_at=changed_at,
                payload=event_payload,
            )
        )

        return TransitionRecord(
            entity_kind=kind,
            entity_id=entity_id,
            origin_state=origin,
            destination_state=destination,
            actor_id=actor_id,
            comment=text,
            history_entry_id=entry.id,
            changed_at=changed_at,
        )

    def transition_to(
        self,
        entity_kind: str,
        entity: Any,
        destination_name: str,
        actor_id: UUID,
        comment: str | None = None,
        actor_roles: Iterable[str] | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> TransitionRecord:
        """``execute`` from the entity's current state to a named state."""
        destination = self.state_named(entity_kind, destination_name)
        return self.execute(
            entity_kind,
            entity.id,
            entity.current_state_id,
            destination.id,
            actor_id,
            comment=comment,
            actor_roles=actor_roles,
            payload=payload,
        )
