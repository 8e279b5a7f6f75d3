"""
CoordinationService -- lifecycle of coordination records.

Responsibility:
    Binds an available master waybill to a new coordination record
    (consignees, product, destinations, flight), edits it while open, cuts
    it once child waybills exist and cancels it with a compensating release
    of the master waybill.

Architecture position:
    Kernel > Services.  Every state change, on the record and on its master
    waybill, goes through WorkflowEngine.

Invariants enforced:
    - At most one non-cancelled record per master waybill: row lock on the
      master waybill, a unique ``active_master_waybill_id`` and the
      optimistic ``version`` column all serialize the
      AVAILABLE -> ASSIGNED race.
    - Exactly one principal consignee, no duplicates.
    - Final records (CUT, CANCELLED) are read-only.
    - Create and cancel are atomic: one savepoint covers the record, its
      consignees and the master waybill transition.
    - CUT and CANCELLED are only reached through ``cut`` and ``cancel``,
      including from ``change_state``.

Failure modes:
    - MasterWaybillNotFoundError / CoordinationNotFoundError.
    - MasterWaybillNotAvailableError: wrong state, loan flags set, or an
      active record already exists.
    - PrincipalConsigneeError, ReferenceNotFoundError.
    - TerminalStateError: record already final.
    - NoChildWaybillsError: cut without child waybills.
    - MissingCommentError: cancel without a reason.
    - StateMismatchError: cancel while the master waybill is not ASSIGNED.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cargo_kernel.domain.clock import Clock, SystemClock
from cargo_kernel.domain.documents import (
    SYSTEM_ACTOR_ID,
    ChildWaybillState,
    CoordinationState,
    EntityKind,
    MasterWaybillState,
    PaymentMode,
)
from cargo_kernel.domain.events import EventType, PendingEvents, WorkflowEvent
from cargo_kernel.domain.references import ReferenceKind, ReferenceLookup, require_reference
from cargo_kernel.exceptions import (
    MasterWaybillNotAvailableError,
    NoChildWaybillsError,
    PreconditionFailedError,
    PrincipalConsigneeError,
    StateMismatchError,
    TerminalStateError,
)
from cargo_kernel.logging_config import get_logger
from cargo_kernel.models.coordination import (
    COST_FIELDS,
    ConsigneeAssignment,
    CoordinationRecord,
)
from cargo_kernel.selectors.document_selector import BoxSummary, DocumentSelector
from cargo_kernel.services.base import BaseService
from cargo_kernel.services.workflow_engine import TransitionRecord, WorkflowEngine

logger = get_logger("services.coordination")

_KIND = EntityKind.COORDINATION
_MASTER = EntityKind.MASTER_WAYBILL

# Fields ``update`` may change besides the cost fields
_EDITABLE_FIELDS: frozenset[str] = frozenset(
    {
        "product_id",
        "iata_agency_id",
        "awb_destination_id",
        "final_destination_id",
        "payment_mode",
        "flight_date",
    }
) | frozenset(COST_FIELDS)

_FIELD_REFERENCES: dict[str, ReferenceKind] = {
    "product_id": ReferenceKind.PRODUCT,
    "iata_agency_id": ReferenceKind.IATA_AGENCY,
    "awb_destination_id": ReferenceKind.DESTINATION,
    "final_destination_id": ReferenceKind.DESTINATION,
}


@dataclass(frozen=True)
class ConsigneeRef:
    consignee_id: UUID
    is_principal: bool = False


@dataclass(frozen=True)
class CoordinationDraft:
    """Input for ``CoordinationService.create``."""

    master_waybill_id: UUID
    product_id: UUID
    awb_destination_id: UUID
    final_destination_id: UUID
    payment_mode: PaymentMode
    flight_date: date
    consignees: tuple[ConsigneeRef, ...]
    iata_agency_id: UUID | None = None
    costs: Mapping[str, Decimal] = field(default_factory=dict)


def _check_consignees(consignees: Sequence[ConsigneeRef]) -> None:
    principals = sum(1 for c in consignees if c.is_principal)
    if principals != 1:
        raise PrincipalConsigneeError(principals)
    ids = [c.consignee_id for c in consignees]
    if len(set(ids)) != len(ids):
        raise PreconditionFailedError(
            "A consignee is listed more than once",
            consignee_ids=[str(i) for i in ids],
        )


def _cost_value(name: str, value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise PreconditionFailedError(
            f"Invalid amount for {name}: {value!r}", field=name
        ) from exc


class CoordinationService(BaseService[CoordinationRecord]):
    """Create, edit, cut and cancel coordination records."""

    def __init__(
        self,
        session: Session,
        workflow: WorkflowEngine,
        clock: Clock | None = None,
        events: PendingEvents | None = None,
        references: ReferenceLookup | None = None,
    ):
        super().__init__(session)
        self._workflow = workflow
        self._clock = clock or SystemClock()
        self._events = events if events is not None else workflow.events
        self._references = references
        self._selector = DocumentSelector(session)

    # -- helpers --------------------------------------------------------

    def get(self, record_id: UUID, lock: bool = False) -> CoordinationRecord:
        return self._workflow.load_entity(_KIND, record_id, lock=lock)

    def _open(self, record_id: UUID) -> CoordinationRecord:
        record = self.get(record_id, lock=True)
        state = self._workflow.state(record.current_state_id)
        if state.is_final:
            raise TerminalStateError(_KIND.value, str(record.id), state.name)
        return record

    def _check_references(self, consignees: Iterable[ConsigneeRef]) -> None:
        for consignee in consignees:
            require_reference(
                self._references, ReferenceKind.CONSIGNEE, consignee.consignee_id
            )

    def _replace_consignees(
        self,
        record: CoordinationRecord,
        consignees: Sequence[ConsigneeRef],
        actor_id: UUID,
    ) -> None:
        # Old rows must be gone before the new principal is inserted
        record.consignees.clear()
        self.session.flush()
        for consignee in consignees:
            record.consignees.append(
                ConsigneeAssignment(
                    consignee_id=consignee.consignee_id,
                    is_principal=consignee.is_principal,
                    created_by_id=actor_id,
                )
            )
        self.session.flush()

    # -- create ---------------------------------------------------------

    def create(self, draft: CoordinationDraft, actor_id: UUID) -> CoordinationRecord:
        master = self._workflow.load_entity(_MASTER, draft.master_waybill_id, lock=True)
        if not self._workflow.is_in(master, _MASTER, MasterWaybillState.AVAILABLE):
            raise MasterWaybillNotAvailableError(
                str(master.id), "master waybill is not available"
            )
        if master.on_loan or master.returned:
            raise MasterWaybillNotAvailableError(
                str(master.id), "master waybill is on loan or returned"
            )
        if self._selector.active_coordination_id(master.id) is not None:
            raise MasterWaybillNotAvailableError(
                str(master.id), "master waybill already has an active coordination"
            )

        consignees = tuple(draft.consignees)
        _check_consignees(consignees)
        self._check_references(consignees)
        require_reference(self._references, ReferenceKind.PRODUCT, draft.product_id)
        require_reference(
            self._references, ReferenceKind.DESTINATION, draft.awb_destination_id
        )
        require_reference(
            self._references, ReferenceKind.DESTINATION, draft.final_destination_id
        )
        require_reference(
            self._references, ReferenceKind.IATA_AGENCY, draft.iata_agency_id
        )
        unknown = set(draft.costs) - set(COST_FIELDS)
        if unknown:
            raise PreconditionFailedError(
                "Unknown cost fields", fields=sorted(unknown)
            )

        initial = self._workflow.initial_state(_KIND)
        try:
            with self.session.begin_nested():
                record = CoordinationRecord(
                    master_waybill_id=master.id,
                    active_master_waybill_id=master.id,
                    product_id=draft.product_id,
                    iata_agency_id=draft.iata_agency_id,
                    awb_destination_id=draft.awb_destination_id,
                    final_destination_id=draft.final_destination_id,
                    payment_mode=PaymentMode(draft.payment_mode).value,
                    flight_date=draft.flight_date,
                    assigned_at=self._clock.now(),
                    current_state_id=initial.id,
                    created_by_id=actor_id,
                )
                for name, value in draft.costs.items():
                    setattr(record, name, _cost_value(name, value))
                for consignee in consignees:
                    record.consignees.append(
                        ConsigneeAssignment(
                            consignee_id=consignee.consignee_id,
                            is_principal=consignee.is_principal,
                            created_by_id=actor_id,
                        )
                    )
                self.session.add(record)
                self.session.flush()
                self._workflow.record_initial_state(_KIND, record, actor_id)
                self._workflow.transition_to(
                    _MASTER,
                    master,
                    MasterWaybillState.ASSIGNED,
                    SYSTEM_ACTOR_ID,
                    comment=f"Assigned to coordination {record.id}",
                    payload={"coordination_record_id": record.id},
                )
        except IntegrityError as exc:
            logger.warning(
                "coordination_create_conflict",
                extra={"master_waybill_id": str(master.id)},
            )
            raise MasterWaybillNotAvailableError(
                str(master.id), "master waybill was coordinated concurrently"
            ) from exc

        logger.info(
            "coordination_created",
            extra={
                "coordination_record_id": str(record.id),
                "master_waybill": master.number,
                "consignees": len(consignees),
            },
        )
        return record

    # -- edits ----------------------------------------------------------

    def update(
        self,
        record_id: UUID,
        changes: Mapping[str, Any],
        actor_id: UUID,
        consignees: Sequence[ConsigneeRef] | None = None,
    ) -> CoordinationRecord:
        """Partial update over the editable fields of an open record."""
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise PreconditionFailedError(
                "Fields cannot be changed on a coordination record",
                fields=sorted(unknown),
            )
        record = self._open(record_id)
        for name, value in changes.items():
            if name in _FIELD_REFERENCES:
                require_reference(self._references, _FIELD_REFERENCES[name], value)
        if consignees is not None:
            consignees = tuple(consignees)
            _check_consignees(consignees)
            self._check_references(consignees)

        with self.session.begin_nested():
            for name, value in changes.items():
                if name in COST_FIELDS:
                    value = _cost_value(name, value)
                elif name == "payment_mode":
                    value = PaymentMode(value).value
                setattr(record, name, value)
            record.updated_by_id = actor_id
            self.session.flush()
            if consignees is not None:
                self._replace_consignees(record, consignees, actor_id)

        logger.info(
            "coordination_updated",
            extra={
                "coordination_record_id": str(record.id),
                "fields": sorted(changes),
                "consignees_replaced": consignees is not None,
            },
        )
        return record

    def assign_consignees(
        self,
        record_id: UUID,
        consignees: Sequence[ConsigneeRef],
        actor_id: UUID,
    ) -> CoordinationRecord:
        return self.update(record_id, {}, actor_id, consignees=consignees)

    # -- transitions ----------------------------------------------------

    def change_state(
        self,
        record_id: UUID,
        destination_state_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
        actor_roles: Iterable[str] | None = None,
    ) -> TransitionRecord:
        """Generic transition; CUT and CANCELLED run through ``cut`` and ``cancel``."""
        record = self.get(record_id, lock=True)
        destination = self._workflow.state(destination_state_id)
        if destination.entity_kind == _KIND:
            if destination.name == CoordinationState.CUT:
                return self.cut(record.id, actor_id, comment=comment, actor_roles=actor_roles)
            if destination.name == CoordinationState.CANCELLED:
                return self.cancel(record.id, comment, actor_id, actor_roles=actor_roles)
        return self._workflow.execute(
            _KIND,
            record.id,
            record.current_state_id,
            destination_state_id,
            actor_id,
            comment=comment,
            actor_roles=actor_roles,
        )

    def cut(
        self,
        record_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
        actor_roles: Iterable[str] | None = None,
    ) -> TransitionRecord:
        record = self._open(record_id)
        cancelled = self._workflow.state_named(
            EntityKind.CHILD_WAYBILL, ChildWaybillState.CANCELLED
        )
        count = self._selector.child_waybill_count(
            record.id, exclude_state_ids=[cancelled.id]
        )
        if count == 0:
            raise NoChildWaybillsError(str(record.id))

        transition = self._workflow.transition_to(
            _KIND,
            record,
            CoordinationState.CUT,
            actor_id,
            comment=comment,
            actor_roles=actor_roles,
            payload={"child_waybill_count": count},
        )
        self._events.record(
            WorkflowEvent(
                event_type=EventType.COORDINATION_CUT,
                entity_kind=_KIND.value,
                entity_id=record.id,
                actor_id=actor_id,
                occurred_at=transition.changed_at,
                payload={
                    "child_waybill_count": count,
                    "master_waybill_id": record.master_waybill_id,
                    "principal_consignee_id": record.principal_consignee_id,
                },
            )
        )
        logger.info(
            "coordination_cut",
            extra={"coordination_record_id": str(record.id), "child_waybill_count": count},
        )
        return transition

    def cancel(
        self,
        record_id: UUID,
        reason: str,
        actor_id: UUID,
        actor_roles: Iterable[str] | None = None,
    ) -> TransitionRecord:
        """Cancel the record and release its master waybill."""
        record = self._open(record_id)
        master = self._workflow.load_entity(_MASTER, record.master_waybill_id, lock=True)
        if not self._workflow.is_in(master, _MASTER, MasterWaybillState.ASSIGNED):
            actual = self._workflow.state(master.current_state_id).name
            logger.error(
                "coordination_release_blocked",
                extra={
                    "coordination_record_id": str(record.id),
                    "master_waybill_id": str(master.id),
                    "master_waybill_state": actual,
                },
            )
            raise StateMismatchError(
                _MASTER.value, str(master.id), MasterWaybillState.ASSIGNED.value, actual
            )

        with self.session.begin_nested():
            transition = self._workflow.transition_to(
                _KIND,
                record,
                CoordinationState.CANCELLED,
                actor_id,
                comment=reason,
                actor_roles=actor_roles,
            )
            record.active_master_waybill_id = None
            self.session.flush()
            self._workflow.transition_to(
                _MASTER,
                master,
                MasterWaybillState.AVAILABLE,
                SYSTEM_ACTOR_ID,
                comment=f"Released by cancellation of coordination {record.id}",
                payload={"coordination_record_id": record.id},
            )

        logger.info(
            "coordination_cancelled",
            extra={
                "coordination_record_id": str(record.id),
                "master_waybill": master.number,
            },
        )
        return transition

    # -- reads ----------------------------------------------------------

    def box_summary(self, record_id: UUID) -> BoxSummary:
        record = self.get(record_id)
        cancelled = self._workflow.state_named(
            EntityKind.CHILD_WAYBILL, ChildWaybillState.CANCELLED
        )
        return self._selector.box_summary(record.id, exclude_state_ids=[cancelled.id])

    def list_for_master_waybill(self, master_waybill_id: UUID) -> list[CoordinationRecord]:
        return list(
            self.session.execute(
                select(CoordinationRecord)
                .where(CoordinationRecord.master_waybill_id == master_waybill_id)
                .order_by(CoordinationRecord.assigned_at)
            )
            .scalars()
            .all()
        )
