"""
ChildWaybillService -- composite-key allocation of child waybills.

Responsibility:
    Finds or creates the child waybill for a (farm, master waybill,
    consignee, product) request under the configured allocation rule.
    A hit owned by another coordination record is re-pointed, never
    duplicated; a miss is numbered by NumberingService and created in the
    initial workflow state.  Also runs the child waybill's own lifecycle
    (confirm, cancel, generic state change, in-place update).

Architecture position:
    Kernel > Services.  ``AllocationResolver`` is the read side (lookup by
    key); ``ChildWaybillService`` is the write side.

Invariants enforced:
    - One rule per service instance, used for both lookup and creation via
      the same ``allocation_key`` function.
    - The unique (allocation_rule, allocation_key) constraint is the
      authoritative guard; the resolver lookup is an optimization.  A
      uniqueness violation racing past the lookup becomes
      DuplicateAllocationError (retryable).
    - Child waybills of a final coordination record are frozen against
      edits; a later allocation of the same key still re-points them.
    - A cancelled child waybill releases its key.

Failure modes:
    - CoordinationNotFoundError / ChildWaybillNotFoundError.
    - TerminalStateError when the owning record or the child is final.
    - PrincipalConsigneeError when the record has no principal consignee.
    - ReferenceNotFoundError when a lookup is configured and the farm or
      product is unknown.
    - DuplicateAllocationError on a lost creation race.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cargo_kernel.domain.allocation import (
    DEFAULT_ALLOCATION_RULE,
    AllocationRequest,
    AllocationRule,
    ChildWaybillQuantities,
)
from cargo_kernel.domain.clock import Clock, SystemClock
from cargo_kernel.domain.documents import ChildWaybillState, EntityKind
from cargo_kernel.domain.events import EventType, PendingEvents, WorkflowEvent
from cargo_kernel.domain.references import ReferenceKind, ReferenceLookup, require_reference
from cargo_kernel.exceptions import (
    DuplicateAllocationError,
    PreconditionFailedError,
    PrincipalConsigneeError,
    TerminalStateError,
)
from cargo_kernel.logging_config import get_logger
from cargo_kernel.models.coordination import CoordinationRecord
from cargo_kernel.models.waybill import ChildWaybill
from cargo_kernel.services.base import BaseService
from cargo_kernel.services.numbering_service import NumberingService
from cargo_kernel.services.workflow_engine import TransitionRecord, WorkflowEngine

logger = get_logger("services.child_waybill")

_KIND = EntityKind.CHILD_WAYBILL
_COORDINATION = EntityKind.COORDINATION


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of ``ChildWaybillService.allocate``."""

    child_waybill: ChildWaybill
    created: bool
    repointed: bool
    previous_coordination_record_id: UUID | None = None


class AllocationResolver:
    """Lookup of an existing child waybill by composite key."""

    def __init__(self, session: Session):
        self._session = session

    def find_existing(
        self,
        farm_id: UUID,
        master_waybill_id: UUID,
        consignee_id: UUID,
        product_id: UUID,
        rule: AllocationRule,
    ) -> ChildWaybill | None:
        rule = AllocationRule(rule)
        key = AllocationRequest(farm_id, master_waybill_id, consignee_id, product_id).key(rule)
        return self._session.execute(
            select(ChildWaybill)
            .where(
                ChildWaybill.allocation_rule == rule.value,
                ChildWaybill.allocation_key == key,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()


class ChildWaybillService(BaseService[ChildWaybill]):
    """Allocation and lifecycle of child waybills."""

    def __init__(
        self,
        session: Session,
        workflow: WorkflowEngine,
        numbering: NumberingService,
        rule: AllocationRule = DEFAULT_ALLOCATION_RULE,
        clock: Clock | None = None,
        events: PendingEvents | None = None,
        references: ReferenceLookup | None = None,
    ):
        super().__init__(session)
        self._workflow = workflow
        self._numbering = numbering
        self._rule = AllocationRule(rule)
        self._clock = clock or SystemClock()
        self._events = events if events is not None else workflow.events
        self._references = references
        self._resolver = AllocationResolver(session)

    @property
    def rule(self) -> AllocationRule:
        return self._rule

    def find_existing(
        self,
        farm_id: UUID,
        master_waybill_id: UUID,
        consignee_id: UUID,
        product_id: UUID,
    ) -> ChildWaybill | None:
        return self._resolver.find_existing(
            farm_id, master_waybill_id, consignee_id, product_id, self._rule
        )

    # -- helpers --------------------------------------------------------

    def _open_coordination(self, coordination_record_id: UUID) -> CoordinationRecord:
        record = self._workflow.load_entity(_COORDINATION, coordination_record_id)
        state = self._workflow.state(record.current_state_id)
        if state.is_final:
            raise TerminalStateError(_COORDINATION.value, str(record.id), state.name)
        return record

    def _ensure_open(self, child: ChildWaybill) -> None:
        state = self._workflow.state(child.current_state_id)
        if state.is_final:
            raise TerminalStateError(_KIND.value, str(child.id), state.name)
        self._open_coordination(child.coordination_record_id)

    def get(self, child_waybill_id: UUID, lock: bool = False) -> ChildWaybill:
        return self._workflow.load_entity(_KIND, child_waybill_id, lock=lock)

    def list_for_coordination(self, coordination_record_id: UUID) -> list[ChildWaybill]:
        return list(
            self.session.execute(
                select(ChildWaybill)
                .where(ChildWaybill.coordination_record_id == coordination_record_id)
                .order_by(ChildWaybill.number)
            )
            .scalars()
            .all()
        )

    # -- allocation -----------------------------------------------------

    def allocate(
        self,
        coordination_record_id: UUID,
        farm_id: UUID,
        actor_id: UUID,
        product_id: UUID | None = None,
        quantities: ChildWaybillQuantities | None = None,
    ) -> AllocationResult:
        """
        Idempotent upsert of the child waybill for a farm on a record.

        The consignee dimension is the record's principal consignee; the
        product defaults to the record's product.
        """
        record = self._open_coordination(coordination_record_id)
        consignee_id = record.principal_consignee_id
        if consignee_id is None:
            raise PrincipalConsigneeError(0)
        product_id = product_id or record.product_id
        require_reference(self._references, ReferenceKind.FARM, farm_id)
        require_reference(self._references, ReferenceKind.PRODUCT, product_id)

        request = AllocationRequest(
            farm_id=farm_id,
            master_waybill_id=record.master_waybill_id,
            consignee_id=consignee_id,
            product_id=product_id,
        )
        existing = self.find_existing(
            farm_id, record.master_waybill_id, consignee_id, product_id
        )
        if existing is not None:
            return self._reuse(existing, record, request, actor_id, quantities)
        return self._create(record, request, actor_id, quantities)

    def _reuse(
        self,
        child: ChildWaybill,
        record: CoordinationRecord,
        request: AllocationRequest,
        actor_id: UUID,
        quantities: ChildWaybillQuantities | None,
    ) -> AllocationResult:
        previous = child.coordination_record_id
        repointed = previous != record.id
        if repointed:
            child.coordination_record_id = record.id
            child.master_waybill_id = request.master_waybill_id
            child.consignee_id = request.consignee_id
            child.product_id = request.product_id
        if quantities is not None:
            child.apply_quantities(quantities)
        child.updated_by_id = actor_id
        self.session.flush()

        if repointed:
            logger.info(
                "child_waybill_repointed",
                extra={
                    "child_waybill_id": str(child.id),
                    "number": child.number,
                    "from_coordination": str(previous),
                    "to_coordination": str(record.id),
                },
            )
            self._record_assigned(child, actor_id, created=False, previous=previous)
        return AllocationResult(
            child_waybill=child,
            created=False,
            repointed=repointed,
            previous_coordination_record_id=previous if repointed else None,
        )

    def _create(
        self,
        record: CoordinationRecord,
        request: AllocationRequest,
        actor_id: UUID,
        quantities: ChildWaybillQuantities | None,
    ) -> AllocationResult:
        key = request.key(self._rule)
        initial = self._workflow.initial_state(_KIND)
        quantities = quantities or ChildWaybillQuantities()
        try:
            with self.session.begin_nested():
                issued = self._numbering.generate()
                child = ChildWaybill(
                    coordination_record_id=record.id,
                    master_waybill_id=request.master_waybill_id,
                    farm_id=request.farm_id,
                    product_id=request.product_id,
                    consignee_id=request.consignee_id,
                    number=issued.number,
                    number_format=issued.format.value,
                    number_scope=issued.scope,
                    year=issued.year,
                    sequence=issued.sequence,
                    allocation_rule=self._rule.value,
                    allocation_key=key,
                    current_state_id=initial.id,
                    created_by_id=actor_id,
                )
                child.apply_quantities(quantities)
                self.session.add(child)
                self.session.flush()
                self._workflow.record_initial_state(_KIND, child, actor_id)
        except IntegrityError as exc:
            if self.find_existing(
                request.farm_id,
                request.master_waybill_id,
                request.consignee_id,
                request.product_id,
            ) is not None:
                logger.warning(
                    "child_waybill_allocation_conflict",
                    extra={"allocation_rule": self._rule.value, "allocation_key": key},
                )
                raise DuplicateAllocationError(self._rule.value, key) from exc
            raise

        logger.info(
            "child_waybill_created",
            extra={
                "child_waybill_id": str(child.id),
                "number": child.number,
                "coordination_record_id": str(record.id),
                "allocation_rule": self._rule.value,
            },
        )
        self._record_assigned(child, actor_id, created=True, previous=None)
        return AllocationResult(child_waybill=child, created=True, repointed=False)

    def _record_assigned(
        self,
        child: ChildWaybill,
        actor_id: UUID,
        created: bool,
        previous: UUID | None,
    ) -> None:
        self._events.record(
            WorkflowEvent(
                event_type=EventType.CHILD_WAYBILL_ASSIGNED,
                entity_kind=_KIND.value,
                entity_id=child.id,
                actor_id=actor_id,
                occurred_at=self._clock.now(),
                payload={
                    "number": child.number,
                    "coordination_record_id": child.coordination_record_id,
                    "master_waybill_id": child.master_waybill_id,
                    "farm_id": child.farm_id,
                    "created": created,
                    "previous_coordination_record_id": previous,
                },
            )
        )

    # -- lifecycle ------------------------------------------------------

    def change_state(
        self,
        child_waybill_id: UUID,
        destination_state_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
        actor_roles: Iterable[str] | None = None,
    ) -> TransitionRecord:
        child = self.get(child_waybill_id, lock=True)
        self._open_coordination(child.coordination_record_id)
        destination = self._workflow.state(destination_state_id)
        if destination.entity_kind == _KIND and destination.name == ChildWaybillState.CANCELLED:
            # Cancelling has to release the allocation key
            return self._cancel(child, comment, actor_id, actor_roles)
        return self._workflow.execute(
            _KIND,
            child.id,
            child.current_state_id,
            destination_state_id,
            actor_id,
            comment=comment,
            actor_roles=actor_roles,
        )

    def confirm(
        self,
        child_waybill_id: UUID,
        actor_id: UUID,
        quantities: ChildWaybillQuantities | None = None,
        comment: str | None = None,
        actor_roles: Iterable[str] | None = None,
    ) -> ChildWaybill:
        child = self.get(child_waybill_id, lock=True)
        self._open_coordination(child.coordination_record_id)
        if not self._workflow.is_in(child, _KIND, ChildWaybillState.REGISTERED):
            raise PreconditionFailedError(
                f"Child waybill {child.number} is not pending confirmation",
                child_waybill_id=str(child.id),
            )
        with self.session.begin_nested():
            if quantities is not None:
                child.apply_quantities(quantities)
                child.updated_by_id = actor_id
                self.session.flush()
            self._workflow.transition_to(
                _KIND,
                child,
                ChildWaybillState.CONFIRMED,
                actor_id,
                comment=comment,
                actor_roles=actor_roles,
            )
        return child

    def cancel(
        self,
        child_waybill_id: UUID,
        reason: str,
        actor_id: UUID,
        actor_roles: Iterable[str] | None = None,
    ) -> ChildWaybill:
        """Cancel a child waybill and release its allocation key."""
        child = self.get(child_waybill_id, lock=True)
        self._open_coordination(child.coordination_record_id)
        self._cancel(child, reason, actor_id, actor_roles)
        return child

    def _cancel(
        self,
        child: ChildWaybill,
        reason: str | None,
        actor_id: UUID,
        actor_roles: Iterable[str] | None,
    ) -> TransitionRecord:
        with self.session.begin_nested():
            transition = self._workflow.transition_to(
                _KIND,
                child,
                ChildWaybillState.CANCELLED,
                actor_id,
                comment=reason,
                actor_roles=actor_roles,
            )
            child.allocation_key = None
            self.session.flush()
        logger.info(
            "child_waybill_cancelled",
            extra={"child_waybill_id": str(child.id), "number": child.number},
        )
        return transition

    def update(
        self,
        child_waybill_id: UUID,
        actor_id: UUID,
        quantities: ChildWaybillQuantities | None = None,
        product_id: UUID | None = None,
    ) -> ChildWaybill:
        """In-place update of quantities and/or product.

        Changing the product moves the row to the new composite key.
        """
        child = self.get(child_waybill_id, lock=True)
        self._ensure_open(child)
        new_key = child.allocation_key
        if product_id is not None and product_id != child.product_id:
            require_reference(self._references, ReferenceKind.PRODUCT, product_id)
            new_key = AllocationRequest(
                child.farm_id, child.master_waybill_id, child.consignee_id, product_id
            ).key(AllocationRule(child.allocation_rule))
        try:
            with self.session.begin_nested():
                if quantities is not None:
                    child.apply_quantities(quantities)
                if product_id is not None:
                    child.product_id = product_id
                    child.allocation_key = new_key
                child.updated_by_id = actor_id
                self.session.flush()
        except IntegrityError as exc:
            raise DuplicateAllocationError(child.allocation_rule, new_key or "") from exc
        return child
