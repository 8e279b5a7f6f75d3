"""
MasterWaybillService -- batch issuance and availability of master waybills.

Responsibility:
    Issues batches of master waybills from a carrier's stock using the
    sequence rule, and runs the loan / return / reinstate side of the
    master waybill lifecycle.  Assignment to (and release from) a
    coordination record is driven by CoordinationService through the
    workflow engine.

Architecture position:
    Kernel > Services.  Composes the pure sequence generator with
    WorkflowEngine for every state change.

Invariants enforced:
    - Preview equals issue: both call ``generate_sequence`` with the same
      arguments, so the numbers shown are the numbers persisted.
    - (prefix, sequence) is never issued twice; collisions are detected
      before any write.
    - Every new master waybill starts in the configured initial state
      with one history entry.
    - A loan is only possible from AVAILABLE with both flags clear;
      reinstating a returned waybill clears both flags.
    - ASSIGNED is entered and left only through CoordinationService;
      ``change_state`` rejects those edges and runs LOANED, RETURNED and
      reinstatement through their lifecycle methods.

Failure modes:
    - InvalidSequenceInputError: bad prefix, initial or count.
    - PreconditionFailedError: numbers already issued.
    - MasterWaybillNotAvailableError / MasterWaybillNotFoundError.
    - ForbiddenTransitionError / MissingCommentError from the engine.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cargo_kernel.domain.clock import Clock, SystemClock
from cargo_kernel.domain.documents import EntityKind, MasterWaybillState
from cargo_kernel.domain.events import EventType, PendingEvents, WorkflowEvent
from cargo_kernel.domain.sequence import (
    format_master_waybill_number,
    generate_sequence,
    preview_sequence,
)
from cargo_kernel.exceptions import (
    InvalidSequenceInputError,
    MasterWaybillNotAvailableError,
    PreconditionFailedError,
)
from cargo_kernel.logging_config import get_logger
from cargo_kernel.models.waybill import MasterWaybill, MasterWaybillBatch
from cargo_kernel.services.base import BaseService
from cargo_kernel.services.workflow_engine import TransitionRecord, WorkflowEngine

logger = get_logger("services.master_waybill")

_KIND = EntityKind.MASTER_WAYBILL


@dataclass(frozen=True)
class BatchResult:
    """A persisted batch of master waybills."""

    batch_id: UUID
    prefix: int
    sequences: tuple[int, ...]
    waybill_ids: tuple[UUID, ...]

    @property
    def numbers(self) -> tuple[str, ...]:
        return tuple(format_master_waybill_number(self.prefix, s) for s in self.sequences)


def _check_prefix(prefix: int) -> int:
    if isinstance(prefix, bool) or not isinstance(prefix, int):
        raise InvalidSequenceInputError("prefix", prefix, "must be an integer")
    if prefix <= 0:
        raise InvalidSequenceInputError("prefix", prefix, "must be positive")
    return prefix


class MasterWaybillService(BaseService[MasterWaybill]):
    """Issuance and loan lifecycle of master waybills."""

    def __init__(
        self,
        session: Session,
        workflow: WorkflowEngine,
        clock: Clock | None = None,
        events: PendingEvents | None = None,
    ):
        super().__init__(session)
        self._workflow = workflow
        self._clock = clock or SystemClock()
        self._events = events if events is not None else workflow.events

    # -- issuance -------------------------------------------------------

    def preview_batch(self, prefix: int, initial_sequence: int, count: int) -> list[str]:
        """Numbers ``create_batch`` would issue.  No reads, no writes."""
        _check_prefix(prefix)
        return [
            format_master_waybill_number(prefix, s)
            for s in preview_sequence(initial_sequence, count)
        ]

    def create_batch(
        self,
        prefix: int,
        initial_sequence: int,
        count: int,
        carrier_id: UUID,
        actor_id: UUID,
        issued_on: date | None = None,
        referring_agency_id: UUID | None = None,
        stock_tag: str | None = None,
        observations: str | None = None,
    ) -> BatchResult:
        _check_prefix(prefix)
        sequences = generate_sequence(initial_sequence, count)
        if not sequences:
            raise InvalidSequenceInputError(
                "count", count, "a batch needs at least one waybill"
            )

        taken = (
            self.session.execute(
                select(MasterWaybill.sequence).where(
                    MasterWaybill.prefix == prefix,
                    MasterWaybill.sequence.in_(sequences),
                )
            )
            .scalars()
            .all()
        )
        if taken:
            raise PreconditionFailedError(
                f"Master waybill numbers already issued for prefix {prefix}",
                prefix=prefix,
                sequences=sorted(taken),
            )

        initial = self._workflow.initial_state(_KIND)
        try:
            with self.session.begin_nested():
                batch = MasterWaybillBatch(
                    prefix=prefix,
                    initial_sequence=initial_sequence,
                    count=count,
                    issued_on=issued_on or self._clock.today(),
                    carrier_id=carrier_id,
                    referring_agency_id=referring_agency_id,
                    stock_tag=stock_tag,
                    created_by_id=actor_id,
                )
                self.session.add(batch)
                self.session.flush()

                waybills = [
                    MasterWaybill(
                        prefix=prefix,
                        sequence=sequence,
                        batch_id=batch.id,
                        current_state_id=initial.id,
                        observations=observations,
                        created_by_id=actor_id,
                    )
                    for sequence in sequences
                ]
                self.session.add_all(waybills)
                self.session.flush()
                for waybill in waybills:
                    self._workflow.record_initial_state(_KIND, waybill, actor_id)
        except IntegrityError as exc:
            raise PreconditionFailedError(
                f"Master waybill numbers for prefix {prefix} were issued concurrently",
                prefix=prefix,
            ) from exc

        logger.info(
            "master_waybill_batch_created",
            extra={
                "batch_id": str(batch.id),
                "prefix": prefix,
                "first": sequences[0],
                "last": sequences[-1],
                "count": len(sequences),
            },
        )
        return BatchResult(
            batch_id=batch.id,
            prefix=prefix,
            sequences=tuple(sequences),
            waybill_ids=tuple(w.id for w in waybills),
        )

    # -- reads ----------------------------------------------------------

    def get(self, master_waybill_id: UUID, lock: bool = False) -> MasterWaybill:
        return self._workflow.load_entity(_KIND, master_waybill_id, lock=lock)

    def list_available(self, carrier_id: UUID | None = None) -> list[MasterWaybill]:
        available = self._workflow.state_named(_KIND, MasterWaybillState.AVAILABLE)
        stmt = (
            select(MasterWaybill)
            .where(
                MasterWaybill.current_state_id == available.id,
                MasterWaybill.on_loan.is_(False),
                MasterWaybill.returned.is_(False),
            )
            .order_by(MasterWaybill.prefix, MasterWaybill.sequence)
        )
        if carrier_id is not None:
            stmt = stmt.join(MasterWaybillBatch).where(
                MasterWaybillBatch.carrier_id == carrier_id
            )
        return list(self.session.execute(stmt).scalars().all())

    # -- loan lifecycle -------------------------------------------------

    def register_loan(
        self,
        master_waybill_id: UUID,
        actor_id: UUID,
        observations: str | None = None,
        actor_roles: Iterable[str] | None = None,
    ) -> MasterWaybill:
        waybill = self.get(master_waybill_id, lock=True)
        self._loan(waybill, actor_id, observations, actor_roles)
        return waybill

    def _loan(
        self,
        waybill: MasterWaybill,
        actor_id: UUID,
        observations: str | None,
        actor_roles: Iterable[str] | None,
    ) -> TransitionRecord:
        if not self._workflow.is_in(waybill, _KIND, MasterWaybillState.AVAILABLE):
            raise MasterWaybillNotAvailableError(
                str(waybill.id), "only available waybills can be loaned"
            )
        if waybill.on_loan or waybill.returned:
            raise MasterWaybillNotAvailableError(
                str(waybill.id), "loan or return already registered"
            )

        with self.session.begin_nested():
            record = self._workflow.transition_to(
                _KIND,
                waybill,
                MasterWaybillState.LOANED,
                actor_id,
                comment=observations,
                actor_roles=actor_roles,
            )
            waybill.on_loan = True
            waybill.loaned_at = record.changed_at
            if observations:
                waybill.observations = observations
            self.session.flush()

        self._record(EventType.MASTER_WAYBILL_LOANED, waybill, actor_id, record)
        logger.info("master_waybill_loaned", extra={"number": waybill.number})
        return record

    def register_return(
        self,
        master_waybill_id: UUID,
        actor_id: UUID,
        observations: str | None = None,
        actor_roles: Iterable[str] | None = None,
    ) -> MasterWaybill:
        waybill = self.get(master_waybill_id, lock=True)
        self._return(waybill, actor_id, observations, actor_roles)
        return waybill

    def _return(
        self,
        waybill: MasterWaybill,
        actor_id: UUID,
        observations: str | None,
        actor_roles: Iterable[str] | None,
    ) -> TransitionRecord:
        if not waybill.on_loan or waybill.returned:
            raise PreconditionFailedError(
                f"Master waybill {waybill.id} is not on loan",
                master_waybill_id=str(waybill.id),
            )

        with self.session.begin_nested():
            record = self._workflow.transition_to(
                _KIND,
                waybill,
                MasterWaybillState.RETURNED,
                actor_id,
                comment=observations,
                actor_roles=actor_roles,
            )
            waybill.returned = True
            waybill.returned_at = record.changed_at
            if observations:
                waybill.observations = observations
            self.session.flush()

        self._record(EventType.MASTER_WAYBILL_RETURNED, waybill, actor_id, record)
        logger.info("master_waybill_returned", extra={"number": waybill.number})
        return record

    def reinstate(
        self,
        master_waybill_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
        actor_roles: Iterable[str] | None = None,
    ) -> MasterWaybill:
        """Put a returned waybill back into stock, clearing both flags."""
        waybill = self.get(master_waybill_id, lock=True)
        self._reinstate(waybill, actor_id, comment, actor_roles)
        return waybill

    def _reinstate(
        self,
        waybill: MasterWaybill,
        actor_id: UUID,
        comment: str | None,
        actor_roles: Iterable[str] | None,
    ) -> TransitionRecord:
        with self.session.begin_nested():
            record = self._workflow.transition_to(
                _KIND,
                waybill,
                MasterWaybillState.AVAILABLE,
                actor_id,
                comment=comment,
                actor_roles=actor_roles,
            )
            waybill.on_loan = False
            waybill.loaned_at = None
            waybill.returned = False
            waybill.returned_at = None
            self.session.flush()
        logger.info("master_waybill_reinstated", extra={"number": waybill.number})
        return record

    def change_state(
        self,
        master_waybill_id: UUID,
        destination_state_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
        actor_roles: Iterable[str] | None = None,
    ) -> TransitionRecord:
        """
        Generic role-gated transition.

        Loan, return and reinstatement run through their lifecycle methods so
        the flags, dates and events follow the state.  Entering or leaving
        ASSIGNED belongs to the coordination record and is rejected here.
        """
        waybill = self.get(master_waybill_id, lock=True)
        destination = self._workflow.state(destination_state_id)
        if destination.entity_kind == _KIND:
            current = self._workflow.state(waybill.current_state_id).name
            if MasterWaybillState.ASSIGNED in (destination.name, current):
                raise PreconditionFailedError(
                    f"Master waybill {waybill.id} is assigned and released only "
                    "through its coordination record",
                    master_waybill_id=str(waybill.id),
                    current_state=current,
                    destination_state=destination.name,
                )
            if destination.name == MasterWaybillState.LOANED:
                return self._loan(waybill, actor_id, comment, actor_roles)
            if destination.name == MasterWaybillState.RETURNED:
                return self._return(waybill, actor_id, comment, actor_roles)
            if (
                destination.name == MasterWaybillState.AVAILABLE
                and current == MasterWaybillState.RETURNED
            ):
                return self._reinstate(waybill, actor_id, comment, actor_roles)
        return self._workflow.execute(
            _KIND,
            waybill.id,
            waybill.current_state_id,
            destination_state_id,
            actor_id,
            comment=comment,
            actor_roles=actor_roles,
        )

    def update_observations(
        self, master_waybill_id: UUID, observations: str | None, actor_id: UUID
    ) -> MasterWaybill:
        waybill = self.get(master_waybill_id, lock=True)
        waybill.observations = observations
        waybill.updated_by_id = actor_id
        self.session.flush()
        return waybill

    def _record(
        self,
        event_type: EventType,
        waybill: MasterWaybill,
        actor_id: UUID,
        record: TransitionRecord,
    ) -> None:
        self._events.record(
            WorkflowEvent(
                event_type=event_type,
                entity_kind=_KIND.value,
                entity_id=waybill.id,
                actor_id=actor_id,
                occurred_at=record.changed_at,
                payload={
                    "number": waybill.number,
                    "observations": waybill.observations,
                },
            )
        )
