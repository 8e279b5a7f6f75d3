"""
Module: cargo_kernel.selectors.document_selector
Responsibility: Read-only queries over the document pipeline: state
    history trails, highest issued child sequence per numbering scope,
    child waybill counts and box summaries for a coordination record.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.

Invariants enforced:
    - Read-only: no mutations performed on any queried data.
    - History is returned in ``position`` order, which is append order.

Failure modes:
    - Returns empty results / zero when no matching rows exist (never raises
      on absence of data).
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from cargo_kernel.models.coordination import CoordinationRecord
from cargo_kernel.models.waybill import ChildWaybill
from cargo_kernel.models.workflow import DocumentState, StateHistoryEntry
from cargo_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class HistoryEntryDTO:
    """One step of an entity's audit trail."""

    id: UUID
    entity_kind: str
    entity_id: UUID
    position: int
    state_id: UUID
    state_name: str
    actor_id: UUID
    comment: str | None
    changed_at: datetime


@dataclass(frozen=True)
class BoxSummary:
    """Totals of the quantity fields across a record's child waybills."""

    coordination_record_id: UUID
    child_waybill_count: int
    full_boxes: Decimal
    pieces: int
    weight_kg: Decimal
    stems: int


class DocumentSelector(BaseSelector[StateHistoryEntry]):
    """Read-side queries for workflow-driven documents."""

    def history(self, entity_kind: str, entity_id: UUID) -> list[HistoryEntryDTO]:
        rows = self.session.execute(
            select(StateHistoryEntry, DocumentState.name)
            .join(DocumentState, DocumentState.id == StateHistoryEntry.state_id)
            .where(
                StateHistoryEntry.entity_kind == entity_kind,
                StateHistoryEntry.entity_id == entity_id,
            )
            .order_by(StateHistoryEntry.position)
        ).all()
        return [
            HistoryEntryDTO(
                id=entry.id,
                entity_kind=entry.entity_kind,
                entity_id=entry.entity_id,
                position=entry.position,
                state_id=entry.state_id,
                state_name=name,
                actor_id=entry.actor_id,
                comment=entry.comment,
                changed_at=entry.changed_at,
            )
            for entry, name in rows
        ]

    def last_history_position(self, entity_kind: str, entity_id: UUID) -> int:
        value = self.session.execute(
            select(func.max(StateHistoryEntry.position)).where(
                StateHistoryEntry.entity_kind == entity_kind,
                StateHistoryEntry.entity_id == entity_id,
            )
        ).scalar_one()
        return value or 0

    def max_issued_sequence(self, number_scope: str) -> int:
        """Highest child sequence issued in ``number_scope`` (0 when none)."""
        value = self.session.execute(
            select(func.max(ChildWaybill.sequence)).where(
                ChildWaybill.number_scope == number_scope
            )
        ).scalar_one()
        return value or 0

    def number_exists(self, number: str) -> bool:
        return (
            self.session.execute(
                select(ChildWaybill.id).where(ChildWaybill.number == number)
            ).first()
            is not None
        )

    def active_coordination_id(self, master_waybill_id: UUID) -> UUID | None:
        return self.session.execute(
            select(CoordinationRecord.id).where(
                CoordinationRecord.active_master_waybill_id == master_waybill_id
            )
        ).scalar_one_or_none()

    def child_waybill_count(
        self, coordination_record_id: UUID, exclude_state_ids: Iterable[UUID] = ()
    ) -> int:
        stmt = select(func.count(ChildWaybill.id)).where(
            ChildWaybill.coordination_record_id == coordination_record_id
        )
        excluded = list(exclude_state_ids)
        if excluded:
            stmt = stmt.where(ChildWaybill.current_state_id.not_in(excluded))
        return self.session.execute(stmt).scalar_one()

    def box_summary(
        self, coordination_record_id: UUID, exclude_state_ids: Iterable[UUID] = ()
    ) -> BoxSummary:
        stmt = select(
            func.count(ChildWaybill.id),
            func.coalesce(func.sum(ChildWaybill.full_boxes), 0),
            func.coalesce(func.sum(ChildWaybill.pieces), 0),
            func.coalesce(func.sum(ChildWaybill.weight_kg), 0),
            func.coalesce(func.sum(ChildWaybill.stems), 0),
        ).where(ChildWaybill.coordination_record_id == coordination_record_id)
        excluded = list(exclude_state_ids)
        if excluded:
            stmt = stmt.where(ChildWaybill.current_state_id.not_in(excluded))
        count, full_boxes, pieces, weight_kg, stems = self.session.execute(stmt).one()
        return BoxSummary(
            coordination_record_id=coordination_record_id,
            child_waybill_count=count,
            full_boxes=Decimal(str(full_boxes)),
            pieces=int(pieces),
            weight_kg=Decimal(str(weight_kg)),
            stems=int(stems),
        )
