"""
Module: cargo_kernel.models.waybill
Responsibility: ORM persistence for master waybill batches, master waybills
    and child waybills.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - (prefix, sequence) is unique across master waybills.
    - Child waybill numbers are unique.
    - (allocation_rule, allocation_key) is unique: the authoritative guard
      against duplicate child waybills for the same composite key.  A
      cancelled child waybill releases its key (NULL never collides).
    - Master and child waybills carry an optimistic ``version`` column;
      a stale UPDATE raises StaleDataError at flush.

Failure modes:
    - IntegrityError on duplicate master numbers, child numbers or
      allocation keys.
    - StaleDataError when a concurrent transaction bumped ``version``.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cargo_kernel.db.base import TrackedBase, UUIDString
from cargo_kernel.domain.allocation import ChildWaybillQuantities
from cargo_kernel.domain.sequence import format_master_waybill_number

if TYPE_CHECKING:
    from cargo_kernel.models.coordination import CoordinationRecord


class MasterWaybillBatch(TrackedBase):
    """One issuing request: a block of numbers from one carrier's stock."""

    __tablename__ = "master_waybill_batches"

    prefix: Mapped[int] = mapped_column(Integer, nullable=False)
    initial_sequence: Mapped[int] = mapped_column(nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False)
    issued_on: Mapped[date] = mapped_column(nullable=False)
    carrier_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    referring_agency_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    stock_tag: Mapped[str | None] = mapped_column(String(50), nullable=True)

    waybills: Mapped[list["MasterWaybill"]] = relationship(
        back_populates="batch",
        order_by="MasterWaybill.sequence",
    )


class MasterWaybill(TrackedBase):
    """A physical, pre-numbered air waybill."""

    __tablename__ = "master_waybills"

    __table_args__ = (
        UniqueConstraint("prefix", "sequence", name="uq_master_waybills_number"),
        Index("ix_master_waybills_state", "current_state_id"),
    )

    prefix: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(nullable=False)
    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("master_waybill_batches.id"), nullable=False
    )
    current_state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("document_states.id"), nullable=False
    )
    on_loan: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    loaned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    returned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    returned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    batch: Mapped[MasterWaybillBatch] = relationship(back_populates="waybills")

    __mapper_args__ = {"version_id_col": version}

    @property
    def number(self) -> str:
        return format_master_waybill_number(self.prefix, self.sequence)

    def __repr__(self) -> str:
        return f"<MasterWaybill {self.number}>"


class ChildWaybill(TrackedBase):
    """A farm's sub-allocation of a coordination record."""

    __tablename__ = "child_waybills"

    __table_args__ = (
        UniqueConstraint(
            "allocation_rule", "allocation_key", name="uq_child_waybills_allocation"
        ),
        Index("ix_child_waybills_coordination", "coordination_record_id"),
        Index("ix_child_waybills_scope", "number_scope", "sequence"),
    )

    coordination_record_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("coordination_records.id"), nullable=False
    )
    master_waybill_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("master_waybills.id"), nullable=False
    )
    farm_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    consignee_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    full_boxes: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    pieces: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weight_kg: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    stems: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    number: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    number_format: Mapped[str] = mapped_column(String(20), nullable=False)
    number_scope: Mapped[str] = mapped_column(String(120), nullable=False)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sequence: Mapped[int] = mapped_column(nullable=False)

    allocation_rule: Mapped[str] = mapped_column(String(40), nullable=False)
    allocation_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    current_state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("document_states.id"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    coordination_record: Mapped["CoordinationRecord"] = relationship(
        back_populates="child_waybills"
    )
    master_waybill: Mapped[MasterWaybill] = relationship()

    __mapper_args__ = {"version_id_col": version}

    @property
    def quantities(self) -> ChildWaybillQuantities:
        return ChildWaybillQuantities(
            full_boxes=self.full_boxes,
            pieces=self.pieces,
            weight_kg=self.weight_kg,
            stems=self.stems,
        )

    def apply_quantities(self, quantities: ChildWaybillQuantities) -> None:
        self.full_boxes = quantities.full_boxes
        self.pieces = quantities.pieces
        self.weight_kg = quantities.weight_kg
        self.stems = quantities.stems

    def __repr__(self) -> str:
        return f"<ChildWaybill {self.number}>"
