"""
Module: cargo_kernel.models.coordination
Responsibility: ORM persistence for coordination records and their
    consignee assignments.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - ``active_master_waybill_id`` is unique: at most one non-cancelled
      coordination record per master waybill, enforced by the store.
    - (coordination_record_id, consignee_id) is unique.
    - At most one principal consignee per record (partial unique index).
    - Optimistic ``version`` column on the record.

Failure modes:
    - IntegrityError when a second active record targets the same waybill,
      or a second principal consignee is written.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cargo_kernel.db.base import TrackedBase, UUIDString
from cargo_kernel.models.waybill import ChildWaybill, MasterWaybill

# Cost/service fields a caller may set on a coordination record
COST_FIELDS: tuple[str, ...] = (
    "waybill_cost",
    "fuel_surcharge",
    "security_surcharge",
    "calculation_aux",
    "other_charges",
    "rate",
    "chargeable_weight",
    "form_a",
    "transport",
    "pca",
    "phytosanitary",
    "thermograph",
    "mca",
    "tax",
)


class CoordinationRecord(TrackedBase):
    """Binds one master waybill, its consignees, product and flight."""

    __tablename__ = "coordination_records"

    __table_args__ = (
        Index("ix_coordination_records_master", "master_waybill_id"),
    )

    master_waybill_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("master_waybills.id"), nullable=False
    )
    active_master_waybill_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("master_waybills.id"), nullable=True, unique=True
    )
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    iata_agency_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    awb_destination_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    final_destination_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    payment_mode: Mapped[str] = mapped_column(String(10), nullable=False)
    flight_date: Mapped[date] = mapped_column(nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    waybill_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    fuel_surcharge: Mapped[Decimal | None] = mapped_column(nullable=True)
    security_surcharge: Mapped[Decimal | None] = mapped_column(nullable=True)
    calculation_aux: Mapped[Decimal | None] = mapped_column(nullable=True)
    other_charges: Mapped[Decimal | None] = mapped_column(nullable=True)
    rate: Mapped[Decimal | None] = mapped_column(nullable=True)
    chargeable_weight: Mapped[Decimal | None] = mapped_column(nullable=True)
    form_a: Mapped[Decimal | None] = mapped_column(nullable=True)
    transport: Mapped[Decimal | None] = mapped_column(nullable=True)
    pca: Mapped[Decimal | None] = mapped_column(nullable=True)
    phytosanitary: Mapped[Decimal | None] = mapped_column(nullable=True)
    thermograph: Mapped[Decimal | None] = mapped_column(nullable=True)
    mca: Mapped[Decimal | None] = mapped_column(nullable=True)
    tax: Mapped[Decimal | None] = mapped_column(nullable=True)

    current_state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("document_states.id"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    master_waybill: Mapped[MasterWaybill] = relationship(
        foreign_keys=[master_waybill_id]
    )
    consignees: Mapped[list["ConsigneeAssignment"]] = relationship(
        back_populates="coordination_record",
        cascade="all, delete-orphan",
        order_by="ConsigneeAssignment.consignee_id",
    )
    child_waybills: Mapped[list[ChildWaybill]] = relationship(
        back_populates="coordination_record",
        order_by="ChildWaybill.number",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def principal_consignee_id(self) -> UUID | None:
        for assignment in self.consignees:
            if assignment.is_principal:
                return assignment.consignee_id
        return None

    def __repr__(self) -> str:
        return f"<CoordinationRecord {self.id} master={self.master_waybill_id}>"


class ConsigneeAssignment(TrackedBase):
    """A consignee attached to a coordination record."""

    __tablename__ = "coordination_consignees"

    __table_args__ = (
        UniqueConstraint(
            "coordination_record_id",
            "consignee_id",
            name="uq_coordination_consignees_pair",
        ),
        Index(
            "uq_coordination_consignees_principal",
            "coordination_record_id",
            unique=True,
            postgresql_where=text("is_principal"),
            sqlite_where=text("is_principal = 1"),
        ),
    )

    coordination_record_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("coordination_records.id"), nullable=False
    )
    consignee_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    is_principal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    coordination_record: Mapped[CoordinationRecord] = relationship(
        back_populates="consignees"
    )
