"""
Module: cargo_kernel.db.base
Responsibility: Declarative base for every document table: waybills,
    coordination records, consignee assignments, states, history, counters
    and the loyalty ledger.
Architecture position: Kernel > DB.  Lowest import target in the kernel;
    must not import models/, services/, selectors/ or domain/.

Invariants enforced:
    - uuid4 primary keys stored as String(36), so SQLite and PostgreSQL
      share one schema.
    - Decimal columns (weights, full-box equivalents, charges) are
      Numeric(18, 4); quantities never travel as float.
    - Documents edited by people (``TrackedBase``) record who created and
      last touched them.  History and ledger rows carry their own actor
      and time instead.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, Date, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID <-> 36-character string."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return str(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return UUID(value) if value is not None else None


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(18, 4),
        datetime: DateTime(timezone=True),
        date: Date,
        UUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """Creation and last-edit stamps for user-maintained documents."""

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    # Internal steps are attributed to SYSTEM_ACTOR_ID, never left NULL
    created_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    updated_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
