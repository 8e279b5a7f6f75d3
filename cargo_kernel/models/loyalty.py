"""
Module: cargo_kernel.models.loyalty
Responsibility: ORM persistence for the customer points ledger credited
    when coordination records are cut.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One account per customer.
    - (kind, reference_kind, reference_id) is unique on transactions: the
      idempotency key that makes repeated accrual for the same cut a no-op.
    - Transactions are append-only (db/immutability.py).

Failure modes:
    - IntegrityError on a second accrual for the same reference.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cargo_kernel.db.base import Base, TrackedBase, UUIDString


class LoyaltyAccount(TrackedBase):
    """Points balance of one customer."""

    __tablename__ = "loyalty_accounts"

    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    current_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    transactions: Mapped[list["LoyaltyTransaction"]] = relationship(
        back_populates="account",
        order_by="LoyaltyTransaction.occurred_at",
    )


class LoyaltyTransaction(Base):
    """A single movement on a points account."""

    __tablename__ = "loyalty_transactions"

    __table_args__ = (
        UniqueConstraint(
            "kind", "reference_kind", "reference_id", name="uq_loyalty_transactions_ref"
        ),
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("loyalty_accounts.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    reference_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    reference_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    account: Mapped[LoyaltyAccount] = relationship(back_populates="transactions")
