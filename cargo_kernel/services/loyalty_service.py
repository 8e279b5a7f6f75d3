"""
LoyaltyLedgerService -- customer points ledger.

Responsibility:
    Opens points accounts and appends idempotent credit transactions,
    keeping the account's running balances in step with the ledger.

Architecture position:
    Kernel > Services.  Called by the loyalty accrual listener after a
    coordination record is cut; never by the lifecycle services.

Invariants enforced:
    - (kind, reference_kind, reference_id) identifies a transaction; a
      second accrual for the same reference returns None without writing.
    - Transactions are append-only; balances move only through ``accrue``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cargo_kernel.domain.clock import Clock, SystemClock
from cargo_kernel.exceptions import PreconditionFailedError
from cargo_kernel.logging_config import get_logger
from cargo_kernel.models.loyalty import LoyaltyAccount, LoyaltyTransaction
from cargo_kernel.services.base import BaseService

logger = get_logger("services.loyalty")


class LoyaltyTransactionKind(str, Enum):
    CREDIT = "CREDIT"


class LoyaltyLedgerService(BaseService[LoyaltyAccount]):
    """Points accounts keyed by customer."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def get_account(self, customer_id: UUID, lock: bool = False) -> LoyaltyAccount | None:
        stmt = select(LoyaltyAccount).where(LoyaltyAccount.customer_id == customer_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def open_account(self, customer_id: UUID, actor_id: UUID) -> LoyaltyAccount:
        account = self.get_account(customer_id)
        if account is not None:
            return account
        account = LoyaltyAccount(
            customer_id=customer_id,
            current_points=0,
            total_points=0,
            created_by_id=actor_id,
        )
        self.session.add(account)
        self.session.flush()
        logger.info("loyalty_account_opened", extra={"customer_id": str(customer_id)})
        return account

    def balance(self, customer_id: UUID) -> int:
        account = self.get_account(customer_id)
        return account.current_points if account is not None else 0

    def _already_credited(self, reference_kind: str, reference_id: UUID) -> bool:
        return (
            self.session.execute(
                select(LoyaltyTransaction.id).where(
                    LoyaltyTransaction.kind == LoyaltyTransactionKind.CREDIT.value,
                    LoyaltyTransaction.reference_kind == reference_kind,
                    LoyaltyTransaction.reference_id == reference_id,
                )
            ).first()
            is not None
        )

    def accrue(
        self,
        customer_id: UUID,
        points: int,
        reason: str,
        reference_kind: str,
        reference_id: UUID,
        actor_id: UUID,
        occurred_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> LoyaltyTransaction | None:
        """
        Credit ``points`` for one reference.

        Returns None when the customer has no account or the reference was
        already credited.
        """
        if points <= 0:
            raise PreconditionFailedError(
                "Accrued points must be positive", points=points
            )
        account = self.get_account(customer_id, lock=True)
        if account is None:
            logger.info(
                "loyalty_accrual_skipped",
                extra={"customer_id": str(customer_id), "reason": "no_account"},
            )
            return None
        if self._already_credited(reference_kind, reference_id):
            logger.info(
                "loyalty_accrual_duplicate",
                extra={"reference_kind": reference_kind, "reference_id": str(reference_id)},
            )
            return None

        transaction = LoyaltyTransaction(
            account_id=account.id,
            kind=LoyaltyTransactionKind.CREDIT.value,
            points=points,
            reason=reason,
            reference_kind=reference_kind,
            reference_id=reference_id,
            actor_id=actor_id,
            occurred_at=occurred_at or self._clock.now(),
            expires_at=expires_at,
        )
        try:
            with self.session.begin_nested():
                self.session.add(transaction)
                account.current_points += points
                account.total_points += points
                account.updated_by_id = actor_id
                self.session.flush()
        except IntegrityError:
            # Credited concurrently by another session
            self.session.refresh(account)
            logger.info(
                "loyalty_accrual_duplicate",
                extra={"reference_kind": reference_kind, "reference_id": str(reference_id)},
            )
            return None

        logger.info(
            "loyalty_points_accrued",
            extra={
                "customer_id": str(customer_id),
                "points": points,
                "balance": account.current_points,
            },
        )
        return transaction
