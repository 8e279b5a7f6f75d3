"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers per numbering scope
    (child waybill year, prefix, template).  Uses a dedicated counter table
    with row-level locking (``SELECT ... FOR UPDATE``) so two concurrent
    allocations in the same scope never receive the same value.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by NumberingService.

Invariants enforced:
    - The locked counter row is the sole source of the next value.  The
      highest number already issued in the scope is only a cross-check:
      a counter that is behind it means the scope is inconsistent and
      allocation fails loudly instead of handing out a used number.
    - Transactional: the increment is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via
      savepoint rollback and retry).
    - NumberingScopeError: counter behind the issued maximum.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from cargo_kernel.db.base import Base
from cargo_kernel.exceptions import NumberingScopeError
from cargo_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named numbering scope with its current value.
    Row-level locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    # Scope name (e.g., "child_waybill:year:2026")
    name: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Contract:
        Accepts a scope name and the highest value already issued in that
        scope, and returns the next strictly-increasing value.

    Guarantees:
        - ``SELECT ... FOR UPDATE`` serializes concurrent allocations for
          the same scope.
        - A scope seen for the first time starts right after the highest
          value already issued, so pre-existing numbers are never reused.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, scope: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == scope)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, scope: str, issued_max: int = 0) -> int:
        """
        Get the next value for a numbering scope.

        Preconditions:
            - ``scope`` is a non-empty string.
            - ``issued_max`` is the highest value already present in the
              scope's issued numbers (0 when none).

        Postconditions:
            - Returns an integer > ``issued_max``.
            - The counter row is locked until the transaction completes.

        Raises:
            NumberingScopeError: counter is behind ``issued_max``.
        """
        counter = self._locked_counter(scope)

        if counter is None:
            # First use of this scope; another transaction may race us
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=scope, current_value=issued_max)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_counter_created",
                    extra={"scope": scope, "start": issued_max},
                )
            except IntegrityError:
                logger.debug("sequence_counter_race_retry", extra={"scope": scope})
                savepoint.rollback()
                counter = self._locked_counter(scope)
                if counter is None:
                    raise

        if counter.current_value < issued_max:
            logger.error(
                "sequence_scope_inconsistent",
                extra={
                    "scope": scope,
                    "counter_value": counter.current_value,
                    "issued_max": issued_max,
                },
            )
            raise NumberingScopeError(scope, counter.current_value, issued_max)

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"scope": scope, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, scope: str) -> int | None:
        """Current value of a scope without incrementing, or None."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == scope)
        ).scalar_one_or_none()
        return counter.current_value if counter else None

    def reset(self, scope: str, value: int = 0) -> None:
        """
        Reset a scope to a specific value.

        WARNING: tests and migration scripts only.
        """
        counter = self._locked_counter(scope)
        if counter is None:
            self._session.add(SequenceCounter(name=scope, current_value=value))
        else:
            counter.current_value = value
        self._session.flush()
