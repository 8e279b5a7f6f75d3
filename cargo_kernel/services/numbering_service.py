"""
NumberingService -- issues child waybill numbers under the active format.

Responsibility:
    Resolves the numbering scope for the current year, cross-checks the
    scope's locked counter against the highest sequence already issued,
    allocates the next sequence and renders it.

Architecture position:
    Kernel > Services.  Composes the pure ``NumberingPolicy`` with
    SequenceService and DocumentSelector.

Invariants enforced:
    - A number is never reused: the counter must not lag behind issued
      rows, and a rendered number that already exists is a scope error.
    - The issuing year comes from the injected clock.

Failure modes:
    - NumberingScopeError: counter behind issued numbers, or the rendered
      number already exists.
    - NumberingOverflowError: sequence too wide for the format.
"""

from sqlalchemy.orm import Session

from cargo_kernel.domain.clock import Clock, SystemClock
from cargo_kernel.domain.numbering import (
    IssuedNumber,
    NumberingPolicy,
    ParsedChildNumber,
    parse_child_number,
)
from cargo_kernel.exceptions import NumberingScopeError
from cargo_kernel.logging_config import get_logger
from cargo_kernel.selectors.document_selector import DocumentSelector
from cargo_kernel.services.sequence_service import SequenceService

logger = get_logger("services.numbering")


class NumberingService:
    """Child waybill number issuance for one numbering policy."""

    def __init__(
        self,
        session: Session,
        policy: NumberingPolicy | None = None,
        clock: Clock | None = None,
        sequences: SequenceService | None = None,
    ):
        self._session = session
        self._policy = policy or NumberingPolicy()
        self._clock = clock or SystemClock()
        self._sequences = sequences or SequenceService(session)
        self._selector = DocumentSelector(session)

    @property
    def policy(self) -> NumberingPolicy:
        return self._policy

    def generate(self) -> IssuedNumber:
        """Allocate and render the next number in the active scope."""
        year = self._clock.current_year()
        scope = self._policy.scope(year)
        issued_max = self._selector.max_issued_sequence(scope)
        sequence = self._sequences.next_value(scope, issued_max=issued_max)
        number = self._policy.render(sequence, year)

        if self._selector.number_exists(number):
            logger.error(
                "child_number_collision",
                extra={"scope": scope, "number": number, "sequence": sequence},
            )
            raise NumberingScopeError(scope, sequence - 1, sequence)

        logger.info(
            "child_number_issued",
            extra={"scope": scope, "number": number, "sequence": sequence},
        )
        return IssuedNumber(
            number=number,
            format=self._policy.format,
            scope=scope,
            sequence=sequence,
            year=year if self._policy.uses_year else None,
        )

    def parse(self, value: str) -> ParsedChildNumber:
        return parse_child_number(value, self._clock.current_year())

    def is_number_available(self, number: str) -> bool:
        return not self._selector.number_exists(number)
