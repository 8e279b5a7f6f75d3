"""
Master waybill sequence rule (``cargo_kernel.domain.sequence``).

Responsibility
--------------
Pure generation of master-waybill sequence numbers.  Each next value is
the previous plus 11, except when the previous value ends in the digit 6,
in which case the step is 4.  Preview and persistence use the same
function, so a previewed batch is exactly the batch that gets issued.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O, no locking needed.

Invariants enforced
-------------------
* ``len(generate_sequence(i, n)) == n`` and the first element is ``i``.
* Every element follows its predecessor by exactly one rule step.

Failure modes
-------------
* ``InvalidSequenceInputError`` for a non-positive initial value, a
  negative count, or non-integer input.  Raised before any generation.

Examples::

    generate_sequence(10, 4)  # [10, 21, 32, 43]
    generate_sequence(16, 3)  # [16, 20, 31]
"""

from __future__ import annotations

from cargo_kernel.exceptions import InvalidSequenceInputError

STANDARD_INCREMENT = 11
SPECIAL_INCREMENT = 4
SPECIAL_LAST_DIGIT = 6


def _require_int(field: str, value: object) -> int:
    # bool is an int subclass; True must not pass as 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidSequenceInputError(field, value, "must be an integer")
    return value


def next_sequence(value: int) -> int:
    """Apply one rule step to ``value``."""
    if value % 10 == SPECIAL_LAST_DIGIT:
        return value + SPECIAL_INCREMENT
    return value + STANDARD_INCREMENT


def is_valid_successor(previous: int, candidate: int) -> bool:
    """True iff ``candidate`` is the rule step after ``previous``."""
    return next_sequence(previous) == candidate


def generate_sequence(initial: int, count: int) -> list[int]:
    """
    Generate ``count`` sequence numbers starting at ``initial``.

    Preconditions:
        - ``initial`` is an integer > 0.
        - ``count`` is an integer >= 0.

    Returns:
        Ordered list of ``count`` numbers; empty when ``count`` is 0.
    """
    initial = _require_int("initial", initial)
    count = _require_int("count", count)
    if initial <= 0:
        raise InvalidSequenceInputError("initial", initial, "must be positive")
    if count < 0:
        raise InvalidSequenceInputError("count", count, "must not be negative")

    values: list[int] = []
    current = initial
    for _ in range(count):
        values.append(current)
        current = next_sequence(current)
    return values


def preview_sequence(initial: int, count: int) -> list[int]:
    """Read-only preview; identical to ``generate_sequence``."""
    return generate_sequence(initial, count)


def format_master_waybill_number(prefix: int, sequence: int) -> str:
    """Display number of a master waybill, e.g. ``145-10``."""
    return f"{prefix}-{sequence}"
