"""
Document vocabulary (``cargo_kernel.domain.documents``).

Responsibility
--------------
Enumerations and constants shared by the document pipeline: the three
entity kinds that run on the workflow engine, the well-known state names
the lifecycle services depend on, payment modes, box types and the
system actor used for internal, non-role-gated transitions.

Architecture position
---------------------
**Kernel domain layer** -- pure values.  ZERO I/O.

Invariants enforced
-------------------
* State names here must exist in the active configuration set for the
  corresponding kind (checked by ``cargo_config.validator``).
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from uuid import UUID

# Actor recorded on system-attributed transitions (compensation, cascade).
SYSTEM_ACTOR_ID = UUID(int=0)


class EntityKind(str, Enum):
    """Entity kinds driven by the workflow engine."""

    MASTER_WAYBILL = "MASTER_WAYBILL"
    COORDINATION = "COORDINATION"
    CHILD_WAYBILL = "CHILD_WAYBILL"


class MasterWaybillState(str, Enum):
    AVAILABLE = "AVAILABLE"
    ASSIGNED = "ASSIGNED"
    LOANED = "LOANED"
    RETURNED = "RETURNED"


class CoordinationState(str, Enum):
    CREATED = "CREATED"
    IN_COORDINATION = "IN_COORDINATION"
    COORDINATED = "COORDINATED"
    CUT = "CUT"
    CANCELLED = "CANCELLED"


class ChildWaybillState(str, Enum):
    REGISTERED = "REGISTERED"
    CONFIRMED = "CONFIRMED"
    PROCESSED = "PROCESSED"
    SENT = "SENT"
    CANCELLED = "CANCELLED"


REQUIRED_STATES: dict[EntityKind, frozenset[str]] = {
    EntityKind.MASTER_WAYBILL: frozenset(s.value for s in MasterWaybillState),
    EntityKind.COORDINATION: frozenset(
        {
            CoordinationState.COORDINATED.value,
            CoordinationState.CUT.value,
            CoordinationState.CANCELLED.value,
        }
    ),
    EntityKind.CHILD_WAYBILL: frozenset(
        {ChildWaybillState.CONFIRMED.value, ChildWaybillState.CANCELLED.value}
    ),
}


class PaymentMode(str, Enum):
    PREPAID = "PREPAID"
    COLLECT = "COLLECT"


class BoxType(str, Enum):
    """Standard flower box sizes."""

    FULL = "FB"
    HALF = "HB"
    QUARTER = "QB"
    EIGHTH = "EB"
    SIXTH = "SB"


# Nominal weight in kg of each box type
BOX_WEIGHT_KG: dict[BoxType, Decimal] = {
    BoxType.FULL: Decimal("25"),
    BoxType.HALF: Decimal("12.5"),
    BoxType.QUARTER: Decimal("6.25"),
    BoxType.EIGHTH: Decimal("3.125"),
    BoxType.SIXTH: Decimal("4.167"),
}

# Fraction of a full box each box type represents
FULL_BOX_EQUIVALENT: dict[BoxType, Decimal] = {
    BoxType.FULL: Decimal("1"),
    BoxType.HALF: Decimal("0.5"),
    BoxType.QUARTER: Decimal("0.25"),
    BoxType.EIGHTH: Decimal("0.125"),
    BoxType.SIXTH: Decimal("0.1667"),
}


def full_box_equivalent(box_type: BoxType, pieces: int) -> Decimal:
    """Full-box equivalents for ``pieces`` boxes of ``box_type``."""
    return FULL_BOX_EQUIVALENT[box_type] * pieces


def plain_value(value: object) -> str:
    """Underlying string of an enum member, or ``str(value)`` otherwise."""
    if isinstance(value, Enum):
        return value.value
    return str(value)
