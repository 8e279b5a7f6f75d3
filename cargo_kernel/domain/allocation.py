"""
Child waybill allocation keys (``cargo_kernel.domain.allocation``).

Responsibility
--------------
Defines which dimensions of an allocation request identify a child
waybill.  The same ``allocation_key`` function feeds both the lookup and
the unique column written on creation, so a rule cannot drift between
the two.

Rules, coarsest to finest::

    FARM_ONLY                       farm
    FARM_MASTER                     farm x master waybill
    FARM_CONSIGNEE                  farm x consignee
    FARM_MASTER_CONSIGNEE           farm x master waybill x consignee
    FARM_MASTER_CONSIGNEE_PRODUCT   farm x master waybill x consignee x product

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID

from cargo_kernel.domain.documents import (
    BOX_WEIGHT_KG,
    BoxType,
    full_box_equivalent,
)


class AllocationRule(str, Enum):
    FARM_ONLY = "FARM_ONLY"
    FARM_MASTER = "FARM_MASTER"
    FARM_CONSIGNEE = "FARM_CONSIGNEE"
    FARM_MASTER_CONSIGNEE = "FARM_MASTER_CONSIGNEE"
    FARM_MASTER_CONSIGNEE_PRODUCT = "FARM_MASTER_CONSIGNEE_PRODUCT"


DEFAULT_ALLOCATION_RULE = AllocationRule.FARM_MASTER_CONSIGNEE_PRODUCT

_RULE_DIMENSIONS: dict[AllocationRule, tuple[str, ...]] = {
    AllocationRule.FARM_ONLY: ("farm",),
    AllocationRule.FARM_MASTER: ("farm", "master"),
    AllocationRule.FARM_CONSIGNEE: ("farm", "consignee"),
    AllocationRule.FARM_MASTER_CONSIGNEE: ("farm", "master", "consignee"),
    AllocationRule.FARM_MASTER_CONSIGNEE_PRODUCT: (
        "farm",
        "master",
        "consignee",
        "product",
    ),
}


def rule_dimensions(rule: AllocationRule) -> tuple[str, ...]:
    """Names of the dimensions that form the identity under ``rule``."""
    return _RULE_DIMENSIONS[AllocationRule(rule)]


def allocation_key(
    rule: AllocationRule,
    farm_id: UUID,
    master_waybill_id: UUID,
    consignee_id: UUID,
    product_id: UUID,
) -> str:
    """
    Deterministic identity key of an allocation request under ``rule``.

    Dimensions not selected by the rule do not appear in the key, so two
    requests that differ only in those dimensions collide on purpose.
    """
    values = {
        "farm": farm_id,
        "master": master_waybill_id,
        "consignee": consignee_id,
        "product": product_id,
    }
    return "|".join(f"{dim}={values[dim]}" for dim in rule_dimensions(rule))


@dataclass(frozen=True)
class AllocationRequest:
    """Dimensions of a single allocation request."""

    farm_id: UUID
    master_waybill_id: UUID
    consignee_id: UUID
    product_id: UUID

    def key(self, rule: AllocationRule) -> str:
        return allocation_key(
            rule,
            self.farm_id,
            self.master_waybill_id,
            self.consignee_id,
            self.product_id,
        )


@dataclass(frozen=True)
class ChildWaybillQuantities:
    """Quantity fields carried by a child waybill."""

    full_boxes: Decimal = Decimal("0")
    pieces: int = 0
    weight_kg: Decimal = Decimal("0")
    stems: int = 0

    def __post_init__(self) -> None:
        for name in ("full_boxes", "pieces", "weight_kg", "stems"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

    @classmethod
    def from_boxes(
        cls, box_type: BoxType, pieces: int, stems: int = 0
    ) -> "ChildWaybillQuantities":
        """Quantities for ``pieces`` boxes of one type at nominal weight."""
        box_type = BoxType(box_type)
        return cls(
            full_boxes=full_box_equivalent(box_type, pieces),
            pieces=pieces,
            weight_kg=BOX_WEIGHT_KG[box_type] * pieces,
            stems=stems,
        )
