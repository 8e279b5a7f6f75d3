"""
Catalog reference lookup (``cargo_kernel.domain.references``).

Farms, products, consignees, destinations and customers live in catalog
services outside the kernel.  Lifecycle services only ask whether an id
exists, and which customer a consignee belongs to (for points accrual).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Protocol, runtime_checkable
from uuid import UUID

from cargo_kernel.exceptions import ReferenceNotFoundError


class ReferenceKind(str, Enum):
    FARM = "FARM"
    PRODUCT = "PRODUCT"
    CONSIGNEE = "CONSIGNEE"
    DESTINATION = "DESTINATION"
    CARRIER = "CARRIER"
    IATA_AGENCY = "IATA_AGENCY"


@runtime_checkable
class ReferenceLookup(Protocol):
    def exists(self, kind: ReferenceKind, reference_id: UUID) -> bool: ...

    def customer_for_consignee(self, consignee_id: UUID) -> UUID | None: ...


class StaticReferenceLookup:
    """In-memory catalog; also the stand-in used by tests and scripts."""

    def __init__(
        self,
        known: Mapping[ReferenceKind, Iterable[UUID]] | None = None,
        consignee_customers: Mapping[UUID, UUID] | None = None,
    ):
        self._known: dict[ReferenceKind, set[UUID]] = {
            ReferenceKind(kind): set(ids) for kind, ids in (known or {}).items()
        }
        self._consignee_customers = dict(consignee_customers or {})

    def add(self, kind: ReferenceKind, *reference_ids: UUID) -> None:
        self._known.setdefault(ReferenceKind(kind), set()).update(reference_ids)

    def link_consignee(self, consignee_id: UUID, customer_id: UUID) -> None:
        self.add(ReferenceKind.CONSIGNEE, consignee_id)
        self._consignee_customers[consignee_id] = customer_id

    def exists(self, kind: ReferenceKind, reference_id: UUID) -> bool:
        return reference_id in self._known.get(ReferenceKind(kind), set())

    def customer_for_consignee(self, consignee_id: UUID) -> UUID | None:
        return self._consignee_customers.get(consignee_id)


def require_reference(
    lookup: ReferenceLookup | None, kind: ReferenceKind, reference_id: UUID | None
) -> None:
    """Raise ReferenceNotFoundError unless ``reference_id`` exists.

    With no lookup configured the caller is trusted to have checked.
    """
    if lookup is None or reference_id is None:
        return
    if not lookup.exists(kind, reference_id):
        raise ReferenceNotFoundError(ReferenceKind(kind).value, str(reference_id))
