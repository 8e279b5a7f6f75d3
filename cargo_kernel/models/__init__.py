"""ORM models for the cargo kernel."""

from cargo_kernel.models.coordination import (
    COST_FIELDS,
    ConsigneeAssignment,
    CoordinationRecord,
)
from cargo_kernel.models.loyalty import LoyaltyAccount, LoyaltyTransaction
from cargo_kernel.models.waybill import ChildWaybill, MasterWaybill, MasterWaybillBatch
from cargo_kernel.models.workflow import (
    AllowedTransition,
    DocumentState,
    StateHistoryEntry,
)

__all__ = [
    "AllowedTransition",
    "COST_FIELDS",
    "ChildWaybill",
    "ConsigneeAssignment",
    "CoordinationRecord",
    "DocumentState",
    "LoyaltyAccount",
    "LoyaltyTransaction",
    "MasterWaybill",
    "MasterWaybillBatch",
    "StateHistoryEntry",
]
