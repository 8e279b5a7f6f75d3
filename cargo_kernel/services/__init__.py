"""Services for the cargo kernel (write side)."""

from cargo_kernel.services.child_waybill_service import (
    AllocationResolver,
    AllocationResult,
    ChildWaybillService,
)
from cargo_kernel.services.coordination_service import (
    ConsigneeRef,
    CoordinationDraft,
    CoordinationService,
)
from cargo_kernel.services.loyalty_service import LoyaltyLedgerService
from cargo_kernel.services.master_waybill_service import BatchResult, MasterWaybillService
from cargo_kernel.services.numbering_service import NumberingService
from cargo_kernel.services.sequence_service import SequenceService
from cargo_kernel.services.workflow_engine import TransitionRecord, WorkflowEngine

__all__ = [
    "AllocationResolver",
    "AllocationResult",
    "BatchResult",
    "ChildWaybillService",
    "ConsigneeRef",
    "CoordinationDraft",
    "CoordinationService",
    "LoyaltyLedgerService",
    "MasterWaybillService",
    "NumberingService",
    "SequenceService",
    "TransitionRecord",
    "WorkflowEngine",
]
