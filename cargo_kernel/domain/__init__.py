"""
Pure domain layer.

This module contains value objects and domain logic with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from cargo_kernel.domain.allocation import (
    DEFAULT_ALLOCATION_RULE,
    AllocationRequest,
    AllocationRule,
    ChildWaybillQuantities,
    allocation_key,
)
from cargo_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from cargo_kernel.domain.documents import (
    SYSTEM_ACTOR_ID,
    BoxType,
    ChildWaybillState,
    CoordinationState,
    EntityKind,
    MasterWaybillState,
    PaymentMode,
)
from cargo_kernel.domain.events import EventType, PendingEvents, WorkflowEvent
from cargo_kernel.domain.numbering import (
    ChildNumberFormat,
    IssuedNumber,
    NumberingPolicy,
    ParsedChildNumber,
    parse_child_number,
)
from cargo_kernel.domain.references import (
    ReferenceKind,
    ReferenceLookup,
    StaticReferenceLookup,
    require_reference,
)
from cargo_kernel.domain.sequence import (
    format_master_waybill_number,
    generate_sequence,
    preview_sequence,
)
from cargo_kernel.domain.workflow import (
    StateDef,
    TransitionDecision,
    TransitionDef,
    TransitionOutcome,
    WorkflowTable,
)

__all__ = [
    "AllocationRequest",
    "AllocationRule",
    "BoxType",
    "ChildNumberFormat",
    "ChildWaybillQuantities",
    "ChildWaybillState",
    "Clock",
    "CoordinationState",
    "DEFAULT_ALLOCATION_RULE",
    "DeterministicClock",
    "EntityKind",
    "EventType",
    "IssuedNumber",
    "MasterWaybillState",
    "NumberingPolicy",
    "ParsedChildNumber",
    "PaymentMode",
    "PendingEvents",
    "ReferenceKind",
    "ReferenceLookup",
    "SYSTEM_ACTOR_ID",
    "StateDef",
    "StaticReferenceLookup",
    "SystemClock",
    "TransitionDecision",
    "TransitionDef",
    "TransitionOutcome",
    "WorkflowEvent",
    "WorkflowTable",
    "allocation_key",
    "format_master_waybill_number",
    "generate_sequence",
    "parse_child_number",
    "preview_sequence",
    "require_reference",
]
