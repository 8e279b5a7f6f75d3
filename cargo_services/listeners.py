"""
cargo_services.listeners -- reactions to committed workflow events.

Each listener runs in its own unit of work (``WorkflowRuntime.transaction``)
after the originating transaction committed, and is idempotent: replaying
an event leaves the store unchanged.

    coordination.cut             -> LoyaltyAccrualListener
    child_waybill.state_changed  -> CascadeCoordinationListener
    every event type             -> AuditLogListener
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from cargo_kernel.domain.documents import (
    SYSTEM_ACTOR_ID,
    ChildWaybillState,
    CoordinationState,
    EntityKind,
)
from cargo_kernel.domain.events import EventType, WorkflowEvent
from cargo_kernel.logging_config import get_logger

if TYPE_CHECKING:
    from cargo_services.runtime import WorkflowRuntime

logger = get_logger("services.listeners")

LOYALTY_REFERENCE_KIND = "COORDINATION"


def add_years(moment: datetime, years: int) -> datetime:
    """Same calendar day ``years`` later; 29 February falls back to the 28th."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


class LoyaltyAccrualListener:
    """Credits the principal consignee's customer when a record is cut."""

    def __init__(self, runtime: WorkflowRuntime):
        self._runtime = runtime
        self._points_per_child = runtime.config.loyalty.points_per_child_waybill
        self._expiry_years = runtime.config.loyalty.expiry_years

    def __call__(self, event: WorkflowEvent) -> None:
        consignee_id = event.payload.get("principal_consignee_id")
        count = int(event.payload.get("child_waybill_count") or 0)
        references = self._runtime.references
        customer_id = (
            references.customer_for_consignee(consignee_id)
            if references is not None and consignee_id is not None
            else None
        )
        if customer_id is None or count == 0:
            logger.info(
                "loyalty_accrual_skipped",
                extra={
                    "coordination_record_id": str(event.entity_id),
                    "reason": "no_customer" if customer_id is None else "no_child_waybills",
                },
            )
            return

        with self._runtime.transaction() as services:
            services.loyalty.accrue(
                customer_id=customer_id,
                points=count * self._points_per_child,
                reason=f"Coordination {event.entity_id} cut with {count} child waybills",
                reference_kind=LOYALTY_REFERENCE_KIND,
                reference_id=event.entity_id,
                actor_id=event.actor_id,
                occurred_at=event.occurred_at,
                expires_at=add_years(event.occurred_at, self._expiry_years),
            )


class CascadeCoordinationListener:
    """Promotes a record to COORDINATED once all its child waybills are confirmed."""

    def __init__(self, runtime: WorkflowRuntime):
        self._runtime = runtime

    def __call__(self, event: WorkflowEvent) -> None:
        if event.payload.get("to_state") != ChildWaybillState.CONFIRMED.value:
            return
        record_id = event.payload.get("coordination_record_id")
        if record_id is None:
            return

        with self._runtime.transaction() as services:
            workflow = services.workflow
            record = services.coordinations.get(record_id, lock=True)
            current = workflow.state(record.current_state_id)
            coordinated = workflow.state_named(
                EntityKind.COORDINATION, CoordinationState.COORDINATED
            )
            if current.is_final or current.id == coordinated.id:
                return
            if workflow.table.find(EntityKind.COORDINATION, current.id, coordinated.id) is None:
                logger.info(
                    "coordination_cascade_skipped",
                    extra={"coordination_record_id": str(record.id), "state": current.name},
                )
                return

            cancelled = workflow.state_named(
                EntityKind.CHILD_WAYBILL, ChildWaybillState.CANCELLED
            )
            confirmed = workflow.state_named(
                EntityKind.CHILD_WAYBILL, ChildWaybillState.CONFIRMED
            )
            siblings = [
                child
                for child in services.child_waybills.list_for_coordination(record.id)
                if child.current_state_id != cancelled.id
            ]
            if not siblings or any(c.current_state_id != confirmed.id for c in siblings):
                return

            workflow.execute(
                EntityKind.COORDINATION,
                record.id,
                current.id,
                coordinated.id,
                SYSTEM_ACTOR_ID,
                comment="All child waybills confirmed",
            )
            logger.info(
                "coordination_cascaded",
                extra={"coordination_record_id": str(record.id), "child_waybills": len(siblings)},
            )


class AuditLogListener:
    """Writes one structured log line per delivered event."""

    def __call__(self, event: WorkflowEvent) -> None:
        logger.info(
            "workflow_event",
            extra={
                "event_id": str(event.event_id),
                "event_type": event.event_type.value,
                "entity_kind": event.entity_kind,
                "entity_id": str(event.entity_id),
                "occurred_at": event.occurred_at,
                "payload": dict(event.payload),
            },
        )


def register_default_listeners(runtime: WorkflowRuntime) -> None:
    dispatcher = runtime.dispatcher
    dispatcher.subscribe(
        EventType.COORDINATION_CUT, LoyaltyAccrualListener(runtime), name="loyalty_accrual"
    )
    dispatcher.subscribe(
        EventType.CHILD_WAYBILL_STATE_CHANGED,
        CascadeCoordinationListener(runtime),
        name="coordination_cascade",
    )
    audit = AuditLogListener()
    for event_type in EventType:
        dispatcher.subscribe(event_type, audit, name="audit_log")


__all__ = [
    "AuditLogListener",
    "CascadeCoordinationListener",
    "LoyaltyAccrualListener",
    "add_years",
    "register_default_listeners",
]
