"""
cargo_services.runtime -- composition root for the document workflow.

Responsibility:
    Wires one session, clock and pending-event collector into the kernel
    services for the duration of a unit of work, commits it, and only then
    publishes the recorded events to the dispatcher.

Architecture position:
    Services -- the layer above ``cargo_kernel`` and ``cargo_config``.
    Entry point for scripts, tests and any outer surface.

Invariants enforced:
    - Events are published only after a successful commit; a rolled-back
      unit of work publishes nothing.
    - Every service in a bundle shares the same session and event
      collector, so a composite operation commits or fails as one.
    - Immutability listeners are registered before the first unit of work.

Failure modes:
    - Any exception inside ``transaction()`` rolls back, discards the
      pending events and propagates unchanged.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from cargo_config.bridges import (
    SeedResult,
    build_allocation_rule,
    build_numbering_policy,
    seed_workflow_definitions,
)
from cargo_config.schema import WorkflowConfigurationSet
from cargo_kernel.db.immutability import register_immutability_listeners
from cargo_kernel.domain.clock import Clock, SystemClock
from cargo_kernel.domain.events import PendingEvents
from cargo_kernel.domain.references import ReferenceLookup
from cargo_kernel.logging_config import get_logger
from cargo_kernel.services.child_waybill_service import ChildWaybillService
from cargo_kernel.services.coordination_service import CoordinationService
from cargo_kernel.services.loyalty_service import LoyaltyLedgerService
from cargo_kernel.services.master_waybill_service import MasterWaybillService
from cargo_kernel.services.numbering_service import NumberingService
from cargo_kernel.services.workflow_engine import WorkflowEngine
from cargo_services.event_dispatcher import EventDispatcher

logger = get_logger("services.runtime")


@dataclass(frozen=True)
class ServiceBundle:
    """The services of one unit of work, all on the same session."""

    session: Session
    clock: Clock
    events: PendingEvents
    workflow: WorkflowEngine
    numbering: NumberingService
    master_waybills: MasterWaybillService
    coordinations: CoordinationService
    child_waybills: ChildWaybillService
    loyalty: LoyaltyLedgerService


class WorkflowRuntime:
    """Builds service bundles and publishes their events after commit."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: WorkflowConfigurationSet,
        clock: Clock | None = None,
        references: ReferenceLookup | None = None,
        dispatcher: EventDispatcher | None = None,
        synchronous: bool = False,
    ):
        self._session_factory = session_factory
        self._config = config
        self._clock = clock or SystemClock()
        self._references = references
        self._dispatcher = dispatcher or EventDispatcher(
            synchronous=synchronous, clock=self._clock
        )
        self._numbering_policy = build_numbering_policy(config)
        self._allocation_rule = build_allocation_rule(config)
        register_immutability_listeners()

    @property
    def config(self) -> WorkflowConfigurationSet:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def references(self) -> ReferenceLookup | None:
        return self._references

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    def build_services(self, session: Session, events: PendingEvents) -> ServiceBundle:
        workflow = WorkflowEngine(session, clock=self._clock, events=events)
        numbering = NumberingService(
            session, policy=self._numbering_policy, clock=self._clock
        )
        return ServiceBundle(
            session=session,
            clock=self._clock,
            events=events,
            workflow=workflow,
            numbering=numbering,
            master_waybills=MasterWaybillService(
                session, workflow, clock=self._clock, events=events
            ),
            coordinations=CoordinationService(
                session,
                workflow,
                clock=self._clock,
                events=events,
                references=self._references,
            ),
            child_waybills=ChildWaybillService(
                session,
                workflow,
                numbering,
                rule=self._allocation_rule,
                clock=self._clock,
                events=events,
                references=self._references,
            ),
            loyalty=LoyaltyLedgerService(session, clock=self._clock),
        )

    @contextmanager
    def transaction(self) -> Generator[ServiceBundle, None, None]:
        """
        One unit of work.

        Commits on normal exit and then publishes the recorded events.  On
        exception rolls back, discards the events and re-raises.
        """
        session = self._session_factory()
        events = PendingEvents()
        try:
            yield self.build_services(session, events)
            session.commit()
        except Exception:
            session.rollback()
            dropped = events.discard()
            logger.warning(
                "transaction_rolled_back",
                extra={"discarded_events": dropped},
                exc_info=True,
            )
            raise
        finally:
            session.close()
        self._dispatcher.publish_all(events.drain())

    def seed(self, actor_id: UUID) -> SeedResult:
        """Insert the configured states and transitions that are missing."""
        with self.transaction() as services:
            return seed_workflow_definitions(services.session, self._config, actor_id)

    def register_default_listeners(self) -> None:
        from cargo_services.listeners import register_default_listeners

        register_default_listeners(self)

    def shutdown(self, timeout: float = 5.0) -> None:
        self._dispatcher.join(timeout=timeout)
        self._dispatcher.shutdown(timeout=timeout)
