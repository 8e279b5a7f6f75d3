"""
Config -> Kernel bridges.

Functions that turn a ``WorkflowConfigurationSet`` into kernel inputs:
seeded state/transition rows, the numbering policy and the allocation
rule.  They live here because the kernel never imports ``cargo_config``.

Usage:
    from cargo_config import get_active_config
    from cargo_config.bridges import seed_workflow_definitions

    config = get_active_config()
    seed_workflow_definitions(session, config, actor_id)
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from cargo_config.schema import WorkflowConfigurationSet
from cargo_kernel.domain.allocation import AllocationRule
from cargo_kernel.domain.numbering import ChildNumberFormat, NumberingPolicy
from cargo_kernel.logging_config import get_logger
from cargo_kernel.models.workflow import AllowedTransition, DocumentState

logger = get_logger("config.bridges")


@dataclass(frozen=True)
class SeedResult:
    states_created: int
    transitions_created: int

    @property
    def changed(self) -> bool:
        return bool(self.states_created or self.transitions_created)


def seed_workflow_definitions(
    session: Session, config: WorkflowConfigurationSet, actor_id: UUID
) -> SeedResult:
    """
    Insert the states and transitions of ``config`` that are not yet stored.

    Existing rows are matched by (kind, name) and (kind, origin, destination)
    and left untouched, so running twice is a no-op.  Flushes; the caller
    commits.
    """
    existing = {
        (s.entity_kind, s.name): s
        for s in session.execute(select(DocumentState)).scalars().all()
    }
    states_created = 0
    for state in config.states:
        key = (state.entity_kind, state.name)
        if key in existing:
            continue
        row = DocumentState(
            entity_kind=state.entity_kind,
            name=state.name,
            is_initial=state.is_initial,
            is_final=state.is_final,
            description=state.description,
            color=state.color,
        )
        session.add(row)
        existing[key] = row
        states_created += 1
    session.flush()

    present = {
        (t.entity_kind, t.origin_state_id, t.destination_state_id)
        for t in session.execute(select(AllowedTransition)).scalars().all()
    }
    transitions_created = 0
    for transition in config.transitions:
        origin = existing[(transition.entity_kind, transition.origin)]
        destination = existing[(transition.entity_kind, transition.destination)]
        key = (transition.entity_kind, origin.id, destination.id)
        if key in present:
            continue
        session.add(
            AllowedTransition(
                entity_kind=transition.entity_kind,
                origin_state_id=origin.id,
                destination_state_id=destination.id,
                allowed_roles=list(transition.allowed_roles),
                requires_comment=transition.requires_comment,
                action=transition.action,
            )
        )
        present.add(key)
        transitions_created += 1
    session.flush()

    logger.info(
        "workflow_definitions_seeded",
        extra={
            "config_id": config.config_id,
            "checksum": config.checksum,
            "states_created": states_created,
            "transitions_created": transitions_created,
            "actor_id": str(actor_id),
        },
    )
    return SeedResult(states_created, transitions_created)


def build_numbering_policy(config: WorkflowConfigurationSet) -> NumberingPolicy:
    return NumberingPolicy(
        format=ChildNumberFormat(config.numbering.format),
        prefix=config.numbering.prefix,
        template=config.numbering.template,
    )


def build_allocation_rule(config: WorkflowConfigurationSet) -> AllocationRule:
    return AllocationRule(config.allocation.rule)
