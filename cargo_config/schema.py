"""
WorkflowConfigurationSet schema.

The human-authored workflow definition: document states and transitions
per entity kind, plus the numbering, allocation and loyalty settings.
YAML files are parsed into these types by the loader and checked by the
validator; bridges turn them into kernel inputs.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StateDef:
    """A named state of one entity kind."""

    entity_kind: str
    name: str
    is_initial: bool = False
    is_final: bool = False
    description: str | None = None
    color: str | None = None


@dataclass(frozen=True)
class TransitionDef:
    """An allowed move, referencing states by name."""

    entity_kind: str
    origin: str
    destination: str
    allowed_roles: tuple[str, ...] = ()
    requires_comment: bool = False
    action: str | None = None


@dataclass(frozen=True)
class NumberingDef:
    format: str = "YEAR_SEQUENCE"
    prefix: str = "GH"
    template: str | None = None


@dataclass(frozen=True)
class AllocationDef:
    rule: str = "FARM_MASTER_CONSIGNEE_PRODUCT"


@dataclass(frozen=True)
class LoyaltyDef:
    points_per_child_waybill: int = 10
    expiry_years: int = 1


@dataclass(frozen=True)
class WorkflowConfigurationSet:
    """One versioned configuration set.

    ``checksum`` is the SHA-256 of the canonical source document.
    """

    config_id: str
    version: int
    roles: tuple[str, ...]
    states: tuple[StateDef, ...]
    transitions: tuple[TransitionDef, ...]
    numbering: NumberingDef
    allocation: AllocationDef
    loyalty: LoyaltyDef
    checksum: str
    description: str | None = None

    def states_for(self, entity_kind: str) -> tuple[StateDef, ...]:
        return tuple(s for s in self.states if s.entity_kind == entity_kind)

    def transitions_for(self, entity_kind: str) -> tuple[TransitionDef, ...]:
        return tuple(t for t in self.transitions if t.entity_kind == entity_kind)
