"""
Configuration-driven workflow tables (``cargo_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the per-kind state machines, and the pure decision
function the workflow engine executes.  States and transitions are data
seeded from configuration; nothing here knows about master waybills,
coordination records or child waybills beyond their kind label.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Exactly one initial state per entity kind present in the table.
* Transitions reference states of their own kind.
* (kind, origin, destination) is unique.
* Final states have no outgoing transitions.
* State names are unique per kind.

Role gate
---------
``actor_roles=None`` means the caller is internal and not role-gated.
Any supplied role collection, including an empty one, must intersect the
transition's allowed roles.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from cargo_kernel.domain.documents import plain_value
from cargo_kernel.exceptions import StateNotFoundError, WorkflowConfigurationError


@dataclass(frozen=True)
class StateDef:
    """A named state of one entity kind."""

    id: UUID
    entity_kind: str
    name: str
    is_initial: bool = False
    is_final: bool = False
    description: str | None = None
    color: str | None = None


@dataclass(frozen=True)
class TransitionDef:
    """An allowed move between two states of the same kind.

    Contract: frozen.  ``allowed_roles`` is the role gate; ``requires_comment``
    forces the caller to justify the move.
    """

    entity_kind: str
    origin_state_id: UUID
    destination_state_id: UUID
    allowed_roles: frozenset[str] = frozenset()
    requires_comment: bool = False
    action: str | None = None

    def permits(self, actor_roles: Iterable[str] | None) -> bool:
        if actor_roles is None:
            return True
        return bool(self.allowed_roles & frozenset(actor_roles))


class TransitionOutcome(str, Enum):
    ALLOWED = "ALLOWED"
    NO_TRANSITION = "NO_TRANSITION"
    ROLE_DENIED = "ROLE_DENIED"
    COMMENT_REQUIRED = "COMMENT_REQUIRED"


@dataclass(frozen=True)
class TransitionDecision:
    outcome: TransitionOutcome
    transition: TransitionDef | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome == TransitionOutcome.ALLOWED


def _blank(comment: str | None) -> bool:
    return comment is None or not comment.strip()


@dataclass(frozen=True)
class WorkflowTable:
    """All states and transitions, indexed for lookup.

    Contract: frozen; validated on construction.
    Raises: ``WorkflowConfigurationError`` listing every problem found.
    """

    states: tuple[StateDef, ...]
    transitions: tuple[TransitionDef, ...]
    _by_id: dict = field(init=False, repr=False, compare=False)
    _by_name: dict = field(init=False, repr=False, compare=False)
    _by_triple: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "states", tuple(self.states))
        object.__setattr__(self, "transitions", tuple(self.transitions))

        errors: list[str] = []
        by_id: dict[UUID, StateDef] = {}
        by_name: dict[tuple[str, str], StateDef] = {}
        initials: dict[str, list[str]] = {}

        for state in self.states:
            kind = plain_value(state.entity_kind)
            if state.id in by_id:
                errors.append(f"duplicate state id {state.id}")
            if (kind, plain_value(state.name)) in by_name:
                errors.append(f"duplicate state {kind}.{state.name}")
            by_id[state.id] = state
            by_name[(kind, plain_value(state.name))] = state
            initials.setdefault(kind, [])
            if state.is_initial:
                initials[kind].append(state.name)

        for kind, names in initials.items():
            if len(names) != 1:
                errors.append(
                    f"{kind} must have exactly one initial state, found {len(names)}"
                )

        by_triple: dict[tuple[str, UUID, UUID], TransitionDef] = {}
        for t in self.transitions:
            kind = plain_value(t.entity_kind)
            origin = by_id.get(t.origin_state_id)
            dest = by_id.get(t.destination_state_id)
            if origin is None or dest is None:
                errors.append(
                    f"{kind} transition {t.origin_state_id} -> "
                    f"{t.destination_state_id} references an unknown state"
                )
                continue
            if {plain_value(origin.entity_kind), plain_value(dest.entity_kind)} != {kind}:
                errors.append(
                    f"{kind} transition {origin.name} -> {dest.name} "
                    "crosses entity kinds"
                )
            if origin.is_final:
                errors.append(
                    f"{kind} transition leaves final state {origin.name}"
                )
            triple = (kind, t.origin_state_id, t.destination_state_id)
            if triple in by_triple:
                errors.append(
                    f"duplicate {kind} transition {origin.name} -> {dest.name}"
                )
            by_triple[triple] = t

        if errors:
            raise WorkflowConfigurationError(errors)

        object.__setattr__(self, "_by_id", by_id)
        object.__setattr__(self, "_by_name", by_name)
        object.__setattr__(self, "_by_triple", by_triple)

    # -- states ---------------------------------------------------------

    def state(self, state_id: UUID) -> StateDef:
        try:
            return self._by_id[state_id]
        except KeyError:
            raise StateNotFoundError("*", str(state_id)) from None

    def state_named(self, entity_kind: str, name: str) -> StateDef:
        try:
            return self._by_name[(plain_value(entity_kind), plain_value(name))]
        except KeyError:
            raise StateNotFoundError(plain_value(entity_kind), plain_value(name)) from None

    def states_for(self, entity_kind: str) -> tuple[StateDef, ...]:
        kind = plain_value(entity_kind)
        return tuple(s for s in self.states if plain_value(s.entity_kind) == kind)

    def initial_state(self, entity_kind: str) -> StateDef:
        for state in self.states_for(entity_kind):
            if state.is_initial:
                return state
        raise StateNotFoundError(plain_value(entity_kind), "<initial>")

    def is_final(self, state_id: UUID) -> bool:
        return self.state(state_id).is_final

    # -- transitions ----------------------------------------------------

    def find(
        self, entity_kind: str, origin_state_id: UUID, destination_state_id: UUID
    ) -> TransitionDef | None:
        return self._by_triple.get(
            (plain_value(entity_kind), origin_state_id, destination_state_id)
        )

    def validate(
        self,
        entity_kind: str,
        origin_state_id: UUID,
        destination_state_id: UUID,
        actor_roles: Iterable[str] | None = None,
    ) -> bool:
        transition = self.find(entity_kind, origin_state_id, destination_state_id)
        return transition is not None and transition.permits(actor_roles)

    def transitions_from(
        self,
        entity_kind: str,
        state_id: UUID,
        actor_roles: Iterable[str] | None = None,
    ) -> tuple[TransitionDef, ...]:
        kind = plain_value(entity_kind)
        roles = None if actor_roles is None else frozenset(actor_roles)
        return tuple(
            t
            for (k, origin, _), t in self._by_triple.items()
            if k == kind and origin == state_id and t.permits(roles)
        )

    def decide(
        self,
        entity_kind: str,
        origin_state_id: UUID,
        destination_state_id: UUID,
        actor_roles: Iterable[str] | None = None,
        comment: str | None = None,
    ) -> TransitionDecision:
        """Pure decision over (current, requested, roles, comment)."""
        transition = self.find(entity_kind, origin_state_id, destination_state_id)
        if transition is None:
            return TransitionDecision(TransitionOutcome.NO_TRANSITION)
        if not transition.permits(actor_roles):
            return TransitionDecision(TransitionOutcome.ROLE_DENIED, transition)
        if transition.requires_comment and _blank(comment):
            return TransitionDecision(TransitionOutcome.COMMENT_REQUIRED, transition)
        return TransitionDecision(TransitionOutcome.ALLOWED, transition)
