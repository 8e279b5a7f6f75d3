"""
Configuration Validator (``cargo_config.validator``).

Responsibility
--------------
Checks a ``WorkflowConfigurationSet`` before anything is seeded: every
entity kind has its required states and exactly one initial state,
transitions reference known states of their own kind and never leave a
final state, roles are declared, and the numbering, allocation and
loyalty settings are usable.

Failure modes
-------------
* Errors  -> the set MUST NOT be used; ``get_active_config`` raises
  ``WorkflowConfigurationError``.
* Warnings  -> usable, but should be reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from cargo_config.schema import WorkflowConfigurationSet
from cargo_kernel.domain.allocation import AllocationRule
from cargo_kernel.domain.documents import REQUIRED_STATES, EntityKind
from cargo_kernel.domain.numbering import ChildNumberFormat, NumberingPolicy


@dataclass
class ConfigValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: WorkflowConfigurationSet) -> ConfigValidationResult:
    """Run every check and collect all errors (never stops at the first)."""
    result = ConfigValidationResult()

    _validate_kinds(config, result)
    _validate_states(config, result)
    _validate_transitions(config, result)
    _validate_roles(config, result)
    _validate_numbering(config, result)
    _validate_allocation(config, result)
    _validate_loyalty(config, result)

    return result


def _validate_kinds(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    known = {k.value for k in EntityKind}
    for kind in sorted({s.entity_kind for s in config.states}
                       | {t.entity_kind for t in config.transitions}):
        if kind not in known:
            result.add_error(f"Unknown entity kind '{kind}'")


def _validate_states(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    for kind in EntityKind:
        states = config.states_for(kind.value)
        names = [s.name for s in states]
        for name in sorted({n for n in names if names.count(n) > 1}):
            result.add_error(f"{kind.value}: duplicate state '{name}'")

        initials = [s.name for s in states if s.is_initial]
        if len(initials) != 1:
            result.add_error(
                f"{kind.value}: exactly one initial state required, found {len(initials)}"
            )

        for state in states:
            if state.is_initial and state.is_final:
                result.add_error(
                    f"{kind.value}: state '{state.name}' cannot be initial and final"
                )

        for required in REQUIRED_STATES[kind]:
            if required not in names:
                result.add_error(
                    f"{kind.value}: required state '{required}' is missing"
                )


def _validate_transitions(
    config: WorkflowConfigurationSet, result: ConfigValidationResult
) -> None:
    seen: set[tuple[str, str, str]] = set()
    for t in config.transitions:
        states = {s.name: s for s in config.states_for(t.entity_kind)}
        label = f"{t.entity_kind}: {t.origin} -> {t.destination}"
        for name in (t.origin, t.destination):
            if name not in states:
                result.add_error(f"{label} references unknown state '{name}'")
        origin = states.get(t.origin)
        if origin is not None and origin.is_final:
            result.add_error(f"{label} leaves final state '{t.origin}'")
        if t.origin == t.destination:
            result.add_error(f"{label} is a self-transition")
        triple = (t.entity_kind, t.origin, t.destination)
        if triple in seen:
            result.add_error(f"{label} is defined more than once")
        seen.add(triple)
        if not t.allowed_roles:
            result.add_warning(f"{label} has no allowed roles; only system calls pass")


def _validate_roles(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    declared = set(config.roles)
    for t in config.transitions:
        for role in t.allowed_roles:
            if role not in declared:
                result.add_error(
                    f"{t.entity_kind}: {t.origin} -> {t.destination} "
                    f"uses undeclared role '{role}'"
                )


def _validate_numbering(
    config: WorkflowConfigurationSet, result: ConfigValidationResult
) -> None:
    numbering = config.numbering
    try:
        NumberingPolicy(
            format=ChildNumberFormat(numbering.format),
            prefix=numbering.prefix,
            template=numbering.template,
        )
    except ValueError as exc:
        result.add_error(f"numbering: {exc}")


def _validate_allocation(
    config: WorkflowConfigurationSet, result: ConfigValidationResult
) -> None:
    try:
        AllocationRule(config.allocation.rule)
    except ValueError:
        result.add_error(f"allocation: unknown rule '{config.allocation.rule}'")


def _validate_loyalty(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    if config.loyalty.points_per_child_waybill <= 0:
        result.add_error("loyalty: points_per_child_waybill must be positive")
    if config.loyalty.expiry_years <= 0:
        result.add_error("loyalty: expiry_years must be positive")
