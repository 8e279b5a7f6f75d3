"""
Configuration Loader (``cargo_config.loader``).

Responsibility
--------------
Loads a configuration set's ``workflow.yaml`` and parses it into the
frozen ``cargo_config.schema`` dataclasses.  Build/test tooling only; the
runtime entry point is ``cargo_config.get_active_config()``.

Invariants enforced
-------------------
* Required keys raise ``KeyError``; wrong shapes raise ``ValueError``.
  No silent defaults for states or transitions.
* ``compute_checksum`` is a deterministic SHA-256 over canonical JSON.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from cargo_config.schema import (
    AllocationDef,
    LoyaltyDef,
    NumberingDef,
    StateDef,
    TransitionDef,
    WorkflowConfigurationSet,
)

WORKFLOW_FILE = "workflow.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields ``{}``."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _mapping(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a mapping, got {type(data).__name__}")
    return data


def parse_states(data: dict[str, Any]) -> tuple[StateDef, ...]:
    states: list[StateDef] = []
    for kind, entries in _mapping(data, "states").items():
        for entry in entries or ():
            entry = _mapping(entry, f"state of {kind}")
            states.append(
                StateDef(
                    entity_kind=str(kind),
                    name=str(entry["name"]),
                    is_initial=bool(entry.get("initial", False)),
                    is_final=bool(entry.get("final", False)),
                    description=entry.get("description"),
                    color=entry.get("color"),
                )
            )
    return tuple(states)


def parse_transitions(data: dict[str, Any]) -> tuple[TransitionDef, ...]:
    transitions: list[TransitionDef] = []
    for kind, entries in _mapping(data, "transitions").items():
        for entry in entries or ():
            entry = _mapping(entry, f"transition of {kind}")
            transitions.append(
                TransitionDef(
                    entity_kind=str(kind),
                    origin=str(entry["from"]),
                    destination=str(entry["to"]),
                    allowed_roles=tuple(str(r) for r in entry.get("roles") or ()),
                    requires_comment=bool(entry.get("requires_comment", False)),
                    action=entry.get("action"),
                )
            )
    return tuple(transitions)


def parse_numbering(data: dict[str, Any] | None) -> NumberingDef:
    data = _mapping(data or {}, "numbering")
    defaults = NumberingDef()
    return NumberingDef(
        format=str(data.get("format", defaults.format)),
        prefix=str(data.get("prefix", defaults.prefix)),
        template=data.get("template"),
    )


def parse_allocation(data: dict[str, Any] | None) -> AllocationDef:
    data = _mapping(data or {}, "allocation")
    return AllocationDef(rule=str(data.get("rule", AllocationDef().rule)))


def parse_loyalty(data: dict[str, Any] | None) -> LoyaltyDef:
    data = _mapping(data or {}, "loyalty")
    defaults = LoyaltyDef()
    return LoyaltyDef(
        points_per_child_waybill=int(
            data.get("points_per_child_waybill", defaults.points_per_child_waybill)
        ),
        expiry_years=int(data.get("expiry_years", defaults.expiry_years)),
    )


def parse_configuration(data: dict[str, Any]) -> WorkflowConfigurationSet:
    """Parse a raw YAML document into a ``WorkflowConfigurationSet``."""
    data = _mapping(data, "configuration")
    return WorkflowConfigurationSet(
        config_id=str(data["config_id"]),
        version=int(data.get("version", 1)),
        roles=tuple(str(r) for r in data.get("roles") or ()),
        states=parse_states(data["states"]),
        transitions=parse_transitions(data["transitions"]),
        numbering=parse_numbering(data.get("numbering")),
        allocation=parse_allocation(data.get("allocation")),
        loyalty=parse_loyalty(data.get("loyalty")),
        checksum=compute_checksum(data),
        description=data.get("description"),
    )


def load_configuration_set(set_dir: Path) -> WorkflowConfigurationSet:
    return parse_configuration(load_yaml_file(Path(set_dir) / WORKFLOW_FILE))
