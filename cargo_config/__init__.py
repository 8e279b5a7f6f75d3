"""
cargo_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a validated, frozen
    ``WorkflowConfigurationSet``.

Architecture position:
    Configuration -- YAML-driven definitions, load-time validation.  Sits
    above ``cargo_kernel`` and below ``cargo_services``.  The kernel never
    imports ``cargo_config``; ``bridges`` translates sets into kernel
    inputs.

Invariants enforced:
    - Every returned set has passed ``validate_configuration``.
    - Same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- no such configuration set.
    - ``WorkflowConfigurationError`` -- validation errors (all of them).

Audit relevance:
    Every successful call logs ``workflow_config_loaded`` with the set id,
    version and checksum.
"""

from __future__ import annotations

from pathlib import Path

from cargo_config.loader import WORKFLOW_FILE, load_configuration_set
from cargo_config.schema import WorkflowConfigurationSet
from cargo_config.validator import validate_configuration
from cargo_kernel.exceptions import WorkflowConfigurationError
from cargo_kernel.logging_config import get_logger

logger = get_logger("config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_active_config(
    set_name: str = "default",
    config_dir: Path | None = None,
) -> WorkflowConfigurationSet:
    """Load, validate and return the named configuration set.

    Args:
        set_name: Subdirectory of ``config_dir`` holding ``workflow.yaml``.
        config_dir: Override for the sets directory.  Defaults to
            ``cargo_config/sets/``.

    Raises:
        FileNotFoundError: If the set does not exist.
        WorkflowConfigurationError: If validation fails.
    """
    sets_dir = Path(config_dir) if config_dir is not None else _DEFAULT_CONFIG_DIR
    set_dir = sets_dir / set_name
    if not (set_dir / WORKFLOW_FILE).is_file():
        raise FileNotFoundError(f"Configuration set not found: {set_dir}")

    config = load_configuration_set(set_dir)
    validation = validate_configuration(config)
    if not validation.is_valid:
        raise WorkflowConfigurationError(validation.errors)
    for warning in validation.warnings:
        logger.warning("workflow_config_warning", extra={"warning": warning})

    logger.info(
        "workflow_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "states": len(config.states),
            "transitions": len(config.transitions),
        },
    )
    return config


__all__ = ["WorkflowConfigurationSet", "get_active_config", "validate_configuration"]
