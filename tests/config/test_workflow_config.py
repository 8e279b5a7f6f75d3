"""
Tests for the workflow configuration layer (cargo_config).

Covers:
- The shipped default set loads and validates
- Checksums are deterministic
- Invalid sets report every error at once
- Seeding is idempotent
- Bridges build kernel inputs from a set
"""

from pathlib import Path

import pytest
import yaml

from cargo_config import get_active_config
from cargo_config.bridges import (
    build_allocation_rule,
    build_numbering_policy,
    seed_workflow_definitions,
)
from cargo_config.loader import compute_checksum, load_configuration_set
from cargo_config.validator import validate_configuration
from cargo_kernel.domain.allocation import AllocationRule
from cargo_kernel.domain.numbering import ChildNumberFormat
from cargo_kernel.exceptions import WorkflowConfigurationError
from tests.conftest import TEST_ACTOR_ID

DEFAULT_SET = Path(__file__).resolve().parents[2] / "cargo_config" / "sets" / "default"


def _default_document() -> dict:
    with open(DEFAULT_SET / "workflow.yaml") as f:
        return yaml.safe_load(f)


def _write_set(tmp_path: Path, document: dict, name: str = "custom") -> Path:
    set_dir = tmp_path / name
    set_dir.mkdir()
    with open(set_dir / "workflow.yaml", "w") as f:
        yaml.safe_dump(document, f)
    return tmp_path


class TestDefaultSet:
    def test_loads(self, workflow_config):
        assert workflow_config.config_id == "default"
        assert set(workflow_config.roles) == {"admin", "coordinator", "farm"}
        assert workflow_config.loyalty.points_per_child_waybill == 10
        assert workflow_config.loyalty.expiry_years == 1

    def test_has_no_errors(self, workflow_config):
        result = validate_configuration(workflow_config)
        assert result.is_valid
        assert result.warnings == []

    def test_state_counts(self, workflow_config):
        assert len(workflow_config.states_for("MASTER_WAYBILL")) == 4
        assert len(workflow_config.states_for("COORDINATION")) == 5
        assert len(workflow_config.states_for("CHILD_WAYBILL")) == 5

    def test_checksum_is_deterministic(self):
        first = load_configuration_set(DEFAULT_SET)
        second = load_configuration_set(DEFAULT_SET)
        assert first.checksum == second.checksum
        assert first.checksum == compute_checksum(_default_document())

    def test_checksum_changes_with_content(self):
        document = _default_document()
        before = compute_checksum(document)
        document["loyalty"]["points_per_child_waybill"] = 20
        assert compute_checksum(document) != before

    def test_load_logged(self, captured_logs):
        get_active_config()
        loaded = [r for r in captured_logs() if r["message"] == "workflow_config_loaded"]
        assert loaded[0]["config_id"] == "default"


class TestInvalidSets:
    def test_missing_set(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config("absent", config_dir=tmp_path)

    def test_all_errors_reported(self, tmp_path):
        document = _default_document()
        document["transitions"]["COORDINATION"].append(
            {"from": "CUT", "to": "CREATED", "roles": ["admin"]}
        )
        document["transitions"]["CHILD_WAYBILL"].append(
            {"from": "REGISTERED", "to": "LOST", "roles": ["admin"]}
        )
        document["allocation"]["rule"] = "BY_MOOD"
        config_dir = _write_set(tmp_path, document)

        with pytest.raises(WorkflowConfigurationError) as exc_info:
            get_active_config("custom", config_dir=config_dir)

        errors = exc_info.value.errors
        assert any("leaves final state 'CUT'" in e for e in errors)
        assert any("unknown state 'LOST'" in e for e in errors)
        assert any("unknown rule 'BY_MOOD'" in e for e in errors)

    def test_two_initial_states(self, tmp_path):
        document = _default_document()
        document["states"]["MASTER_WAYBILL"][1]["initial"] = True

        with pytest.raises(WorkflowConfigurationError) as exc_info:
            get_active_config("custom", config_dir=_write_set(tmp_path, document))

        assert any("exactly one initial state" in e for e in exc_info.value.errors)

    def test_missing_required_state(self, tmp_path):
        document = _default_document()
        document["states"]["MASTER_WAYBILL"] = [
            s for s in document["states"]["MASTER_WAYBILL"] if s["name"] != "LOANED"
        ]
        document["transitions"]["MASTER_WAYBILL"] = [
            t for t in document["transitions"]["MASTER_WAYBILL"]
            if "LOANED" not in (t["from"], t["to"])
        ]

        with pytest.raises(WorkflowConfigurationError) as exc_info:
            get_active_config("custom", config_dir=_write_set(tmp_path, document))

        assert any("required state 'LOANED'" in e for e in exc_info.value.errors)

    def test_undeclared_role(self, tmp_path):
        document = _default_document()
        document["roles"] = ["admin", "coordinator"]

        with pytest.raises(WorkflowConfigurationError) as exc_info:
            get_active_config("custom", config_dir=_write_set(tmp_path, document))

        assert any("undeclared role 'farm'" in e for e in exc_info.value.errors)

    def test_unknown_entity_kind(self, tmp_path):
        document = _default_document()
        document["states"]["INVOICE"] = [{"name": "OPEN", "initial": True}]

        with pytest.raises(WorkflowConfigurationError) as exc_info:
            get_active_config("custom", config_dir=_write_set(tmp_path, document))

        assert "Unknown entity kind 'INVOICE'" in exc_info.value.errors

    def test_loyalty_must_be_positive(self, tmp_path):
        document = _default_document()
        document["loyalty"] = {"points_per_child_waybill": 0, "expiry_years": 1}

        with pytest.raises(WorkflowConfigurationError):
            get_active_config("custom", config_dir=_write_set(tmp_path, document))

    def test_transition_without_roles_warns(self, tmp_path, captured_logs):
        document = _default_document()
        document["transitions"]["MASTER_WAYBILL"][0]["roles"] = []

        config = get_active_config("custom", config_dir=_write_set(tmp_path, document))

        assert config.config_id == "default"
        warnings = [r for r in captured_logs() if r["message"] == "workflow_config_warning"]
        assert "no allowed roles" in warnings[0]["warning"]


class TestSeeding:
    def test_second_seed_changes_nothing(self, runtime):
        assert not runtime.seed(TEST_ACTOR_ID).changed

    def test_seed_into_fresh_session(self, session, workflow_config):
        result = seed_workflow_definitions(session, workflow_config, TEST_ACTOR_ID)
        assert result.states_created == 0
        assert result.transitions_created == 0

    def test_seed_adds_new_definitions(self, tmp_path, session, runtime):
        document = _default_document()
        document["states"]["CHILD_WAYBILL"].append({"name": "ON_HOLD"})
        document["transitions"]["CHILD_WAYBILL"].append(
            {"from": "REGISTERED", "to": "ON_HOLD", "roles": ["admin"]}
        )
        extended = get_active_config("custom", config_dir=_write_set(tmp_path, document))

        result = seed_workflow_definitions(session, extended, TEST_ACTOR_ID)

        assert result.states_created == 1
        assert result.transitions_created == 1


class TestBridges:
    def test_numbering_policy(self, workflow_config):
        policy = build_numbering_policy(workflow_config)
        assert policy.format == ChildNumberFormat.YEAR_SEQUENCE
        assert policy.prefix == "GH"

    def test_allocation_rule(self, workflow_config):
        assert build_allocation_rule(workflow_config) == (
            AllocationRule.FARM_MASTER_CONSIGNEE_PRODUCT
        )
