"""
Tests for CoordinationService (cargo_kernel.services.coordination_service).

Covers:
- Creation binds an available master waybill (AVAILABLE -> ASSIGNED)
- Availability, consignee and reference preconditions
- Editing open records, consignee replacement, frozen final records
- Cut: requires non-cancelled child waybills, emits coordination.cut
- Cancel: requires a reason, releases the master waybill, fails loudly
  when the master waybill is not ASSIGNED
- Generic state changes into CUT and CANCELLED run the full operations
- Box summaries
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from cargo_kernel.domain.allocation import ChildWaybillQuantities
from cargo_kernel.domain.documents import (
    SYSTEM_ACTOR_ID,
    CoordinationState,
    EntityKind,
    MasterWaybillState,
    PaymentMode,
)
from cargo_kernel.domain.events import EventType
from cargo_kernel.exceptions import (
    ForbiddenTransitionError,
    MasterWaybillNotAvailableError,
    MissingCommentError,
    NoChildWaybillsError,
    PreconditionFailedError,
    PrincipalConsigneeError,
    ReferenceNotFoundError,
    StateMismatchError,
    TerminalStateError,
)
from cargo_kernel.services.coordination_service import ConsigneeRef
from tests.conftest import ADMIN, COORDINATOR, TEST_ACTOR_ID

CO = EntityKind.COORDINATION
MW = EntityKind.MASTER_WAYBILL


class TestCreate:
    def test_binds_master_waybill(self, services, coordination, catalog):
        master = services.master_waybills.get(coordination.master_waybill_id)

        assert services.workflow.is_in(coordination, CO, CoordinationState.CREATED)
        assert services.workflow.is_in(master, MW, MasterWaybillState.ASSIGNED)
        assert coordination.active_master_waybill_id == master.id
        assert coordination.principal_consignee_id == catalog.principal_consignee_id
        assert len(coordination.consignees) == 2
        assert coordination.payment_mode == "PREPAID"
        assert coordination.flight_date == date(2026, 3, 5)

    def test_master_assignment_is_system_attributed(self, services, coordination):
        history = services.workflow.history(MW, coordination.master_waybill_id)

        assert [h.state_name for h in history] == ["AVAILABLE", "ASSIGNED"]
        assert history[-1].actor_id == SYSTEM_ACTOR_ID

    def test_record_history_starts_created(self, services, coordination):
        history = services.workflow.history(CO, coordination.id)
        assert [h.state_name for h in history] == ["CREATED"]
        assert history[0].actor_id == TEST_ACTOR_ID

    def test_assignment_event(self, services, create_master_waybills, make_draft):
        (master_id,) = create_master_waybills()
        services.events.drain()

        record = services.coordinations.create(make_draft(master_id), TEST_ACTOR_ID)

        (event,) = services.events.drain()
        assert event.event_type == EventType.MASTER_WAYBILL_STATE_CHANGED
        assert event.payload["to_state"] == "ASSIGNED"
        assert event.payload["coordination_record_id"] == record.id

    def test_costs_applied(self, services, create_master_waybills, make_draft):
        (master_id,) = create_master_waybills()
        record = services.coordinations.create(
            make_draft(master_id, costs={"rate": Decimal("1.85"), "fuel_surcharge": "0.40"}),
            TEST_ACTOR_ID,
        )
        assert record.rate == Decimal("1.85")
        assert record.fuel_surcharge == Decimal("0.40")

    def test_unknown_cost_field(self, services, create_master_waybills, make_draft):
        (master_id,) = create_master_waybills()
        with pytest.raises(PreconditionFailedError):
            services.coordinations.create(
                make_draft(master_id, costs={"tip": Decimal("5")}), TEST_ACTOR_ID
            )

    def test_second_record_on_same_master(self, services, coordination, make_draft):
        with pytest.raises(MasterWaybillNotAvailableError):
            services.coordinations.create(
                make_draft(coordination.master_waybill_id), TEST_ACTOR_ID
            )

    def test_loaned_master(self, services, create_master_waybills, make_draft):
        (master_id,) = create_master_waybills()
        services.master_waybills.register_loan(master_id, TEST_ACTOR_ID, actor_roles=ADMIN)

        with pytest.raises(MasterWaybillNotAvailableError):
            services.coordinations.create(make_draft(master_id), TEST_ACTOR_ID)

    def test_returned_then_reinstated_master_is_usable(
        self, services, create_master_waybills, make_draft
    ):
        (master_id,) = create_master_waybills()
        services.master_waybills.register_loan(master_id, TEST_ACTOR_ID, actor_roles=ADMIN)
        services.master_waybills.register_return(master_id, TEST_ACTOR_ID, actor_roles=ADMIN)
        services.master_waybills.reinstate(master_id, TEST_ACTOR_ID, actor_roles=ADMIN)

        record = services.coordinations.create(make_draft(master_id), TEST_ACTOR_ID)
        assert record.master_waybill_id == master_id

    @pytest.mark.parametrize("principals", [0, 2])
    def test_principal_count(self, services, create_master_waybills, make_draft, catalog, principals):
        (master_id,) = create_master_waybills()
        consignees = [
            ConsigneeRef(catalog.principal_consignee_id, is_principal=principals >= 1),
            ConsigneeRef(catalog.second_consignee_id, is_principal=principals >= 2),
        ]

        with pytest.raises(PrincipalConsigneeError) as exc_info:
            services.coordinations.create(make_draft(master_id, consignees), TEST_ACTOR_ID)

        assert exc_info.value.principal_count == principals
        master = services.master_waybills.get(master_id)
        assert services.workflow.is_in(master, MW, MasterWaybillState.AVAILABLE)

    def test_duplicate_consignee(self, services, create_master_waybills, make_draft, catalog):
        (master_id,) = create_master_waybills()
        consignees = [
            ConsigneeRef(catalog.principal_consignee_id, is_principal=True),
            ConsigneeRef(catalog.principal_consignee_id),
        ]
        with pytest.raises(PreconditionFailedError):
            services.coordinations.create(make_draft(master_id, consignees), TEST_ACTOR_ID)

    def test_unknown_destination(self, services, create_master_waybills, make_draft):
        (master_id,) = create_master_waybills()
        with pytest.raises(ReferenceNotFoundError) as exc_info:
            services.coordinations.create(
                make_draft(master_id, final_destination_id=uuid4()), TEST_ACTOR_ID
            )
        assert exc_info.value.reference_kind == "DESTINATION"

    def test_unknown_consignee(self, services, create_master_waybills, make_draft):
        (master_id,) = create_master_waybills()
        with pytest.raises(ReferenceNotFoundError):
            services.coordinations.create(
                make_draft(master_id, [ConsigneeRef(uuid4(), is_principal=True)]),
                TEST_ACTOR_ID,
            )


class TestUpdate:
    def test_partial_update(self, services, coordination, catalog):
        record = services.coordinations.update(
            coordination.id,
            {"payment_mode": PaymentMode.COLLECT, "flight_date": date(2026, 3, 9),
             "tax": "12.50"},
            TEST_ACTOR_ID,
        )
        assert record.payment_mode == "COLLECT"
        assert record.flight_date == date(2026, 3, 9)
        assert record.tax == Decimal("12.50")
        assert record.product_id == catalog.product_id

    def test_protected_field(self, services, coordination):
        with pytest.raises(PreconditionFailedError):
            services.coordinations.update(
                coordination.id, {"master_waybill_id": uuid4()}, TEST_ACTOR_ID
            )

    def test_unknown_product_reference(self, services, coordination):
        with pytest.raises(ReferenceNotFoundError):
            services.coordinations.update(coordination.id, {"product_id": uuid4()}, TEST_ACTOR_ID)

    def test_replace_consignees(self, services, coordination, catalog):
        record = services.coordinations.assign_consignees(
            coordination.id,
            [ConsigneeRef(catalog.second_consignee_id, is_principal=True)],
            TEST_ACTOR_ID,
        )
        assert [c.consignee_id for c in record.consignees] == [catalog.second_consignee_id]
        assert record.principal_consignee_id == catalog.second_consignee_id

    def test_replace_with_invalid_set(self, services, coordination, catalog):
        with pytest.raises(PrincipalConsigneeError):
            services.coordinations.assign_consignees(
                coordination.id, [ConsigneeRef(catalog.second_consignee_id)], TEST_ACTOR_ID
            )
        assert coordination.principal_consignee_id == catalog.principal_consignee_id

    def test_final_record_is_read_only(self, services, coordination):
        services.coordinations.cancel(coordination.id, "Customer withdrew", TEST_ACTOR_ID)
        with pytest.raises(TerminalStateError):
            services.coordinations.update(coordination.id, {"tax": "1"}, TEST_ACTOR_ID)


class TestStateChanges:
    def test_start_coordination(self, services, coordination):
        in_coordination = services.workflow.state_named(CO, CoordinationState.IN_COORDINATION)
        record = services.coordinations.change_state(
            coordination.id, in_coordination.id, TEST_ACTOR_ID, actor_roles=COORDINATOR
        )
        assert record.destination_state.name == "IN_COORDINATION"

    def test_reopen_requires_comment(self, services, coordination):
        coordinated = services.workflow.state_named(CO, CoordinationState.COORDINATED)
        in_coordination = services.workflow.state_named(CO, CoordinationState.IN_COORDINATION)
        services.coordinations.change_state(
            coordination.id, coordinated.id, TEST_ACTOR_ID, actor_roles=COORDINATOR
        )
        with pytest.raises(MissingCommentError):
            services.coordinations.change_state(
                coordination.id, in_coordination.id, TEST_ACTOR_ID, actor_roles=COORDINATOR
            )

    def test_generic_cancel_releases_master(self, services, coordination):
        cancelled = services.workflow.state_named(CO, CoordinationState.CANCELLED)

        record = services.coordinations.change_state(
            coordination.id, cancelled.id, TEST_ACTOR_ID,
            comment="Flight cancelled", actor_roles=COORDINATOR,
        )

        assert record.destination_state.name == "CANCELLED"
        assert coordination.active_master_waybill_id is None
        master = services.master_waybills.get(coordination.master_waybill_id)
        assert services.workflow.is_in(master, MW, MasterWaybillState.AVAILABLE)

    def test_generic_cancel_requires_reason(self, services, coordination):
        cancelled = services.workflow.state_named(CO, CoordinationState.CANCELLED)

        with pytest.raises(MissingCommentError):
            services.coordinations.change_state(
                coordination.id, cancelled.id, TEST_ACTOR_ID, actor_roles=COORDINATOR
            )
        master = services.master_waybills.get(coordination.master_waybill_id)
        assert services.workflow.is_in(master, MW, MasterWaybillState.ASSIGNED)

    def test_generic_cut_requires_children(self, services, coordination):
        cut = services.workflow.state_named(CO, CoordinationState.CUT)

        with pytest.raises(NoChildWaybillsError):
            services.coordinations.change_state(
                coordination.id, cut.id, TEST_ACTOR_ID, actor_roles=COORDINATOR
            )
        assert services.workflow.is_in(coordination, CO, CoordinationState.CREATED)

    def test_generic_cut_records_cut_event(self, services, coordination, catalog):
        services.child_waybills.allocate(coordination.id, catalog.farm_ids[0], TEST_ACTOR_ID)
        services.events.drain()
        cut = services.workflow.state_named(CO, CoordinationState.CUT)

        services.coordinations.change_state(
            coordination.id, cut.id, TEST_ACTOR_ID, actor_roles=COORDINATOR
        )

        event_types = [e.event_type for e in services.events.drain()]
        assert event_types == [EventType.COORDINATION_STATE_CHANGED, EventType.COORDINATION_CUT]


class TestCut:
    def test_cut_without_children(self, services, coordination):
        with pytest.raises(NoChildWaybillsError):
            services.coordinations.cut(coordination.id, TEST_ACTOR_ID)
        assert services.workflow.is_in(coordination, CO, CoordinationState.CREATED)

    def test_cancelled_children_do_not_count(self, services, coordination, catalog):
        child = services.child_waybills.allocate(
            coordination.id, catalog.farm_ids[0], TEST_ACTOR_ID
        ).child_waybill
        services.child_waybills.cancel(child.id, "Withdrawn", TEST_ACTOR_ID)

        with pytest.raises(NoChildWaybillsError):
            services.coordinations.cut(coordination.id, TEST_ACTOR_ID)

    def test_cut(self, services, coordination, catalog):
        for farm_id in catalog.farm_ids[:2]:
            services.child_waybills.allocate(coordination.id, farm_id, TEST_ACTOR_ID)
        services.events.drain()

        record = services.coordinations.cut(
            coordination.id, TEST_ACTOR_ID, comment="Flight closed", actor_roles=COORDINATOR
        )

        assert record.destination_state.name == "CUT"
        state_changed, cut = services.events.drain()
        assert state_changed.event_type == EventType.COORDINATION_STATE_CHANGED
        assert state_changed.payload["child_waybill_count"] == 2
        assert cut.event_type == EventType.COORDINATION_CUT
        assert cut.payload["child_waybill_count"] == 2
        assert cut.payload["principal_consignee_id"] == catalog.principal_consignee_id
        assert cut.payload["master_waybill_id"] == coordination.master_waybill_id

    def test_cut_keeps_master_assigned(self, services, coordination, catalog):
        services.child_waybills.allocate(coordination.id, catalog.farm_ids[0], TEST_ACTOR_ID)
        services.coordinations.cut(coordination.id, TEST_ACTOR_ID)

        master = services.master_waybills.get(coordination.master_waybill_id)
        assert services.workflow.is_in(master, MW, MasterWaybillState.ASSIGNED)
        assert coordination.active_master_waybill_id == master.id

    def test_cut_twice(self, services, coordination, catalog):
        services.child_waybills.allocate(coordination.id, catalog.farm_ids[0], TEST_ACTOR_ID)
        services.coordinations.cut(coordination.id, TEST_ACTOR_ID)

        with pytest.raises(TerminalStateError):
            services.coordinations.cut(coordination.id, TEST_ACTOR_ID)


class TestCancel:
    def test_cancel_requires_reason(self, services, coordination):
        with pytest.raises(MissingCommentError):
            services.coordinations.cancel(coordination.id, "", TEST_ACTOR_ID, actor_roles=ADMIN)

        master = services.master_waybills.get(coordination.master_waybill_id)
        assert services.workflow.is_in(master, MW, MasterWaybillState.ASSIGNED)
        assert coordination.active_master_waybill_id == master.id

    def test_cancel_releases_master(self, services, coordination):
        record = services.coordinations.cancel(
            coordination.id, "Flight cancelled", TEST_ACTOR_ID, actor_roles=COORDINATOR
        )

        assert record.destination_state.name == "CANCELLED"
        assert coordination.active_master_waybill_id is None
        master = services.master_waybills.get(coordination.master_waybill_id)
        assert services.workflow.is_in(master, MW, MasterWaybillState.AVAILABLE)
        history = services.workflow.history(MW, master.id)
        assert [h.state_name for h in history] == ["AVAILABLE", "ASSIGNED", "AVAILABLE"]
        assert history[-1].actor_id == SYSTEM_ACTOR_ID

    def test_master_reusable_after_cancel(self, services, coordination, make_draft):
        services.coordinations.cancel(coordination.id, "Rebooked", TEST_ACTOR_ID)

        replacement = services.coordinations.create(
            make_draft(coordination.master_waybill_id), TEST_ACTOR_ID
        )

        records = services.coordinations.list_for_master_waybill(coordination.master_waybill_id)
        assert {r.id for r in records} == {coordination.id, replacement.id}

    def test_coordinated_record_needs_admin_to_cancel(self, services, coordination):
        coordinated = services.workflow.state_named(CO, CoordinationState.COORDINATED)
        services.coordinations.change_state(coordination.id, coordinated.id, TEST_ACTOR_ID)

        with pytest.raises(ForbiddenTransitionError):
            services.coordinations.cancel(
                coordination.id, "Late", TEST_ACTOR_ID, actor_roles=COORDINATOR
            )
        services.coordinations.cancel(coordination.id, "Late", TEST_ACTOR_ID, actor_roles=ADMIN)

    def test_cancel_fails_when_master_not_assigned(
        self, services, session, coordination, captured_logs
    ):
        master = services.master_waybills.get(coordination.master_waybill_id)
        master.current_state_id = services.workflow.state_named(
            MW, MasterWaybillState.AVAILABLE
        ).id
        session.flush()

        with pytest.raises(StateMismatchError):
            services.coordinations.cancel(coordination.id, "Flight cancelled", TEST_ACTOR_ID)

        assert services.workflow.is_in(coordination, CO, CoordinationState.CREATED)
        assert coordination.active_master_waybill_id == master.id
        (blocked,) = [
            r for r in captured_logs() if r["message"] == "coordination_release_blocked"
        ]
        assert blocked["level"] == "ERROR"
        assert blocked["master_waybill_state"] == "AVAILABLE"
        assert blocked["master_waybill_id"] == str(master.id)

    def test_cancel_after_cut(self, services, coordination, catalog):
        services.child_waybills.allocate(coordination.id, catalog.farm_ids[0], TEST_ACTOR_ID)
        services.coordinations.cut(coordination.id, TEST_ACTOR_ID)

        with pytest.raises(TerminalStateError):
            services.coordinations.cancel(coordination.id, "Too late", TEST_ACTOR_ID)


class TestBoxSummary:
    def test_totals_exclude_cancelled(self, services, coordination, catalog):
        farm_a, farm_b, farm_c = catalog.farm_ids
        services.child_waybills.allocate(
            coordination.id, farm_a, TEST_ACTOR_ID,
            quantities=ChildWaybillQuantities(
                full_boxes=Decimal("2.5"), pieces=5, weight_kg=Decimal("62.5"), stems=1250
            ),
        )
        services.child_waybills.allocate(
            coordination.id, farm_b, TEST_ACTOR_ID,
            quantities=ChildWaybillQuantities(
                full_boxes=Decimal("1"), pieces=1, weight_kg=Decimal("25"), stems=300
            ),
        )
        dropped = services.child_waybills.allocate(
            coordination.id, farm_c, TEST_ACTOR_ID,
            quantities=ChildWaybillQuantities(pieces=99),
        ).child_waybill
        services.child_waybills.cancel(dropped.id, "Withdrawn", TEST_ACTOR_ID)

        summary = services.coordinations.box_summary(coordination.id)

        assert summary.child_waybill_count == 2
        assert summary.full_boxes == Decimal("3.5")
        assert summary.pieces == 6
        assert summary.weight_kg == Decimal("87.5")
        assert summary.stems == 1550

    def test_empty_record(self, services, coordination):
        summary = services.coordinations.box_summary(coordination.id)
        assert summary.child_waybill_count == 0
        assert summary.pieces == 0
