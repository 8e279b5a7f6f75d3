"""
Tests for ChildWaybillService (cargo_kernel.services.child_waybill_service).

Covers:
- Allocation creates a numbered child waybill in the initial state
- Repeated allocation for the same composite key reuses the row
- Re-pointing to another coordination record under a coarser rule
- Re-pointing away from cancelled and cut records, including on the
  same master waybill under the default rule
- Frozen records
- Confirm / cancel / update lifecycle, key release on cancel
- Duplicate composite keys are rejected by the store, on create and on
  product change
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from cargo_kernel.domain.allocation import AllocationRule, ChildWaybillQuantities
from cargo_kernel.domain.documents import (
    BoxType,
    ChildWaybillState,
    CoordinationState,
    EntityKind,
)
from cargo_kernel.domain.events import EventType
from cargo_kernel.exceptions import (
    DuplicateAllocationError,
    ForbiddenTransitionError,
    MissingCommentError,
    PreconditionFailedError,
    PrincipalConsigneeError,
    ReferenceNotFoundError,
    TerminalStateError,
)
from cargo_kernel.services.child_waybill_service import (
    AllocationResolver,
    ChildWaybillService,
)
from cargo_kernel.services.coordination_service import ConsigneeRef
from tests.conftest import ADMIN, COORDINATOR, FARM, TEST_ACTOR_ID

CW = EntityKind.CHILD_WAYBILL
CO = EntityKind.COORDINATION


@pytest.fixture
def farm(catalog):
    return catalog.farm_ids[0]


class TestAllocateCreates:
    def test_creates_numbered_child(self, services, coordination, farm, catalog):
        result = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)
        child = result.child_waybill

        assert result.created
        assert not result.repointed
        assert child.number == "20260001"
        assert child.number_format == "YEAR_SEQUENCE"
        assert child.year == 2026
        assert child.coordination_record_id == coordination.id
        assert child.master_waybill_id == coordination.master_waybill_id
        assert child.consignee_id == catalog.principal_consignee_id
        assert child.product_id == catalog.product_id
        assert child.allocation_rule == AllocationRule.FARM_MASTER_CONSIGNEE_PRODUCT.value
        assert services.workflow.is_in(child, CW, ChildWaybillState.REGISTERED)
        assert len(services.workflow.history(CW, child.id)) == 1

    def test_assigned_event(self, services, coordination, farm):
        services.events.drain()

        result = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)

        (event,) = services.events.drain()
        assert event.event_type == EventType.CHILD_WAYBILL_ASSIGNED
        assert event.entity_id == result.child_waybill.id
        assert event.payload["created"] is True
        assert event.payload["coordination_record_id"] == coordination.id

    def test_quantities_applied(self, services, coordination, farm):
        quantities = ChildWaybillQuantities.from_boxes(BoxType.HALF, pieces=10, stems=2500)

        child = services.child_waybills.allocate(
            coordination.id, farm, TEST_ACTOR_ID, quantities=quantities
        ).child_waybill

        assert child.pieces == 10
        assert child.full_boxes == Decimal("5")
        assert child.stems == 2500

    def test_distinct_farms_get_distinct_numbers(self, services, coordination, catalog):
        numbers = [
            services.child_waybills.allocate(coordination.id, farm_id, TEST_ACTOR_ID)
            .child_waybill.number
            for farm_id in catalog.farm_ids
        ]
        assert numbers == ["20260001", "20260002", "20260003"]

    def test_other_product_is_another_child(self, services, coordination, farm, catalog):
        first = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)
        second = services.child_waybills.allocate(
            coordination.id, farm, TEST_ACTOR_ID, product_id=catalog.other_product_id
        )
        assert second.created
        assert second.child_waybill.id != first.child_waybill.id

    def test_unknown_farm(self, services, coordination):
        with pytest.raises(ReferenceNotFoundError):
            services.child_waybills.allocate(coordination.id, uuid4(), TEST_ACTOR_ID)

    def test_unknown_product(self, services, coordination, farm):
        with pytest.raises(ReferenceNotFoundError):
            services.child_waybills.allocate(
                coordination.id, farm, TEST_ACTOR_ID, product_id=uuid4()
            )

    def test_creation_logged(self, services, coordination, farm, captured_logs):
        services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)
        logs = [r for r in captured_logs() if r["message"] == "child_waybill_created"]
        assert logs[0]["number"] == "20260001"


class TestAllocateReuses:
    """The same composite key never yields a second row."""

    def test_second_allocation_reuses(self, services, coordination, farm):
        first = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)
        services.events.drain()

        second = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)

        assert not second.created
        assert not second.repointed
        assert second.child_waybill.id == first.child_waybill.id
        assert second.child_waybill.number == first.child_waybill.number
        assert len(services.events.drain()) == 0
        assert len(services.child_waybills.list_for_coordination(coordination.id)) == 1

    def test_reuse_updates_quantities(self, services, coordination, farm):
        services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)
        result = services.child_waybills.allocate(
            coordination.id, farm, TEST_ACTOR_ID,
            quantities=ChildWaybillQuantities(pieces=3),
        )
        assert result.child_waybill.pieces == 3

    def test_reuse_does_not_consume_number(self, services, coordination, catalog):
        farm_a, farm_b, _ = catalog.farm_ids
        services.child_waybills.allocate(coordination.id, farm_a, TEST_ACTOR_ID)
        services.child_waybills.allocate(coordination.id, farm_a, TEST_ACTOR_ID)
        result = services.child_waybills.allocate(coordination.id, farm_b, TEST_ACTOR_ID)
        assert result.child_waybill.number == "20260002"

    def test_find_existing(self, services, coordination, farm, catalog):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        found = services.child_waybills.find_existing(
            farm, coordination.master_waybill_id, catalog.principal_consignee_id,
            catalog.product_id,
        )
        assert found.id == child.id
        assert services.child_waybills.find_existing(
            uuid4(), coordination.master_waybill_id, catalog.principal_consignee_id,
            catalog.product_id,
        ) is None


class TestRepoint:
    """Under FARM_CONSIGNEE the master waybill is not part of the key."""

    @pytest.fixture
    def farm_consignee(self, services, session, clock, catalog):
        return ChildWaybillService(
            session,
            services.workflow,
            services.numbering,
            rule=AllocationRule.FARM_CONSIGNEE,
            clock=clock,
            events=services.events,
            references=catalog.lookup,
        )

    @pytest.fixture
    def second_coordination(self, services, create_master_waybills, make_draft):
        (master_id,) = create_master_waybills(initial=100)
        return services.coordinations.create(make_draft(master_id), TEST_ACTOR_ID)

    def test_repoints_to_new_record(
        self, services, farm_consignee, coordination, second_coordination, farm
    ):
        first = farm_consignee.allocate(coordination.id, farm, TEST_ACTOR_ID)
        services.events.drain()

        moved = farm_consignee.allocate(second_coordination.id, farm, TEST_ACTOR_ID)

        assert moved.repointed
        assert not moved.created
        assert moved.previous_coordination_record_id == coordination.id
        child = moved.child_waybill
        assert child.id == first.child_waybill.id
        assert child.coordination_record_id == second_coordination.id
        assert child.master_waybill_id == second_coordination.master_waybill_id
        (event,) = services.events.drain()
        assert event.event_type == EventType.CHILD_WAYBILL_ASSIGNED
        assert event.payload["previous_coordination_record_id"] == coordination.id

    def test_repoints_away_from_cut_record(
        self, services, farm_consignee, coordination, second_coordination, farm
    ):
        first = farm_consignee.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        services.coordinations.cut(coordination.id, TEST_ACTOR_ID)

        moved = farm_consignee.allocate(second_coordination.id, farm, TEST_ACTOR_ID)

        assert moved.repointed
        assert moved.previous_coordination_record_id == coordination.id
        assert moved.child_waybill.id == first.id
        assert moved.child_waybill.coordination_record_id == second_coordination.id
        assert services.workflow.is_in(coordination, CO, CoordinationState.CUT)

    def test_rule_exposed(self, farm_consignee):
        assert farm_consignee.rule == AllocationRule.FARM_CONSIGNEE


class TestRepointOnSameMaster:
    """Default rule: a replacement record on the same master takes the row over."""

    @pytest.fixture
    def replacement(self, services, coordination, make_draft):
        services.coordinations.cancel(coordination.id, "Rebooked", TEST_ACTOR_ID)
        return services.coordinations.create(
            make_draft(coordination.master_waybill_id), TEST_ACTOR_ID
        )

    def test_repoints_after_cancel(self, services, coordination, farm, make_draft):
        first = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        services.coordinations.cancel(coordination.id, "Rebooked", TEST_ACTOR_ID)
        replacement = services.coordinations.create(
            make_draft(coordination.master_waybill_id), TEST_ACTOR_ID
        )

        again = services.child_waybills.allocate(replacement.id, farm, TEST_ACTOR_ID)

        assert again.repointed
        assert not again.created
        assert again.previous_coordination_record_id == coordination.id
        child = again.child_waybill
        assert child.id == first.id
        assert child.number == "20260001"
        assert child.coordination_record_id == replacement.id
        assert [c.id for c in services.child_waybills.list_for_coordination(replacement.id)] == [
            child.id
        ]
        assert services.child_waybills.list_for_coordination(coordination.id) == []

    def test_new_farm_on_replacement_is_created(self, services, replacement, catalog):
        result = services.child_waybills.allocate(
            replacement.id, catalog.farm_ids[1], TEST_ACTOR_ID
        )
        assert result.created
        assert not result.repointed


class TestFrozenRecords:
    def test_cut_record_rejects_allocation(self, services, coordination, catalog):
        services.child_waybills.allocate(coordination.id, catalog.farm_ids[0], TEST_ACTOR_ID)
        services.coordinations.cut(coordination.id, TEST_ACTOR_ID)

        with pytest.raises(TerminalStateError):
            services.child_waybills.allocate(coordination.id, catalog.farm_ids[1], TEST_ACTOR_ID)

    def test_cancelled_record_rejects_allocation(self, services, coordination, farm):
        services.coordinations.cancel(coordination.id, "Flight cancelled", TEST_ACTOR_ID)

        with pytest.raises(TerminalStateError):
            services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)

    def test_cut_record_freezes_child_updates(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        services.coordinations.cut(coordination.id, TEST_ACTOR_ID)

        with pytest.raises(TerminalStateError):
            services.child_waybills.update(
                child.id, TEST_ACTOR_ID, quantities=ChildWaybillQuantities(pieces=1)
            )


class TestLifecycle:
    def test_farm_confirms(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill

        confirmed = services.child_waybills.confirm(
            child.id, TEST_ACTOR_ID,
            quantities=ChildWaybillQuantities(pieces=12), actor_roles=FARM,
        )

        assert services.workflow.is_in(confirmed, CW, ChildWaybillState.CONFIRMED)
        assert confirmed.pieces == 12

    def test_confirm_twice_rejected(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        services.child_waybills.confirm(child.id, TEST_ACTOR_ID, actor_roles=FARM)

        with pytest.raises(PreconditionFailedError):
            services.child_waybills.confirm(child.id, TEST_ACTOR_ID, actor_roles=FARM)

    def test_farm_cannot_process(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        services.child_waybills.confirm(child.id, TEST_ACTOR_ID, actor_roles=FARM)
        processed = services.workflow.state_named(CW, ChildWaybillState.PROCESSED)

        with pytest.raises(ForbiddenTransitionError):
            services.child_waybills.change_state(
                child.id, processed.id, TEST_ACTOR_ID, actor_roles=FARM
            )
        record = services.child_waybills.change_state(
            child.id, processed.id, TEST_ACTOR_ID, actor_roles=COORDINATOR
        )
        assert record.destination_state.name == "PROCESSED"

    def test_cancel_requires_reason(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill

        with pytest.raises(MissingCommentError):
            services.child_waybills.cancel(child.id, "", TEST_ACTOR_ID, actor_roles=ADMIN)

        assert child.allocation_key is not None

    def test_cancel_releases_key(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill

        cancelled = services.child_waybills.cancel(
            child.id, "Farm withdrew", TEST_ACTOR_ID, actor_roles=FARM
        )
        again = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)

        assert cancelled.allocation_key is None
        assert services.workflow.is_in(cancelled, CW, ChildWaybillState.CANCELLED)
        assert again.created
        assert again.child_waybill.id != child.id
        assert again.child_waybill.number == "20260002"

    def test_generic_cancel_releases_key(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        cancelled = services.workflow.state_named(CW, ChildWaybillState.CANCELLED)

        record = services.child_waybills.change_state(
            child.id, cancelled.id, TEST_ACTOR_ID, comment="Farm withdrew", actor_roles=FARM
        )

        assert record.destination_state.name == "CANCELLED"
        assert child.allocation_key is None
        assert services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).created

    def test_generic_cancel_requires_reason(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        cancelled = services.workflow.state_named(CW, ChildWaybillState.CANCELLED)

        with pytest.raises(MissingCommentError):
            services.child_waybills.change_state(
                child.id, cancelled.id, TEST_ACTOR_ID, actor_roles=ADMIN
            )
        assert child.allocation_key is not None

    def test_cancelled_child_is_final(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        services.child_waybills.cancel(child.id, "Duplicate", TEST_ACTOR_ID, actor_roles=ADMIN)

        with pytest.raises(TerminalStateError):
            services.child_waybills.update(child.id, TEST_ACTOR_ID, quantities=ChildWaybillQuantities())

    def test_list_for_coordination_ordered_by_number(self, services, coordination, catalog):
        for farm_id in reversed(catalog.farm_ids):
            services.child_waybills.allocate(coordination.id, farm_id, TEST_ACTOR_ID)
        numbers = [c.number for c in services.child_waybills.list_for_coordination(coordination.id)]
        assert numbers == sorted(numbers)


class TestUpdate:
    def test_update_quantities(self, services, coordination, farm):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill

        updated = services.child_waybills.update(
            child.id, TEST_ACTOR_ID,
            quantities=ChildWaybillQuantities(pieces=4, weight_kg=Decimal("100")),
        )

        assert updated.pieces == 4
        assert updated.weight_kg == Decimal("100")
        assert updated.updated_by_id == TEST_ACTOR_ID

    def test_product_change_moves_key(self, services, coordination, farm, catalog):
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        old_key = child.allocation_key

        services.child_waybills.update(child.id, TEST_ACTOR_ID, product_id=catalog.other_product_id)

        assert child.allocation_key != old_key
        assert str(catalog.other_product_id) in child.allocation_key
        found = services.child_waybills.find_existing(
            farm, coordination.master_waybill_id, catalog.principal_consignee_id,
            catalog.other_product_id,
        )
        assert found.id == child.id

    def test_product_change_onto_taken_key(self, services, coordination, farm, catalog):
        services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)
        other = services.child_waybills.allocate(
            coordination.id, farm, TEST_ACTOR_ID, product_id=catalog.other_product_id
        ).child_waybill

        with pytest.raises(DuplicateAllocationError) as exc_info:
            services.child_waybills.update(other.id, TEST_ACTOR_ID, product_id=catalog.product_id)

        assert exc_info.value.retryable
        assert services.child_waybills.get(other.id).product_id == catalog.other_product_id


class TestAllocationConflicts:
    """The unique key catches a creation that raced past the lookup."""

    def test_lost_creation_race(self, services, coordination, farm, monkeypatch):
        winner = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        lookup = AllocationResolver.find_existing
        calls = []

        def lookup_before_winner_committed(resolver, *args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                return None
            return lookup(resolver, *args, **kwargs)

        monkeypatch.setattr(AllocationResolver, "find_existing", lookup_before_winner_committed)

        with pytest.raises(DuplicateAllocationError) as exc_info:
            services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)

        assert exc_info.value.retryable
        assert len(calls) == 2
        children = services.child_waybills.list_for_coordination(coordination.id)
        assert [c.id for c in children] == [winner.id]

    def test_number_not_consumed_by_lost_race(self, services, coordination, catalog, monkeypatch):
        farm_a, farm_b, _ = catalog.farm_ids
        services.child_waybills.allocate(coordination.id, farm_a, TEST_ACTOR_ID)
        lookup = AllocationResolver.find_existing
        calls = []

        def lookup_before_winner_committed(resolver, *args, **kwargs):
            calls.append(args)
            return None if len(calls) == 1 else lookup(resolver, *args, **kwargs)

        monkeypatch.setattr(AllocationResolver, "find_existing", lookup_before_winner_committed)
        with pytest.raises(DuplicateAllocationError):
            services.child_waybills.allocate(coordination.id, farm_a, TEST_ACTOR_ID)
        monkeypatch.undo()

        result = services.child_waybills.allocate(coordination.id, farm_b, TEST_ACTOR_ID)
        assert result.child_waybill.number == "20260002"


class TestConsigneeDimension:
    def test_record_without_principal_rejects_allocation(
        self, services, coordination, farm, session
    ):
        for assignment in list(coordination.consignees):
            assignment.is_principal = False
        session.flush()

        with pytest.raises(PrincipalConsigneeError):
            services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID)

    def test_consignee_follows_principal(self, services, coordination, farm, catalog):
        services.coordinations.assign_consignees(
            coordination.id,
            [
                ConsigneeRef(catalog.principal_consignee_id),
                ConsigneeRef(catalog.second_consignee_id, is_principal=True),
            ],
            TEST_ACTOR_ID,
        )
        child = services.child_waybills.allocate(coordination.id, farm, TEST_ACTOR_ID).child_waybill
        assert child.consignee_id == catalog.second_consignee_id
