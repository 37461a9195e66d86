"""Tests for packet creation, picking, verification and rounds."""

import pytest

from src.models import (
    InventoryItem,
    OrderItemStatus,
    PacketStatus,
    SectionStatus,
    StockMovementReason,
)
from src.services import (
    dyeing_service,
    inventory_service,
    order_service,
    packet_service,
)
from src.services.database import session_scope
from src.services.exceptions import (
    IncompletePreconditionError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)


def _stock(inventory_item_id):
    return inventory_service.get_inventory_item(inventory_item_id).remaining_stock


def _section_statuses(order_item_id):
    item = order_service.get_order_item(order_item_id)
    return {section.value: status for section, status in item.section_status_map().items()}


def _set_stock(inventory_item_id, quantity):
    with session_scope() as session:
        session.get(InventoryItem, inventory_item_id).remaining_stock = quantity


@pytest.fixture
def partial_item(driver, materials, order_item):
    """Item whose dupatta was short of chiffon, so the packet is partial."""
    _set_stock(materials.chiffon, 1.0)
    driver.inventory_checked(order_item)
    packet_service.create_packet(order_item)
    return order_item


class TestCreatePacket:
    """Tests for create_packet."""

    def test_full_packet(self, driver, materials, order_item):
        driver.inventory_checked(order_item)

        packet = packet_service.create_packet(order_item)

        assert packet.status == PacketStatus.UNASSIGNED
        assert packet.packet_round == 1
        assert not packet.is_partial
        assert packet.sections_included == ["shirt", "dupatta"]
        assert packet.total_items == 4
        assert packet.picked_items == 0

        lines = packet_service.get_pick_list(order_item)
        assert [(line["piece"], line["inventory_item_id"]) for line in lines] == [
            ("shirt", materials.shirt_fabric),
            ("shirt", materials.lace),
            ("dupatta", materials.chiffon),
            ("dupatta", materials.lace),
        ]
        assert lines[0]["rack_location"] == "A-1"
        assert all(line["added_in_round"] == 1 for line in lines)

        item = order_service.get_order_item(order_item)
        assert item.status == OrderItemStatus.CREATE_PACKET
        assert set(_section_statuses(order_item).values()) == {SectionStatus.PACKET_CREATED}

    def test_partial_packet(self, partial_item):
        packet = packet_service.get_packet(partial_item)

        assert packet.is_partial
        assert packet.sections_included == ["shirt"]
        assert packet.sections_pending == ["dupatta"]
        assert packet.total_items == 2
        assert _section_statuses(partial_item) == {
            "shirt": SectionStatus.PACKET_CREATED,
            "dupatta": SectionStatus.AWAITING_MATERIAL,
        }

    def test_requires_inventory_check(self, driver, order_item):
        with pytest.raises(StateConflictError) as exc_info:
            packet_service.create_packet(order_item)
        assert "create packet" in str(exc_info.value)

    def test_one_packet_per_item(self, driver, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)

        with pytest.raises(ValidationError):
            packet_service.create_packet(order_item)

    def test_nothing_available(self, driver, materials, order_item):
        _set_stock(materials.lace, 0.0)
        driver.inventory_checked(order_item)

        with pytest.raises(IncompletePreconditionError) as exc_info:
            packet_service.create_packet(order_item)
        assert sorted(exc_info.value.offending) == ["dupatta", "shirt"]

    def test_packet_not_found(self, driver, order_item):
        with pytest.raises(NotFoundError):
            packet_service.get_packet(order_item)


class TestPicking:
    """Tests for assign, start, pick and complete."""

    @pytest.fixture
    def started(self, driver, workers, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)
        packet_service.assign_packet(order_item, workers.fabricator)
        packet_service.start_packet(order_item)
        return order_item

    def test_assign_records_worker(self, driver, workers, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)

        packet = packet_service.assign_packet(order_item, workers.fabricator, assigned_by=workers.qa)

        assert packet.status == PacketStatus.ASSIGNED
        assert packet.assigned_to == workers.fabricator
        assert packet.assigned_by == workers.qa
        assert packet.assigned_at is not None

    def test_pick_updates_progress(self, started):
        line = packet_service.get_pick_list(started)[0]

        picked = packet_service.pick_item(started, line["id"], picked_qty=2.4, notes="short roll")

        assert picked.is_picked
        assert picked.picked_qty == pytest.approx(2.4)
        assert packet_service.get_packet(started).picked_items == 1

    def test_pick_line_from_other_packet(self, driver, started):
        other = driver.new_item()
        driver.inventory_checked(other)
        packet_service.create_packet(other)
        foreign = packet_service.get_pick_list(other)[0]

        with pytest.raises(NotFoundError):
            packet_service.pick_item(started, foreign["id"])

    def test_pick_requires_in_progress(self, driver, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)
        line = packet_service.get_pick_list(order_item)[0]

        with pytest.raises(StateConflictError) as exc_info:
            packet_service.pick_item(order_item, line["id"])
        assert exc_info.value.required_statuses == ["IN_PROGRESS"]

    def test_complete_lists_unpicked_lines(self, started):
        first = packet_service.get_pick_list(started)[0]
        packet_service.pick_item(started, first["id"])

        with pytest.raises(IncompletePreconditionError) as exc_info:
            packet_service.complete_packet(started)

        assert len(exc_info.value.offending) == 3
        assert first["id"] not in [line["id"] for line in exc_info.value.offending]
        assert packet_service.get_packet(started).status == PacketStatus.IN_PROGRESS

    def test_complete_consumes_stock(self, driver, materials, started):
        packet = driver.pick_and_complete(started)

        assert packet.status == PacketStatus.COMPLETED
        assert _stock(materials.shirt_fabric) == pytest.approx(7.5)
        assert _stock(materials.lace) == pytest.approx(8.5)
        assert _stock(materials.chiffon) == pytest.approx(8.0)
        assert all(line["is_consumed"] for line in packet_service.get_pick_list(started))
        assert order_service.get_order_item(started).status == OrderItemStatus.PACKET_CHECK

    def test_complete_refuses_when_stock_gone(self, driver, materials, started):
        for line in packet_service.get_pick_list(started):
            packet_service.pick_item(started, line["id"])
        _set_stock(materials.chiffon, 0.5)

        with pytest.raises(IncompletePreconditionError) as exc_info:
            packet_service.complete_packet(started)

        assert [line["piece"] for line in exc_info.value.offending] == ["dupatta"]
        assert _stock(materials.shirt_fabric) == pytest.approx(10.0)


class TestApproval:
    """Tests for packet approval routing."""

    def test_full_packet_approved_to_dyeing(self, driver, order_item):
        packet = driver.packet_approved(order_item)

        assert packet.status == PacketStatus.APPROVED
        assert packet.check_result == PacketStatus.APPROVED
        assert set(_section_statuses(order_item).values()) == {SectionStatus.READY_FOR_DYEING}
        assert order_service.get_order_item(order_item).status == OrderItemStatus.READY_FOR_DYEING

    def test_without_dyeing_goes_to_production(self, driver, build_product):
        product = build_product("SH-ND", requires_dyeing=False)
        item_id = driver.new_item(product_id=product)
        driver.packet_approved(item_id)

        assert set(_section_statuses(item_id).values()) == {SectionStatus.READY_FOR_PRODUCTION}
        assert order_service.get_order_item(item_id).status == OrderItemStatus.READY_FOR_PRODUCTION

    def test_ready_stock_goes_to_qa(self, driver, ready_stock_product):
        item_id = driver.new_item(product_id=ready_stock_product)
        driver.packet_approved(item_id, is_ready_stock=True)

        item = order_service.get_order_item(item_id)
        assert item.is_ready_stock
        assert item.status == OrderItemStatus.QUALITY_ASSURANCE
        assert set(_section_statuses(item_id).values()) == {SectionStatus.QA_PENDING}

    def test_ready_stock_requires_eligible_product(self, driver, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)
        driver.pick_and_complete(order_item)

        with pytest.raises(ValidationError) as exc_info:
            packet_service.approve_packet(order_item, is_ready_stock=True)
        assert "not eligible" in str(exc_info.value)
        assert packet_service.get_packet(order_item).status == PacketStatus.COMPLETED

    def test_approve_requires_completed(self, driver, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)

        with pytest.raises(StateConflictError) as exc_info:
            packet_service.approve_packet(order_item)
        assert exc_info.value.required_statuses == ["COMPLETED"]

    def test_approve_sections_skips_sections_in_dyeing(self, driver, workers, order_item):
        driver.packet_approved(order_item)
        dyeing_service.accept_dyeing(order_item, ["shirt"], workers.dyer)

        outcome = packet_service.approve_sections(order_item, ["Shirt", "dupatta"])

        assert outcome == {"approved": [], "skipped": ["shirt", "dupatta"]}
        assert _section_statuses(order_item)["shirt"] == SectionStatus.DYEING_ACCEPTED

    def test_approve_sections_moves_named_sections(self, driver, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)

        outcome = packet_service.approve_sections(order_item, ["dupatta"])

        assert outcome == {"approved": ["dupatta"], "skipped": []}
        assert _section_statuses(order_item) == {
            "shirt": SectionStatus.PACKET_CREATED,
            "dupatta": SectionStatus.READY_FOR_DYEING,
        }

    def test_approve_sections_outside_packet(self, partial_item):
        with pytest.raises(ValidationError):
            packet_service.approve_sections(partial_item, ["dupatta"])


class TestRejection:
    """Tests for reject_packet."""

    def test_round_one_resets_everything(self, driver, materials, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)
        driver.pick_and_complete(order_item)

        packet = packet_service.reject_packet(
            order_item, "WRONG_QUANTITY", "lace is short", notes="re-measure"
        )

        assert packet.status == PacketStatus.ASSIGNED
        assert packet.check_result == PacketStatus.REJECTED
        assert packet.rejection_reason_code == "WRONG_QUANTITY"
        assert packet.picked_items == 0
        lines = packet_service.get_pick_list(order_item)
        assert not any(line["is_picked"] or line["is_consumed"] for line in lines)
        assert _stock(materials.lace) == pytest.approx(10.0)
        assert set(_section_statuses(order_item).values()) == {SectionStatus.CREATE_PACKET}

        item = order_service.get_order_item(order_item)
        record = item.section_statuses["shirt"]
        assert record["packet_rejection_reason"] == "lace is short"
        assert record["packet_rejection_notes"] == "re-measure"

    def test_rework_goes_back_to_same_picker(self, driver, workers, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)
        driver.pick_and_complete(order_item)
        packet_service.reject_packet(order_item, "MISSING_ITEMS", "missing lace")

        packet = driver.pick_and_complete(order_item)

        assert packet.assigned_to == workers.fabricator
        assert packet.status == PacketStatus.COMPLETED

    @pytest.mark.parametrize(
        "reason_code,reason",
        [(None, "wrong"), ("NOT_A_CODE", "wrong"), ("WRONG_FABRIC", "  ")],
    )
    def test_reason_validation(self, driver, order_item, reason_code, reason):
        with pytest.raises(ValidationError):
            packet_service.reject_packet(order_item, reason_code, reason)

    def test_round_two_rejection_keeps_earlier_round(self, driver, workers, materials, partial_item):
        driver.pick_and_complete(partial_item)
        packet_service.approve_packet(partial_item)
        dyeing_service.accept_dyeing(partial_item, ["shirt"], workers.dyer)
        inventory_service.receive_stock(materials.chiffon, 4.0)

        packet = packet_service.add_sections_to_packet(partial_item, ["dupatta"])
        assert packet.packet_round == 2
        assert packet.status == PacketStatus.ASSIGNED
        assert packet.sections_pending == []
        assert packet.current_round_sections == ["dupatta"]

        driver.pick_and_complete(partial_item)
        chiffon_after_round_two = _stock(materials.chiffon)
        packet = packet_service.reject_packet(partial_item, "WRONG_FABRIC", "wrong fabric")

        assert packet.status == PacketStatus.ASSIGNED
        lines = packet_service.get_pick_list(partial_item)
        round_one = [line for line in lines if line["added_in_round"] == 1]
        round_two = [line for line in lines if line["added_in_round"] == 2]
        assert len(round_one) == 2 and len(round_two) == 2
        assert all(line["is_picked"] and line["is_consumed"] for line in round_one)
        assert not any(line["is_picked"] for line in round_two)
        assert _stock(materials.chiffon) == pytest.approx(chiffon_after_round_two + 2.0)
        assert _section_statuses(partial_item) == {
            "shirt": SectionStatus.DYEING_ACCEPTED,
            "dupatta": SectionStatus.CREATE_PACKET,
        }
        assert order_service.get_order_item(partial_item).status == OrderItemStatus.PARTIALLY_IN_DYEING


class TestStockMovements:
    """Every stock change made by the packet workflow is recorded."""

    def test_completion_records_consumption(self, driver, workers, materials, order_item):
        driver.inventory_checked(order_item)
        packet = packet_service.create_packet(order_item)
        driver.pick_and_complete(order_item)

        consumed = inventory_service.list_stock_movements(
            order_item_id=order_item, reason=StockMovementReason.PACKET_CONSUMPTION
        )

        assert sorted((m.inventory_item_id, m.quantity) for m in consumed) == sorted(
            [(materials.shirt_fabric, -2.5), (materials.lace, -1.5), (materials.chiffon, -2.0)]
        )
        assert {m.packet_id for m in consumed} == {packet.id}
        lace = inventory_service.list_stock_movements(inventory_item_id=materials.lace)
        assert [m.reason for m in lace] == [
            StockMovementReason.OPENING_BALANCE,
            StockMovementReason.PACKET_CONSUMPTION,
        ]
        assert lace[-1].balance_after == pytest.approx(_stock(materials.lace))

    def test_rejection_records_release_per_line(self, driver, workers, materials, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)
        driver.pick_and_complete(order_item)

        packet_service.reject_packet(
            order_item, "WRONG_FABRIC", "wrong lot", user_id=workers.qa
        )

        released = inventory_service.list_stock_movements(
            order_item_id=order_item, reason=StockMovementReason.PACKET_REJECTION_RELEASE
        )
        assert len(released) == 4
        assert sum(m.quantity for m in released) == pytest.approx(6.0)
        assert all(m.user_id == workers.qa for m in released)

    def test_ledger_sums_to_balance(self, driver, materials, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)
        driver.pick_and_complete(order_item)
        packet_service.reject_packet(order_item, "MISSING_ITEMS", "lace missing")
        driver.pick_and_complete(order_item)
        inventory_service.receive_stock(materials.lace, 3.0)

        for material in (materials.shirt_fabric, materials.lace, materials.chiffon):
            movements = inventory_service.list_stock_movements(inventory_item_id=material)
            assert sum(m.quantity for m in movements) == pytest.approx(_stock(material))


class TestRounds:
    """Tests for add_sections_to_packet."""

    def test_requires_pending_section(self, driver, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)

        with pytest.raises(ValidationError) as exc_info:
            packet_service.add_sections_to_packet(order_item, ["shirt"])
        assert "not pending" in str(exc_info.value)

    def test_material_still_short(self, driver, partial_item):
        driver.pick_and_complete(partial_item)
        packet_service.approve_packet(partial_item)

        with pytest.raises(IncompletePreconditionError) as exc_info:
            packet_service.add_sections_to_packet(partial_item, ["dupatta"])
        assert [line["piece"] for line in exc_info.value.offending] == ["dupatta"]
        assert packet_service.get_packet(partial_item).packet_round == 1

    def test_not_while_awaiting_verification(self, driver, materials, partial_item):
        driver.pick_and_complete(partial_item)
        inventory_service.receive_stock(materials.chiffon, 4.0)

        with pytest.raises(StateConflictError):
            packet_service.add_sections_to_packet(partial_item, ["dupatta"])

    def test_unassigned_packet_stays_unassigned(self, materials, partial_item):
        inventory_service.receive_stock(materials.chiffon, 4.0)

        packet = packet_service.add_sections_to_packet(partial_item, ["dupatta"])

        assert packet.status == PacketStatus.UNASSIGNED
        assert packet.sections_included == ["shirt", "dupatta"]
        assert not packet.is_partial
        assert packet.total_items == 4
        assert packet.packet_round == 1

    def test_sections_join_unverified_round(self, driver, workers, materials, partial_item):
        packet_service.assign_packet(partial_item, workers.fabricator)
        inventory_service.receive_stock(materials.chiffon, 4.0)

        packet = packet_service.add_sections_to_packet(partial_item, ["dupatta"])
        assert packet.status == PacketStatus.ASSIGNED
        assert packet.packet_round == 1
        assert packet.current_round_sections == ["shirt", "dupatta"]
        assert all(
            line["added_in_round"] == 1 for line in packet_service.get_pick_list(partial_item)
        )

        driver.pick_and_complete(partial_item)
        packet = packet_service.approve_packet(partial_item)

        assert packet.status == PacketStatus.APPROVED
        assert _section_statuses(partial_item) == {
            "shirt": SectionStatus.READY_FOR_DYEING,
            "dupatta": SectionStatus.READY_FOR_DYEING,
        }
        assert order_service.get_order_item(partial_item).status == OrderItemStatus.READY_FOR_DYEING

    def test_rejecting_joined_round_resets_every_section(self, driver, workers, materials, partial_item):
        packet_service.assign_packet(partial_item, workers.fabricator)
        inventory_service.receive_stock(materials.chiffon, 4.0)
        packet_service.add_sections_to_packet(partial_item, ["dupatta"])
        driver.pick_and_complete(partial_item)

        packet_service.reject_packet(partial_item, "MISSING_ITEMS", "lace missing")

        assert not any(line["is_picked"] for line in packet_service.get_pick_list(partial_item))
        assert _section_statuses(partial_item) == {
            "shirt": SectionStatus.CREATE_PACKET,
            "dupatta": SectionStatus.CREATE_PACKET,
        }

    def test_unknown_section_name(self, partial_item):
        with pytest.raises(ValidationError):
            packet_service.add_sections_to_packet(partial_item, ["cape"])
