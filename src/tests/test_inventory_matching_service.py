"""Tests for matching order item BOMs against stock."""

import pytest

from src.models import (
    InventoryItem,
    MaterialStatus,
    OrderItem,
    OrderItemStatus,
    ProcurementDemandStatus,
    SectionStatus,
)
from src.services import (
    bom_service,
    catalog_service,
    inventory_matching_service,
    inventory_service,
    order_service,
    packet_service,
)
from src.services.database import session_scope
from src.services.exceptions import StateConflictError


@pytest.fixture
def short_fabric_item(test_db, driver):
    """Item whose shirt needs 3.5m of a fabric with only 2.0m in stock."""
    fabric = inventory_service.create_inventory_item(
        "Banarsi", "FAB-BAN", "meter", remaining_stock=2.0
    ).id
    product = catalog_service.create_product("Banarsi Shirt", "BS-01", base_pieces=["shirt"])
    bom = bom_service.create_bom(product.id, "M")
    bom_service.add_bom_item(bom.id, fabric, 3.5, "shirt")
    bom_service.activate_bom(bom.id)
    item_id = driver.new_item(product_id=product.id, add_ons=())
    order_service.send_to_inventory_check(item_id)
    return item_id, fabric


def _stock(inventory_item_id):
    return inventory_service.get_inventory_item(inventory_item_id).remaining_stock


def _drain(inventory_item_id, quantity):
    """Reduce stock directly, standing in for consumption by other orders."""
    with session_scope() as session:
        item = session.get(InventoryItem, inventory_item_id)
        item.remaining_stock = item.remaining_stock - quantity


class TestShortage:
    """A material short in stock blocks the section and raises a demand."""

    def test_shortage_recorded(self, short_fabric_item):
        item_id, fabric = short_fabric_item

        result = inventory_matching_service.run_inventory_check(item_id)

        (requirement,) = result.requirements
        assert requirement.required_qty == pytest.approx(3.5)
        assert requirement.available_qty == pytest.approx(2.0)
        assert requirement.shortage_qty == pytest.approx(1.5)
        assert requirement.status == MaterialStatus.SHORTAGE
        assert result.has_shortage
        assert result.item_status == OrderItemStatus.AWAITING_MATERIAL
        assert result.sections_short == ["shirt"]

        (demand,) = inventory_service.list_procurement_demands(order_item_id=item_id)
        assert demand.inventory_item_id == fabric
        assert demand.shortage_qty == pytest.approx(1.5)
        assert demand.status == ProcurementDemandStatus.OPEN

        item = order_service.get_order_item(item_id)
        assert item.status == OrderItemStatus.AWAITING_MATERIAL
        assert item.section_status_map()[item.sections[0]] == SectionStatus.AWAITING_MATERIAL

    def test_check_never_changes_stock(self, short_fabric_item):
        item_id, fabric = short_fabric_item
        inventory_matching_service.run_inventory_check(item_id)
        assert _stock(fabric) == pytest.approx(2.0)

    def test_rerun_is_idempotent(self, short_fabric_item):
        item_id, fabric = short_fabric_item
        first = inventory_matching_service.run_inventory_check(item_id)
        second = inventory_matching_service.run_inventory_check(item_id)

        assert [r.to_dict() for r in first.requirements] == [r.to_dict() for r in second.requirements]
        demands = inventory_service.list_procurement_demands(order_item_id=item_id)
        assert len(demands) == 1
        assert demands[0].shortage_qty == pytest.approx(1.5)

    def test_stock_arrival_then_recheck_passes(self, short_fabric_item):
        item_id, fabric = short_fabric_item
        inventory_matching_service.run_inventory_check(item_id)

        inventory_service.receive_stock(fabric, 1.5)
        order_service.send_to_inventory_check(item_id)
        result = inventory_matching_service.run_inventory_check(item_id)

        assert result.item_status == OrderItemStatus.READY_FOR_PRODUCTION
        assert inventory_service.list_procurement_demands(order_item_id=item_id) == []


class TestSufficientStock:
    def test_all_sections_pass(self, driver, materials, order_item):
        result = driver.inventory_checked(order_item)

        assert result.item_status == OrderItemStatus.READY_FOR_PRODUCTION
        assert result.sections_passed == ["shirt", "dupatta"]
        by_item = {r.inventory_item_id: r for r in result.requirements}
        # Lace is shared by both pieces and consolidated into one requirement
        assert by_item[materials.lace].required_qty == pytest.approx(1.5)
        assert by_item[materials.lace].pieces == ["shirt", "dupatta"]
        assert all(r.status == MaterialStatus.SUFFICIENT for r in result.requirements)

        item = order_service.get_order_item(order_item)
        assert {s.value for s in item.section_status_map()} == {"shirt", "dupatta"}
        assert set(item.section_status_map().values()) == {SectionStatus.INVENTORY_PASSED}
        assert len(item.material_requirements) == 3

    def test_quantity_scales_requirement(self, test_db, materials, product):
        order_service.create_order(
            "ORD-Q", "Sana", [{"product_id": product, "size": "M", "quantity": 3}]
        )
        with session_scope() as session:
            item_id = session.query(OrderItem.id).filter(OrderItem.quantity == 3).scalar()
        order_service.send_to_inventory_check(item_id)

        result = inventory_matching_service.run_inventory_check(item_id)

        by_item = {r.inventory_item_id: r for r in result.requirements}
        assert by_item[materials.shirt_fabric].required_qty == pytest.approx(7.5)

    def test_partial_shortage_splits_sections(self, driver, materials, order_item):
        # Leave 1.0m of chiffon against the 2.0m the dupatta needs
        _drain(materials.chiffon, 9.0)

        result = driver.inventory_checked(order_item)

        assert result.item_status == OrderItemStatus.AWAITING_MATERIAL
        assert result.sections_passed == ["shirt"]
        assert result.sections_short == ["dupatta"]

    def test_no_bom_means_no_requirements(self, test_db, driver):
        product = catalog_service.create_product("Plain Kurta", "PK-01", base_pieces=["kurta"])
        item_id = driver.new_item(product_id=product.id, add_ons=())
        order_service.send_to_inventory_check(item_id)

        result = inventory_matching_service.run_inventory_check(item_id)

        assert result.requirements == []
        assert result.item_status == OrderItemStatus.READY_FOR_PRODUCTION


class TestRecheckRules:
    def test_not_before_inventory_check(self, driver, order_item):
        with pytest.raises(StateConflictError) as exc_info:
            inventory_matching_service.run_inventory_check(order_item)
        assert exc_info.value.required_statuses == ["INVENTORY_CHECK"]

    def test_not_after_packet_exists(self, driver, order_item):
        driver.inventory_checked(order_item)
        packet_service.create_packet(order_item)

        with pytest.raises(StateConflictError):
            inventory_matching_service.run_inventory_check(order_item)


class TestProcurementDemands:
    def test_demand_lifecycle(self, short_fabric_item):
        item_id, _ = short_fabric_item
        inventory_matching_service.run_inventory_check(item_id)
        (demand,) = inventory_service.list_procurement_demands(order_item_id=item_id)

        ordered = inventory_service.update_demand_status(
            demand.id, ProcurementDemandStatus.ORDERED, notes="PO-77"
        )
        assert ordered.notes == "PO-77"
        received = inventory_service.update_demand_status(demand.id, "RECEIVED")
        assert received.status == ProcurementDemandStatus.RECEIVED

    def test_cannot_skip_ordering(self, short_fabric_item):
        item_id, _ = short_fabric_item
        inventory_matching_service.run_inventory_check(item_id)
        (demand,) = inventory_service.list_procurement_demands(order_item_id=item_id)

        with pytest.raises(StateConflictError) as exc_info:
            inventory_service.update_demand_status(demand.id, ProcurementDemandStatus.RECEIVED)
        assert exc_info.value.required_statuses == ["ORDERED"]

    def test_filter_by_status(self, short_fabric_item):
        item_id, _ = short_fabric_item
        inventory_matching_service.run_inventory_check(item_id)

        assert len(inventory_service.list_procurement_demands(status="OPEN")) == 1
        assert inventory_service.list_procurement_demands(status="ORDERED") == []



class TestCustomSize:
    """Custom-size items are matched against their own BOM, not the product's."""

    @pytest.fixture
    def custom_item(self, test_db, materials, product):
        order = order_service.create_order(
            "ORD-C",
            "Sana",
            [
                {
                    "product_id": product,
                    "size": "CUSTOM",
                    "add_on_pieces": ["dupatta"],
                    "custom_bom": [
                        {"inventory_item_id": materials.shirt_fabric, "quantity": 4.0, "piece": "shirt"},
                        {"inventory_item_id": materials.lace, "quantity": 1.25, "piece": "shirt"},
                        {"inventory_item_id": materials.chiffon, "quantity": 12.0, "piece": "dupatta"},
                    ],
                }
            ],
        )
        item_id = order_service.get_order_items(order.id)[0].id
        order_service.send_to_inventory_check(item_id)
        return item_id

    def test_custom_bom_shortage(self, materials, custom_item):
        result = inventory_matching_service.run_inventory_check(custom_item)

        by_item = {r.inventory_item_id: r for r in result.requirements}
        assert set(by_item) == {materials.shirt_fabric, materials.lace, materials.chiffon}
        assert by_item[materials.shirt_fabric].required_qty == pytest.approx(4.0)
        assert by_item[materials.lace].required_qty == pytest.approx(1.25)
        assert by_item[materials.lace].pieces == ["shirt"]
        chiffon = by_item[materials.chiffon]
        assert chiffon.status == MaterialStatus.SHORTAGE
        assert chiffon.shortage_qty == pytest.approx(2.0)

        assert result.item_status == OrderItemStatus.AWAITING_MATERIAL
        assert result.sections_passed == ["shirt"]
        assert result.sections_short == ["dupatta"]
        (demand,) = inventory_service.list_procurement_demands(order_item_id=custom_item)
        assert demand.inventory_item_id == materials.chiffon
        assert demand.pieces == ["dupatta"]

    def test_custom_bom_pick_list(self, materials, custom_item):
        inventory_matching_service.run_inventory_check(custom_item)

        packet = packet_service.create_packet(custom_item)

        assert packet.is_partial
        assert packet.sections_pending == ["dupatta"]
        lines = packet_service.get_pick_list(custom_item)
        assert [
            (line["piece"], line["inventory_item_id"], line["required_qty"], line["unit"])
            for line in lines
        ] == [
            ("shirt", materials.shirt_fabric, 4.0, "meter"),
            ("shirt", materials.lace, 1.25, "meter"),
        ]
        assert lines[0]["rack_location"] == "A-1"

    def test_custom_section_added_once_stock_arrives(self, materials, custom_item):
        inventory_matching_service.run_inventory_check(custom_item)
        packet_service.create_packet(custom_item)
        inventory_service.receive_stock(materials.chiffon, 2.0)

        packet_service.add_sections_to_packet(custom_item, ["dupatta"])

        dupatta = [
            line for line in packet_service.get_pick_list(custom_item) if line["piece"] == "dupatta"
        ]
        assert [(line["inventory_item_id"], line["required_qty"]) for line in dupatta] == [
            (materials.chiffon, 12.0)
        ]
