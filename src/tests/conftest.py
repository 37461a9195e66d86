"""Pytest configuration and fixtures for service layer tests."""

from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session

import src.models  # noqa: F401  (registers every table on Base.metadata)
from src.models import OrderItem, PacketStatus, SectionStatus, WorkerRole
from src.models.base import Base
from src.services import (
    bom_service,
    catalog_service,
    dyeing_service,
    inventory_matching_service,
    inventory_service,
    order_service,
    packet_service,
)
from src.services import repository
from src.services.database import session_scope


@pytest.fixture(scope="function")
def test_db():
    """Provide a clean test database for each test function.

    This fixture:
    1. Creates an in-memory SQLite database
    2. Creates all tables
    3. Provides the database to the test
    4. Drops all tables after the test completes
    """
    # Create in-memory SQLite database for testing
    engine = create_engine("sqlite:///:memory:", echo=False)

    # Create all tables
    Base.metadata.create_all(engine)

    # Create session factory
    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    Session = scoped_session(session_factory)

    # Monkey-patch the global session factory for tests
    import src.services.database as db_module

    original_get_session = db_module.get_session_factory
    db_module.get_session_factory = lambda: Session

    # Provide database to test
    yield Session

    # Cleanup
    Session.remove()
    Base.metadata.drop_all(engine)
    engine.dispose()

    # Restore original session factory
    db_module.get_session_factory = original_get_session


@pytest.fixture(scope="function")
def workers(test_db):
    """One worker per department plus three production heads (ids only)."""

    def make(name, role):
        return catalog_service.create_worker(name, role).id

    return SimpleNamespace(
        fabricator=make("Fatima", WorkerRole.FABRICATION),
        dyer=make("Daud", WorkerRole.DYEING),
        other_dyer=make("Dania", WorkerRole.DYEING),
        heads=[
            make("Head A", WorkerRole.PRODUCTION_HEAD),
            make("Head B", WorkerRole.PRODUCTION_HEAD),
            make("Head C", WorkerRole.PRODUCTION_HEAD),
        ],
        tailor=make("Tariq", WorkerRole.PRODUCTION_WORKER),
        qa=make("Qasim", WorkerRole.QA),
    )


@pytest.fixture(scope="function")
def materials(test_db):
    """Raw materials for a shirt with a dupatta add-on (ids only)."""
    return SimpleNamespace(
        shirt_fabric=inventory_service.create_inventory_item(
            "Raw Silk", "FAB-SILK", "meter", remaining_stock=10.0, rack_location="A-1"
        ).id,
        lace=inventory_service.create_inventory_item(
            "Gold Lace", "LACE-GOLD", "meter", remaining_stock=10.0, rack_location="B-4"
        ).id,
        chiffon=inventory_service.create_inventory_item(
            "Chiffon", "FAB-CHIF", "meter", remaining_stock=10.0, rack_location="A-3"
        ).id,
    )


def _build_product(materials, sku, requires_dyeing=True, ready_stock_eligible=False):
    product = catalog_service.create_product(
        "Embroidered Shirt",
        sku,
        base_pieces=["shirt"],
        add_on_pieces=["dupatta"],
        requires_dyeing=requires_dyeing,
        ready_stock_eligible=ready_stock_eligible,
    )
    bom = bom_service.create_bom(product.id, "M")
    bom_service.add_bom_item(bom.id, materials.shirt_fabric, 2.5, "shirt")
    bom_service.add_bom_item(bom.id, materials.lace, 1.0, "shirt")
    bom_service.add_bom_item(bom.id, materials.chiffon, 2.0, "dupatta")
    bom_service.add_bom_item(bom.id, materials.lace, 0.5, "dupatta")
    bom_service.activate_bom(bom.id)
    return product.id


@pytest.fixture(scope="function")
def product(test_db, materials):
    """Shirt product needing dyeing, with an active size M BOM of four lines."""
    return _build_product(materials, "SH-001")


@pytest.fixture(scope="function")
def ready_stock_product(test_db, materials):
    """Shirt product that may skip dyeing and production."""
    return _build_product(materials, "SH-RS", ready_stock_eligible=True)


@pytest.fixture(scope="function")
def build_product(test_db, materials):
    """Factory for further shirt products sharing the same materials."""

    def build(sku, **flags):
        return _build_product(materials, sku, **flags)

    return build


class WorkflowDriver:
    """Moves order items through the workflow for tests that start mid-way."""

    def __init__(self, workers, product):
        self.workers = workers
        self.product = product
        self._orders = 0

    def new_item(self, product_id=None, add_ons=("dupatta",), size="M"):
        self._orders += 1
        order = order_service.create_order(
            f"ORD-{self._orders:04d}",
            "Ayesha Khan",
            [
                {
                    "product_id": product_id or self.product,
                    "size": size,
                    "add_on_pieces": list(add_ons),
                }
            ],
            total_amount=25000,
        )
        with session_scope() as session:
            return session.query(OrderItem).filter(OrderItem.order_id == order.id).one().id

    def inventory_checked(self, item_id):
        order_service.send_to_inventory_check(item_id)
        return inventory_matching_service.run_inventory_check(item_id)

    def pick_and_complete(self, item_id):
        packet = packet_service.get_packet(item_id)
        if packet.assigned_to is None:
            packet_service.assign_packet(item_id, self.workers.fabricator)
        if packet.status != PacketStatus.IN_PROGRESS:
            packet_service.start_packet(item_id)
        for line in packet_service.get_pick_list(item_id):
            if not line["is_picked"]:
                packet_service.pick_item(item_id, line["id"])
        return packet_service.complete_packet(item_id)

    def packet_approved(self, item_id, is_ready_stock=False):
        self.inventory_checked(item_id)
        packet_service.create_packet(item_id)
        self.pick_and_complete(item_id)
        return packet_service.approve_packet(item_id, is_ready_stock=is_ready_stock)

    def dyed(self, item_id, sections=("shirt", "dupatta")):
        dyer = self.workers.dyer
        dyeing_service.accept_dyeing(item_id, sections, dyer)
        dyeing_service.start_dyeing(item_id, sections, dyer)
        return dyeing_service.complete_dyeing(item_id, sections, dyer)

    def force_sections(self, item_id, status, sections=None):
        """Write section statuses directly, for arranging state."""
        with session_scope() as session:
            item = repository.get_order_item(session, item_id)
            records = item.copy_section_records()
            targets = repository.parse_section_names(sections) if sections else item.sections
            for section in targets:
                repository.set_section_status(records, section, SectionStatus(status))
            repository.write_sections(session, item, records)


@pytest.fixture(scope="function")
def driver(test_db, workers, product):
    return WorkflowDriver(workers, product)


@pytest.fixture(scope="function")
def order_item(driver):
    """A fresh size M item with a shirt and a dupatta."""
    return driver.new_item()
