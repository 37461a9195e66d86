"""Tests for optimistic locking on order items, stock and the round-robin cursor.

Most tests load a versioned row into the session, then bump its version
behind the ORM's back the way a second writer would. The service's flush
then finds no row at the version it read. TestStockContention runs two
real sessions against a file-backed database instead.
"""

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import scoped_session, sessionmaker

import src.services.database as db_module
from src.models import (
    InventoryItem,
    OrderItemStatus,
    PacketStatus,
    RoundRobinCursor,
    SectionStatus,
    StockMovementReason,
)
from src.models.base import Base
from src.services import inventory_service, order_service, packet_service, production_service
from src.services.database import session_scope
from src.services.exceptions import ConcurrentUpdateError, ServiceError


def test_stale_order_item_write_is_rejected(driver, order_item):
    with pytest.raises(ConcurrentUpdateError) as exc_info:
        with session_scope() as session:
            order_service.get_order_item(order_item, session=session)
            session.execute(
                text("UPDATE order_items SET version = version + 1 WHERE id = :id"),
                {"id": order_item},
            )
            order_service.send_to_inventory_check(order_item, session=session)

    assert isinstance(exc_info.value, ServiceError)
    # The losing write was rolled back
    assert order_service.get_order_item(order_item).status == OrderItemStatus.RECEIVED


def test_stale_cursor_advance_is_rejected(driver, workers):
    items = []
    for _ in range(2):
        item_id = driver.new_item()
        driver.force_sections(item_id, SectionStatus.READY_FOR_PRODUCTION)
        items.append(item_id)
    production_service.assign_production_head(items[0])

    with pytest.raises(ConcurrentUpdateError):
        with session_scope() as session:
            session.query(RoundRobinCursor).one()
            session.execute(text("UPDATE round_robin_cursors SET version = version + 1"))
            production_service.assign_production_head(items[1], session=session)

    assert order_service.get_order_item(items[1]).production_head_id is None

    # A retry reads the current cursor and takes the next slot
    retried = production_service.assign_production_head(items[1])
    assert retried.production_head_id == workers.heads[1]


def test_stale_stock_write_is_rejected(materials):
    with pytest.raises(ConcurrentUpdateError):
        with session_scope() as session:
            inventory_service.get_inventory_item(materials.lace, session=session)
            session.execute(
                text("UPDATE inventory_items SET version = version + 1 WHERE id = :id"),
                {"id": materials.lace},
            )
            inventory_service.receive_stock(materials.lace, 5.0, session=session)

    assert inventory_service.get_inventory_item(materials.lace).remaining_stock == 10.0
    assert (
        inventory_service.list_stock_movements(
            inventory_item_id=materials.lace, reason=StockMovementReason.RECEIPT
        )
        == []
    )


def _picked_packet(driver, workers):
    item_id = driver.new_item()
    driver.inventory_checked(item_id)
    packet_service.create_packet(item_id)
    packet_service.assign_packet(item_id, workers.fabricator)
    packet_service.start_packet(item_id)
    for line in packet_service.get_pick_list(item_id):
        packet_service.pick_item(item_id, line["id"])
    return item_id


class TestStockContention:
    """Two sessions consuming the same material."""

    @pytest.fixture
    def test_db(self, tmp_path):
        """File-backed database so each session gets its own connection."""
        engine = create_engine(f"sqlite:///{tmp_path / 'contention.db'}", echo=False)
        Base.metadata.create_all(engine)
        Session = scoped_session(sessionmaker(bind=engine, expire_on_commit=False))

        original_get_session = db_module.get_session_factory
        db_module.get_session_factory = lambda: Session

        yield Session

        Session.remove()
        engine.dispose()
        db_module.get_session_factory = original_get_session

    def test_second_consumer_of_stale_stock_loses(self, test_db, driver, workers, materials):
        first = _picked_packet(driver, workers)
        second = _picked_packet(driver, workers)

        with pytest.raises(ConcurrentUpdateError):
            with session_scope() as session:
                # Lace is read here, before the rival commits
                session.get(InventoryItem, materials.lace)

                rival = test_db.session_factory()
                try:
                    packet_service.complete_packet(second, session=rival)
                    rival.commit()
                finally:
                    rival.close()

                packet_service.complete_packet(first, session=session)

        assert inventory_service.get_inventory_item(materials.lace).remaining_stock == pytest.approx(8.5)
        assert packet_service.get_packet(first).status == PacketStatus.IN_PROGRESS
        assert not any(line["is_consumed"] for line in packet_service.get_pick_list(first))

        # A retry sees the rival's consumption and takes its own share
        packet_service.complete_packet(first)
        assert inventory_service.get_inventory_item(materials.lace).remaining_stock == pytest.approx(7.0)
        consumed = inventory_service.list_stock_movements(
            inventory_item_id=materials.lace, reason=StockMovementReason.PACKET_CONSUMPTION
        )
        assert [m.balance_after for m in consumed] == [8.5, 7.0]
