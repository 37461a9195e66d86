"""Repository helpers shared by the workflow services.

Wraps the SQLAlchemy session with the lookups and writes the workflow
needs: fetch-or-raise for every aggregate, active BOM and production head
queries, section record writes, stock adjustments, status re-aggregation
and timeline appends. Services depend on these functions rather than
building queries inline, so the persistence rules (one section record per
section, whole-map writes, one movement per stock change, append-only
timelines) live in one place.

All functions take the caller's session and never commit.
"""

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from src.models import (
    BOM,
    InventoryItem,
    Order,
    OrderItem,
    OrderItemStatus,
    OrderStatus,
    Packet,
    Product,
    ProductionTask,
    Section,
    SectionStatus,
    StockMovement,
    StockMovementReason,
    TimelineEntry,
    Worker,
    WorkerRole,
)
from src.services.exceptions import NotFoundError, ValidationError
from src.services.status_aggregator import aggregate, aggregate_order
from src.utils.constants import QUANTITY_DECIMAL_PLACES
from src.utils.datetime_utils import to_iso, utc_now


# =============================================================================
# Lookups
# =============================================================================


def _get_or_raise(session: Session, model, entity_id: int, entity: str):
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFoundError(entity, entity_id)
    return obj


def get_order(session: Session, order_id: int) -> Order:
    return _get_or_raise(session, Order, order_id, "Order")


def get_order_item(session: Session, order_item_id: int) -> OrderItem:
    return _get_or_raise(session, OrderItem, order_item_id, "OrderItem")


def get_product(session: Session, product_id: int) -> Product:
    return _get_or_raise(session, Product, product_id, "Product")


def get_bom(session: Session, bom_id: int) -> BOM:
    return _get_or_raise(session, BOM, bom_id, "BOM")


def get_inventory_item(session: Session, inventory_item_id: int) -> InventoryItem:
    return _get_or_raise(session, InventoryItem, inventory_item_id, "InventoryItem")


def get_task(session: Session, task_id: int) -> ProductionTask:
    return _get_or_raise(session, ProductionTask, task_id, "ProductionTask")


def get_packet_for_item(session: Session, order_item_id: int) -> Packet:
    """Get the packet of an order item.

    Raises:
        NotFoundError: If the item does not exist or has no packet
    """
    get_order_item(session, order_item_id)
    packet = session.query(Packet).filter(Packet.order_item_id == order_item_id).first()
    if packet is None:
        raise NotFoundError("Packet", f"order item {order_item_id}")
    return packet


def find_packet_for_item(session: Session, order_item_id: int) -> Optional[Packet]:
    return session.query(Packet).filter(Packet.order_item_id == order_item_id).first()


def get_worker(
    session: Session, worker_id: int, role: Optional[WorkerRole] = None
) -> Worker:
    """Get an active worker, optionally checking their role.

    Raises:
        NotFoundError: If the worker does not exist
        ValidationError: If the worker is inactive or has a different role
    """
    worker = _get_or_raise(session, Worker, worker_id, "Worker")
    if not worker.is_active:
        raise ValidationError([f"Worker {worker_id} is inactive"])
    if role is not None and worker.role != role:
        raise ValidationError(
            [f"Worker {worker_id} has role {worker.role.value}, expected {role.value}"]
        )
    return worker


def get_active_bom(session: Session, product_id: int, size: str) -> Optional[BOM]:
    """The single active BOM for (product, size), or None."""
    return (
        session.query(BOM)
        .filter(BOM.product_id == product_id, BOM.size == size, BOM.is_active.is_(True))
        .first()
    )


def list_active_production_heads(session: Session) -> List[Worker]:
    """Active production heads in the stable order used by round-robin."""
    return (
        session.query(Worker)
        .filter(Worker.role == WorkerRole.PRODUCTION_HEAD, Worker.is_active.is_(True))
        .order_by(Worker.id)
        .all()
    )


# =============================================================================
# Sections
# =============================================================================


def parse_section_names(values: Iterable[Any], field: str = "sections") -> List[Section]:
    """
    Normalize raw section names at the service boundary.

    Raises:
        ValidationError: If the list is empty or contains unknown pieces
    """
    values = list(values or [])
    if not values:
        raise ValidationError([f"{field} must name at least one section"])

    sections: List[Section] = []
    errors = []
    for value in values:
        try:
            section = Section.parse(value)
        except ValueError as exc:
            errors.append(str(exc))
            continue
        if section not in sections:
            sections.append(section)
    if errors:
        raise ValidationError(errors)
    return sections


def require_sections(item: OrderItem, sections: Iterable[Section]) -> None:
    """Raise NotFoundError for the first section the item does not track."""
    for section in sections:
        if not item.has_section(section):
            raise NotFoundError("Section", f"{item.id}:{section.value}")


def set_section_status(
    records: Dict[str, dict],
    section: Section,
    status: SectionStatus,
    **fields: Any,
) -> dict:
    """
    Update one section record in a working copy of ``section_statuses``.

    Sets the status, ``updated_at`` and any extra fields (datetimes are
    stored as ISO strings). Fields passed as None are removed.
    """
    now = to_iso(utc_now())
    record = records.setdefault(section.value, {})
    record["status"] = status.value
    record["updated_at"] = now
    for key, value in fields.items():
        if value is None:
            record.pop(key, None)
        else:
            record[key] = to_iso(value) if hasattr(value, "isoformat") else value
    return record


def new_section_record(status: SectionStatus = SectionStatus.PENDING_INVENTORY_CHECK) -> dict:
    now = to_iso(utc_now())
    return {"status": status.value, "created_at": now, "updated_at": now}


def write_sections(session: Session, item: OrderItem, records: Dict[str, dict]) -> OrderItem:
    """
    Store a full set of section records and re-aggregate the item.

    The records replace the stored map as a whole, so the item's version
    check covers every section written.
    """
    item.replace_section_records(records)
    session.flush()
    return refresh_item_status(session, item)


# =============================================================================
# Status aggregation
# =============================================================================


def refresh_item_status(session: Session, item: OrderItem) -> OrderItem:
    """
    Re-derive the item's status from its sections and packet, then roll
    the result up to the order.

    Items and orders that have been dispatched keep their explicit status.
    """
    if item.status in (OrderItemStatus.DISPATCHED, OrderItemStatus.COMPLETED):
        return item

    packet = find_packet_for_item(session, item.id)
    item.status = aggregate(item.section_status_map(), packet.status if packet else None)
    refresh_order_status(session, item.order)
    return item


def refresh_order_status(session: Session, order: Order) -> Order:
    if order.status in (OrderStatus.DISPATCHED, OrderStatus.COMPLETED):
        return order
    order.status = aggregate_order(i.status for i in order.items)
    return order


# =============================================================================
# Stock
# =============================================================================


def adjust_stock(
    session: Session,
    stock: InventoryItem,
    quantity: float,
    reason: StockMovementReason,
    order_item_id: Optional[int] = None,
    packet_id: Optional[int] = None,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    """
    Apply a signed change to ``stock`` and record it as a movement.

    Every change to remaining_stock goes through here so the movement
    ledger always sums to the current balance.
    """
    stock.remaining_stock = round(stock.remaining_stock + quantity, QUANTITY_DECIMAL_PLACES)
    movement = StockMovement(
        inventory_item_id=stock.id,
        quantity=round(quantity, QUANTITY_DECIMAL_PLACES),
        balance_after=stock.remaining_stock,
        reason=reason,
        order_item_id=order_item_id,
        packet_id=packet_id,
        user_id=user_id,
        timestamp=utc_now(),
        notes=notes,
    )
    session.add(movement)
    return movement


# =============================================================================
# Timeline
# =============================================================================


def add_timeline_entry(
    session: Session,
    order_id: int,
    action: str,
    order_item_id: Optional[int] = None,
    user_id: Optional[int] = None,
    details: Optional[dict] = None,
) -> TimelineEntry:
    """Append an audit entry. Entries are never updated afterwards."""
    user_name = "System"
    if user_id is not None:
        worker = session.get(Worker, user_id)
        user_name = worker.name if worker is not None else f"User {user_id}"

    entry = TimelineEntry(
        order_id=order_id,
        order_item_id=order_item_id,
        action=action,
        user_id=user_id,
        user_name=user_name,
        timestamp=utc_now(),
        details=details,
    )
    session.add(entry)
    return entry


def add_item_timeline(
    session: Session,
    item: OrderItem,
    action: str,
    user_id: Optional[int] = None,
    details: Optional[dict] = None,
) -> TimelineEntry:
    return add_timeline_entry(
        session, item.order_id, action, order_item_id=item.id, user_id=user_id, details=details
    )
