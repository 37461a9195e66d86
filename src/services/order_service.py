"""Order Service - order intake, payments and item timelines.

Creates orders with their garment items, records payments, and moves
items into inventory check. Every item tracks one status record per
section (garment piece); the records start at PENDING_INVENTORY_CHECK.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from src.models import (
    InventoryItem,
    Order,
    OrderItem,
    OrderItemStatus,
    OrderStatus,
    Product,
    Section,
    TimelineEntry,
)
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import StateConflictError, ValidationError
from src.services.logging_utils import get_service_logger, log_operation
from src.services.transitions import (
    ORDER_ITEM_TRANSITIONS,
    SECTION_TRANSITIONS,
    OrderItemEvent,
    SectionEvent,
)
from src.utils.constants import ALL_SIZES, CUSTOM_SIZE, QUANTITY_DECIMAL_PLACES
from src.utils.datetime_utils import to_iso, utc_now

logger = get_service_logger(__name__)

_CLOSED_ORDER_STATUSES = (OrderStatus.DISPATCHED, OrderStatus.COMPLETED)


# =============================================================================
# Item building
# =============================================================================


def _parse_piece_list(values: Iterable, field: str, errors: List[str]) -> List[Section]:
    sections: List[Section] = []
    for value in values or []:
        try:
            section = Section.parse(value)
        except ValueError as exc:
            errors.append(f"{field}: {exc}")
            continue
        if section not in sections:
            sections.append(section)
    return sections


def _validate_custom_bom(
    lines: Optional[List[Dict[str, Any]]],
    pieces: List[Section],
    session: Session,
    errors: List[str],
) -> List[Dict[str, Any]]:
    """Normalize custom BOM lines to {inventory_item_id, quantity, unit, piece}."""
    if not lines:
        errors.append("Custom size items require a custom BOM")
        return []

    normalized = []
    for index, line in enumerate(lines, start=1):
        inventory_item_id = line.get("inventory_item_id")
        inventory_item = (
            session.get(InventoryItem, inventory_item_id) if inventory_item_id is not None else None
        )
        if inventory_item is None:
            errors.append(f"Custom BOM line {index}: unknown inventory item")
            continue
        quantity = line.get("quantity")
        if quantity is None or float(quantity) <= 0:
            errors.append(f"Custom BOM line {index}: quantity must be greater than zero")
            continue
        try:
            piece = Section.parse(line.get("piece"))
        except ValueError as exc:
            errors.append(f"Custom BOM line {index}: {exc}")
            continue
        if piece not in pieces:
            errors.append(f"Custom BOM line {index}: piece '{piece.value}' is not on this item")
            continue
        normalized.append(
            {
                "inventory_item_id": inventory_item.id,
                "quantity": round(float(quantity), QUANTITY_DECIMAL_PLACES),
                "unit": line.get("unit") or inventory_item.unit,
                "piece": piece.value,
            }
        )
    return normalized


def _build_order_item(spec: Dict[str, Any], session: Session, errors: List[str], label: str):
    """Validate one item description and return an unsaved OrderItem (or None)."""
    item_errors: List[str] = []
    product_id = spec.get("product_id")
    product = session.get(Product, product_id) if product_id is not None else None
    if product is None or not product.is_active:
        errors.append(f"{label}: product {spec.get('product_id')} not found or inactive")
        return None

    size = str(spec.get("size") or "").strip().upper()
    if size not in ALL_SIZES:
        item_errors.append(f"size must be one of {', '.join(ALL_SIZES)}")

    quantity = spec.get("quantity", 1)
    if quantity is None or float(quantity) <= 0:
        item_errors.append("quantity must be greater than zero")

    if spec.get("included_pieces") is None:
        included = [Section.parse(p) for p in product.base_pieces or []]
    else:
        included = _parse_piece_list(spec["included_pieces"], "included_pieces", item_errors)
        unknown = [s.value for s in included if s.value not in (product.base_pieces or [])]
        if unknown:
            item_errors.append(f"not base pieces of {product.sku}: {', '.join(unknown)}")

    add_ons = _parse_piece_list(spec.get("add_on_pieces"), "add_on_pieces", item_errors)
    unknown = [s.value for s in add_ons if s.value not in (product.add_on_pieces or [])]
    if unknown:
        item_errors.append(f"not add-on pieces of {product.sku}: {', '.join(unknown)}")

    if not included and not add_ons:
        item_errors.append("an item needs at least one piece")

    custom_bom = None
    if size == CUSTOM_SIZE:
        custom_bom = _validate_custom_bom(
            spec.get("custom_bom"), included + add_ons, session, item_errors
        )

    if item_errors:
        errors.extend(f"{label}: {message}" for message in item_errors)
        return None

    return OrderItem(
        product_id=product.id,
        size=size,
        quantity=round(float(quantity), QUANTITY_DECIMAL_PLACES),
        included_pieces=[s.value for s in included],
        add_on_pieces=[s.value for s in add_ons],
        section_statuses={s.value: repository.new_section_record() for s in included + add_ons},
        custom_bom=custom_bom,
        is_ready_stock=False,
        status=OrderItemStatus.RECEIVED,
    )


# =============================================================================
# Orders
# =============================================================================


def _create_order_impl(
    order_number: str,
    customer_name: str,
    items: List[Dict[str, Any]],
    total_amount: float,
    destination_address: Optional[str],
    customer_phone: Optional[str],
    fwd_date: Optional[date],
    is_urgent: bool,
    user_id: Optional[int],
    session: Session,
) -> Order:
    errors = []
    if not order_number or not order_number.strip():
        errors.append("Order number is required")
    elif session.query(Order).filter(Order.order_number == order_number.strip()).first():
        errors.append(f"Order number '{order_number.strip()}' already exists")
    if not customer_name or not customer_name.strip():
        errors.append("Customer name is required")
    if total_amount is None or total_amount < 0:
        errors.append("Total amount cannot be negative")
    if not items:
        errors.append("An order needs at least one item")

    built = [
        _build_order_item(spec, session, errors, f"item {index}")
        for index, spec in enumerate(items or [], start=1)
    ]
    if errors:
        raise ValidationError(errors)

    order = Order(
        order_number=order_number.strip(),
        customer_name=customer_name.strip(),
        destination_address=destination_address,
        customer_phone=customer_phone,
        total_amount=total_amount,
        payments=[],
        status=OrderStatus.RECEIVED,
        fwd_date=fwd_date,
        is_urgent=is_urgent,
    )
    order.items = built
    session.add(order)
    session.flush()

    repository.add_timeline_entry(
        session,
        order.id,
        f"Order {order.order_number} created with {len(built)} item(s)",
        user_id=user_id,
    )
    for item in built:
        repository.add_item_timeline(
            session,
            item,
            "Order item created",
            user_id=user_id,
            details={"sections": list(item.section_statuses)},
        )

    log_operation(
        logger,
        "create_order",
        "success",
        order_id=order.id,
        order_number=order.order_number,
        item_count=len(built),
    )
    return order


def create_order(
    order_number: str,
    customer_name: str,
    items: List[Dict[str, Any]],
    total_amount: float = 0,
    destination_address: Optional[str] = None,
    customer_phone: Optional[str] = None,
    fwd_date: Optional[date] = None,
    is_urgent: bool = False,
    user_id: Optional[int] = None,
    session: Session = None,
) -> Order:
    """
    Create an order with its items.

    Each item description is a dict with:
        product_id: Product ordered
        size: Standard size or "CUSTOM"
        quantity: Number of garments (default 1)
        included_pieces: Base pieces (default: all of the product's base pieces)
        add_on_pieces: Selected add-on pieces
        custom_bom: Required for custom sizes; list of
            {inventory_item_id, quantity, unit, piece}

    Every item starts RECEIVED with one PENDING_INVENTORY_CHECK record per
    section.

    Raises:
        ValidationError: With every problem found across the order and its items
    """
    if session is not None:
        return _create_order_impl(
            order_number,
            customer_name,
            items,
            total_amount,
            destination_address,
            customer_phone,
            fwd_date,
            is_urgent,
            user_id,
            session,
        )

    with session_scope() as session:
        return _create_order_impl(
            order_number,
            customer_name,
            items,
            total_amount,
            destination_address,
            customer_phone,
            fwd_date,
            is_urgent,
            user_id,
            session,
        )


def _add_order_item_impl(
    order_id: int, spec: Dict[str, Any], user_id: Optional[int], session: Session
) -> OrderItem:
    order = repository.get_order(session, order_id)
    if order.status in _CLOSED_ORDER_STATUSES:
        raise StateConflictError(
            "Order",
            order_id,
            order.status,
            [OrderStatus.RECEIVED, OrderStatus.IN_PROGRESS, OrderStatus.READY_FOR_DISPATCH],
            "add order item",
        )

    errors: List[str] = []
    item = _build_order_item(spec, session, errors, "item")
    if errors:
        raise ValidationError(errors)

    order.items.append(item)
    session.flush()
    repository.refresh_order_status(session, order)
    repository.add_item_timeline(
        session,
        item,
        "Order item added",
        user_id=user_id,
        details={"sections": list(item.section_statuses)},
    )
    log_operation(logger, "add_order_item", "success", order_id=order_id, order_item_id=item.id)
    return item


def add_order_item(
    order_id: int,
    item: Dict[str, Any],
    user_id: Optional[int] = None,
    session: Session = None,
) -> OrderItem:
    """
    Add an item to an order that has not been dispatched.

    The item description has the same shape as in create_order.

    Raises:
        NotFoundError: If order not found
        StateConflictError: If the order is dispatched or completed
        ValidationError: If the item description is invalid
    """
    if session is not None:
        return _add_order_item_impl(order_id, item, user_id, session)

    with session_scope() as session:
        return _add_order_item_impl(order_id, item, user_id, session)


def _record_payment_impl(
    order_id: int,
    amount: float,
    method: str,
    paid_at: Optional[datetime],
    reference: Optional[str],
    user_id: Optional[int],
    session: Session,
) -> Order:
    errors = []
    if amount is None or amount <= 0:
        errors.append("Payment amount must be greater than zero")
    if not method or not method.strip():
        errors.append("Payment method is required")
    if errors:
        raise ValidationError(errors)

    order = repository.get_order(session, order_id)
    payment = {
        "amount": round(float(amount), 2),
        "method": method.strip(),
        "paid_at": to_iso(paid_at or utc_now()),
        "reference": reference,
    }
    # Reassign so the JSON column is flagged dirty
    order.payments = list(order.payments or []) + [payment]
    repository.add_timeline_entry(
        session,
        order.id,
        f"Payment of {payment['amount']} recorded, balance due {order.balance_due}",
        user_id=user_id,
        details=dict(payment, balance_due=order.balance_due),
    )
    session.flush()
    log_operation(
        logger,
        "record_payment",
        "success",
        order_id=order.id,
        amount=payment["amount"],
        balance_due=order.balance_due,
    )
    return order


def record_payment(
    order_id: int,
    amount: float,
    method: str,
    paid_at: Optional[datetime] = None,
    reference: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = None,
) -> Order:
    """
    Append a payment record to an order.

    Raises:
        ValidationError: If amount is not positive or method is blank
        NotFoundError: If order not found
    """
    if session is not None:
        return _record_payment_impl(order_id, amount, method, paid_at, reference, user_id, session)

    with session_scope() as session:
        return _record_payment_impl(order_id, amount, method, paid_at, reference, user_id, session)


# =============================================================================
# Inventory check entry
# =============================================================================


def _send_to_inventory_check_impl(
    order_item_id: int, user_id: Optional[int], session: Session
) -> OrderItem:
    item = repository.get_order_item(session, order_item_id)
    try:
        new_status = ORDER_ITEM_TRANSITIONS.fire(
            item.status, OrderItemEvent.SEND_TO_INVENTORY_CHECK, item.id
        )
    except StateConflictError:
        log_operation(
            logger,
            "send_to_inventory_check",
            "state_conflict",
            level=logging.WARNING,
            order_item_id=item.id,
            status=item.status.value,
        )
        raise

    records = item.copy_section_records()
    queued = []
    for section, status in item.section_status_map().items():
        if SECTION_TRANSITIONS.can_fire(status, SectionEvent.QUEUE_INVENTORY_CHECK):
            target = SECTION_TRANSITIONS.fire(
                status, SectionEvent.QUEUE_INVENTORY_CHECK, f"{item.id}:{section.value}"
            )
            repository.set_section_status(records, section, target)
            queued.append(section.value)

    item.replace_section_records(records)
    item.status = new_status
    repository.refresh_order_status(session, item.order)
    repository.add_item_timeline(
        session, item, "Sent to inventory check", user_id=user_id, details={"sections": queued}
    )
    session.flush()
    log_operation(
        logger, "send_to_inventory_check", "success", order_item_id=item.id, sections=queued
    )
    return item


def send_to_inventory_check(
    order_item_id: int, user_id: Optional[int] = None, session: Session = None
) -> OrderItem:
    """
    Move an order item into INVENTORY_CHECK.

    Legal from RECEIVED, and from AWAITING_MATERIAL so an item can be
    re-checked after stock arrives. Sections that have not reached a packet
    are queued as PENDING_INVENTORY_CHECK.

    Raises:
        NotFoundError: If order item not found
        StateConflictError: If the item is in any other status
    """
    if session is not None:
        return _send_to_inventory_check_impl(order_item_id, user_id, session)

    with session_scope() as session:
        return _send_to_inventory_check_impl(order_item_id, user_id, session)


# =============================================================================
# Queries
# =============================================================================


def get_order(order_id: int, session: Session = None) -> Order:
    """Get an order by ID, raising NotFoundError if missing."""
    if session is not None:
        return repository.get_order(session, order_id)

    with session_scope() as session:
        return repository.get_order(session, order_id)


def get_order_item(order_item_id: int, session: Session = None) -> OrderItem:
    """Get an order item by ID, raising NotFoundError if missing."""
    if session is not None:
        return repository.get_order_item(session, order_item_id)

    with session_scope() as session:
        return repository.get_order_item(session, order_item_id)


def get_order_items(order_id: int, session: Session = None) -> List[OrderItem]:
    """Items of an order in creation order."""

    def _query(session: Session) -> List[OrderItem]:
        order = repository.get_order(session, order_id)
        return (
            session.query(OrderItem)
            .filter(OrderItem.order_id == order.id)
            .order_by(OrderItem.id)
            .all()
        )

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)


def get_item_timeline(order_item_id: int, session: Session = None) -> List[Dict[str, Any]]:
    """
    Timeline of an order item, oldest first, as plain dicts.

    Raises:
        NotFoundError: If order item not found
    """

    def _query(session: Session) -> List[Dict[str, Any]]:
        repository.get_order_item(session, order_item_id)
        entries = (
            session.query(TimelineEntry)
            .filter(TimelineEntry.order_item_id == order_item_id)
            .order_by(TimelineEntry.id)
            .all()
        )
        return [entry.to_dict() for entry in entries]

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)


def get_order_timeline(order_id: int, session: Session = None) -> List[Dict[str, Any]]:
    """Every timeline entry of an order and its items, oldest first."""

    def _query(session: Session) -> List[Dict[str, Any]]:
        repository.get_order(session, order_id)
        entries = (
            session.query(TimelineEntry)
            .filter(TimelineEntry.order_id == order_id)
            .order_by(TimelineEntry.id)
            .all()
        )
        return [entry.to_dict() for entry in entries]

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)
