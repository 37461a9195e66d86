"""
Dispatch Service - shipping and closing orders.

Orders leave the workflow in two steps. Dispatch hands every item to a
courier once the order is READY_FOR_DISPATCH; completion closes the order,
its items and their sections after delivery. Both steps cascade the same
status to every item and record a timeline entry per item.
"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from src.models import Order, OrderStatus
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import StateConflictError, ValidationError
from src.services.logging_utils import get_service_logger, log_operation
from src.services.transitions import (
    ORDER_ITEM_TRANSITIONS,
    ORDER_TRANSITIONS,
    SECTION_TRANSITIONS,
    OrderEvent,
    OrderItemEvent,
    SectionEvent,
)
from src.utils.constants import COURIERS
from src.utils.datetime_utils import utc_now

logger = get_service_logger(__name__)


def _fire_order(order: Order, event: OrderEvent, operation: str):
    try:
        return ORDER_TRANSITIONS.fire(order.status, event, order.id)
    except StateConflictError:
        log_operation(
            logger,
            operation,
            "state_conflict",
            level=logging.WARNING,
            order_id=order.id,
            status=order.status.value,
        )
        raise


def _dispatch_order_impl(
    order_id: int,
    courier: str,
    tracking_number: str,
    dispatch_date: Optional[date],
    notes: Optional[str],
    user_id: Optional[int],
    session: Session,
) -> Order:
    errors = []
    courier = (courier or "").strip().lower()
    if courier not in COURIERS:
        errors.append(f"Unknown courier '{courier}'; expected one of {', '.join(COURIERS)}")
    if not tracking_number or not tracking_number.strip():
        errors.append("Tracking number is required")
    if dispatch_date is None:
        errors.append("Dispatch date is required")
    if errors:
        raise ValidationError(errors)

    order = repository.get_order(session, order_id)
    order_status = _fire_order(order, OrderEvent.DISPATCH, "dispatch_order")
    item_statuses = {
        item.id: ORDER_ITEM_TRANSITIONS.fire(item.status, OrderItemEvent.DISPATCH, item.id)
        for item in order.items
    }

    now = utc_now()
    order.dispatch_data = {
        "courier": courier,
        "tracking_number": tracking_number.strip(),
        "dispatch_date": dispatch_date.isoformat(),
        "dispatched_by": user_id,
        "notes": notes,
    }
    order.dispatched_at = now
    order.status = order_status

    for item in order.items:
        item.status = item_statuses[item.id]
        repository.add_item_timeline(
            session,
            item,
            f"Dispatched via {courier} ({tracking_number.strip()})",
            user_id=user_id,
            details={"courier": courier, "tracking_number": tracking_number.strip()},
        )
    repository.add_timeline_entry(
        session,
        order.id,
        f"Order dispatched via {courier}",
        user_id=user_id,
        details=order.dispatch_data,
    )
    session.flush()

    log_operation(
        logger,
        "dispatch_order",
        "success",
        order_id=order.id,
        courier=courier,
        items=len(order.items),
    )
    return order


def dispatch_order(
    order_id: int,
    courier: str,
    tracking_number: str,
    dispatch_date: Optional[date],
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = None,
) -> Order:
    """
    Hand a ready order to a courier.

    Transaction boundary: the order, every item and the timeline entries
    commit together.

    Args:
        order_id: Order to dispatch
        courier: One of COURIERS
        tracking_number: Courier tracking reference
        dispatch_date: Date the parcel left
        notes: Optional dispatch notes
        user_id: Acting worker
        session: Optional session for transaction sharing

    Returns:
        The dispatched Order

    Raises:
        ValidationError: If the courier is unknown or tracking/date is missing
        NotFoundError: If the order does not exist
        StateConflictError: If the order is not READY_FOR_DISPATCH
    """
    if session is not None:
        return _dispatch_order_impl(
            order_id, courier, tracking_number, dispatch_date, notes, user_id, session
        )

    with session_scope() as session:
        return _dispatch_order_impl(
            order_id, courier, tracking_number, dispatch_date, notes, user_id, session
        )


def _complete_order_impl(order_id: int, user_id: Optional[int], session: Session) -> Order:
    order = repository.get_order(session, order_id)
    order_status = _fire_order(order, OrderEvent.COMPLETE, "complete_order")

    for item in order.items:
        target = ORDER_ITEM_TRANSITIONS.fire(item.status, OrderItemEvent.COMPLETE, item.id)
        records = item.copy_section_records()
        for section, status in item.section_status_map().items():
            section_target = SECTION_TRANSITIONS.fire(
                status, SectionEvent.COMPLETE_ORDER, f"{item.id}:{section.value}"
            )
            repository.set_section_status(records, section, section_target)
        item.replace_section_records(records)
        item.status = target
        repository.add_item_timeline(session, item, "Order item completed", user_id=user_id)

    order.status = order_status
    order.completed_at = utc_now()
    repository.add_timeline_entry(session, order.id, "Order completed", user_id=user_id)
    session.flush()

    log_operation(logger, "complete_order", "success", order_id=order.id, items=len(order.items))
    return order


def complete_order(order_id: int, user_id: Optional[int] = None, session: Session = None) -> Order:
    """
    Close a dispatched order, its items and every section.

    Raises:
        NotFoundError: If the order does not exist
        StateConflictError: If the order is not DISPATCHED
    """
    if session is not None:
        return _complete_order_impl(order_id, user_id, session)

    with session_scope() as session:
        return _complete_order_impl(order_id, user_id, session)


def list_ready_for_dispatch(session: Session = None):
    """Orders whose every item is ready to ship, oldest first."""

    def _impl(session: Session):
        return (
            session.query(Order)
            .filter(Order.status == OrderStatus.READY_FOR_DISPATCH)
            .order_by(Order.created_at, Order.id)
            .all()
        )

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)
