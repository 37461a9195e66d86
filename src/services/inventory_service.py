"""Inventory Service - stocked materials and procurement demands.

Covers the stock side of the workflow that is not driven by an order item:
- Creating inventory items and receiving stock
- The stock movement ledger
- Low-stock reporting
- Procurement demand status (OPEN -> ORDERED -> RECEIVED, or CANCELLED)

Stock consumption and release happen inside the packet and dyeing
workflows, in the same transaction as the status change that causes them.
Every change, wherever it happens, leaves one StockMovement row.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

import logging
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import Session

from src.models import (
    InventoryItem,
    ProcurementDemand,
    ProcurementDemandStatus,
    StockMovement,
    StockMovementReason,
)
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import NotFoundError, StateConflictError, ValidationError
from src.services.logging_utils import get_service_logger, log_operation
from src.utils.constants import DEFAULT_RACK_LOCATION, QUANTITY_DECIMAL_PLACES

logger = get_service_logger(__name__)

# Valid demand transitions: from_status -> set of allowed to_statuses
VALID_DEMAND_TRANSITIONS: Dict[ProcurementDemandStatus, Set[ProcurementDemandStatus]] = {
    ProcurementDemandStatus.OPEN: {
        ProcurementDemandStatus.ORDERED,
        ProcurementDemandStatus.CANCELLED,
    },
    ProcurementDemandStatus.ORDERED: {
        ProcurementDemandStatus.RECEIVED,
        ProcurementDemandStatus.CANCELLED,
    },
    ProcurementDemandStatus.RECEIVED: set(),
    ProcurementDemandStatus.CANCELLED: set(),
}


def _round_qty(value: float) -> float:
    return round(float(value), QUANTITY_DECIMAL_PLACES)


# =============================================================================
# Inventory items
# =============================================================================


def _create_inventory_item_impl(
    name: str,
    sku: str,
    unit: str,
    remaining_stock: float,
    rack_location: Optional[str],
    min_stock_level: float,
    session: Session,
) -> InventoryItem:
    errors = []
    if not name or not name.strip():
        errors.append("Inventory item name is required")
    if not sku or not sku.strip():
        errors.append("Inventory item SKU is required")
    if not unit or not unit.strip():
        errors.append("Unit is required")
    if remaining_stock is None or remaining_stock < 0:
        errors.append("Remaining stock cannot be negative")
    if min_stock_level is None or min_stock_level < 0:
        errors.append("Minimum stock level cannot be negative")
    if sku and session.query(InventoryItem).filter(InventoryItem.sku == sku.strip()).first():
        errors.append(f"Inventory item with SKU '{sku.strip()}' already exists")
    if errors:
        raise ValidationError(errors)

    item = InventoryItem(
        name=name.strip(),
        sku=sku.strip(),
        unit=unit.strip(),
        remaining_stock=0.0,
        rack_location=(rack_location or "").strip() or DEFAULT_RACK_LOCATION,
        min_stock_level=_round_qty(min_stock_level),
    )
    session.add(item)
    session.flush()
    if remaining_stock > 0:
        repository.adjust_stock(
            session, item, _round_qty(remaining_stock), StockMovementReason.OPENING_BALANCE
        )
        session.flush()
    log_operation(
        logger, "create_inventory_item", "success", inventory_item_id=item.id, sku=item.sku
    )
    return item


def create_inventory_item(
    name: str,
    sku: str,
    unit: str,
    remaining_stock: float = 0.0,
    rack_location: Optional[str] = None,
    min_stock_level: float = 0.0,
    session: Session = None,
) -> InventoryItem:
    """
    Create a stocked material.

    Args:
        name: Material name
        sku: Unique stock code
        unit: Unit the stock is counted in
        remaining_stock: Opening stock
        rack_location: Where pickers find it (defaults to "TBD")
        min_stock_level: Threshold for low-stock reporting
        session: Optional session for transaction sharing

    Returns:
        Created InventoryItem

    Raises:
        ValidationError: On blank fields, negative quantities or duplicate SKU
    """
    if session is not None:
        return _create_inventory_item_impl(
            name, sku, unit, remaining_stock, rack_location, min_stock_level, session
        )

    with session_scope() as session:
        return _create_inventory_item_impl(
            name, sku, unit, remaining_stock, rack_location, min_stock_level, session
        )


def _receive_stock_impl(
    inventory_item_id: int,
    quantity: float,
    user_id: Optional[int],
    notes: Optional[str],
    session: Session,
) -> InventoryItem:
    if quantity is None or quantity <= 0:
        raise ValidationError(["Received quantity must be greater than zero"])

    item = repository.get_inventory_item(session, inventory_item_id)
    repository.adjust_stock(
        session,
        item,
        _round_qty(quantity),
        StockMovementReason.RECEIPT,
        user_id=user_id,
        notes=notes,
    )
    session.flush()
    log_operation(
        logger,
        "receive_stock",
        "success",
        inventory_item_id=item.id,
        quantity=quantity,
        remaining_stock=item.remaining_stock,
    )
    return item


def receive_stock(
    inventory_item_id: int,
    quantity: float,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    session: Session = None,
) -> InventoryItem:
    """
    Add received stock to an inventory item.

    Items waiting on this material are not re-checked automatically; send
    them back to inventory check once the stock is in.

    Raises:
        ValidationError: If quantity is not positive
        NotFoundError: If inventory item not found
    """
    if session is not None:
        return _receive_stock_impl(inventory_item_id, quantity, user_id, notes, session)

    with session_scope() as session:
        return _receive_stock_impl(inventory_item_id, quantity, user_id, notes, session)


def get_inventory_item(inventory_item_id: int, session: Session = None) -> InventoryItem:
    """Get an inventory item by ID, raising NotFoundError if missing."""
    if session is not None:
        return repository.get_inventory_item(session, inventory_item_id)

    with session_scope() as session:
        return repository.get_inventory_item(session, inventory_item_id)


def list_stock_movements(
    inventory_item_id: Optional[int] = None,
    order_item_id: Optional[int] = None,
    reason: Optional[StockMovementReason] = None,
    session: Session = None,
) -> List[StockMovement]:
    """
    Stock movements, oldest first, optionally filtered.

    Args:
        inventory_item_id: Only movements of this material
        order_item_id: Only movements made for this order item
        reason: Only movements with this reason
        session: Optional session for transaction sharing

    Raises:
        NotFoundError: If inventory_item_id is given and does not exist
    """

    def _query(session: Session) -> List[StockMovement]:
        query = session.query(StockMovement)
        if inventory_item_id is not None:
            repository.get_inventory_item(session, inventory_item_id)
            query = query.filter(StockMovement.inventory_item_id == inventory_item_id)
        if order_item_id is not None:
            query = query.filter(StockMovement.order_item_id == order_item_id)
        if reason is not None:
            query = query.filter(StockMovement.reason == reason)
        return query.order_by(StockMovement.id).all()

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)


def list_low_stock(session: Session = None) -> List[InventoryItem]:
    """Inventory items at or below their minimum stock level, by name."""

    def _query(session: Session) -> List[InventoryItem]:
        return (
            session.query(InventoryItem)
            .filter(InventoryItem.remaining_stock <= InventoryItem.min_stock_level)
            .order_by(InventoryItem.name)
            .all()
        )

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)


# =============================================================================
# Procurement demands
# =============================================================================


def list_procurement_demands(
    order_item_id: Optional[int] = None,
    status: Optional[ProcurementDemandStatus] = None,
    session: Session = None,
) -> List[ProcurementDemand]:
    """
    List procurement demands, optionally filtered.

    Args:
        order_item_id: Only demands raised for this order item
        status: Only demands in this status
        session: Optional session for transaction sharing

    Returns:
        Demands ordered by id
    """

    def _query(session: Session) -> List[ProcurementDemand]:
        query = session.query(ProcurementDemand)
        if order_item_id is not None:
            query = query.filter(ProcurementDemand.order_item_id == order_item_id)
        if status is not None:
            query = query.filter(ProcurementDemand.status == ProcurementDemandStatus(status))
        return query.order_by(ProcurementDemand.id).all()

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)


def _update_demand_status_impl(
    demand_id: int,
    new_status: ProcurementDemandStatus,
    notes: Optional[str],
    session: Session,
) -> ProcurementDemand:
    demand = session.get(ProcurementDemand, demand_id)
    if demand is None:
        raise NotFoundError("ProcurementDemand", demand_id)

    new_status = ProcurementDemandStatus(new_status)
    allowed = {
        status
        for status, targets in VALID_DEMAND_TRANSITIONS.items()
        if new_status in targets
    }
    if demand.status not in allowed:
        log_operation(
            logger,
            "update_demand_status",
            "rejected",
            level=logging.WARNING,
            demand_id=demand_id,
            current_status=demand.status.value,
            requested_status=new_status.value,
        )
        raise StateConflictError(
            "ProcurementDemand",
            demand_id,
            demand.status,
            sorted(s.value for s in allowed),
            f"mark demand {new_status.value.lower()}",
        )

    demand.status = new_status
    if notes:
        demand.notes = notes
    session.flush()
    log_operation(
        logger,
        "update_demand_status",
        "success",
        demand_id=demand_id,
        status=new_status.value,
    )
    return demand


def update_demand_status(
    demand_id: int,
    new_status: ProcurementDemandStatus,
    notes: Optional[str] = None,
    session: Session = None,
) -> ProcurementDemand:
    """
    Move a procurement demand along its lifecycle.

    Valid transitions:
    - OPEN -> ORDERED or CANCELLED
    - ORDERED -> RECEIVED or CANCELLED

    Raises:
        NotFoundError: If demand not found
        StateConflictError: If the transition is not allowed
    """
    if session is not None:
        return _update_demand_status_impl(demand_id, new_status, notes, session)

    with session_scope() as session:
        return _update_demand_status_impl(demand_id, new_status, notes, session)
