"""BOM Service - versioned bills of materials per product size.

Business rules:
- Versions increase monotonically per (product, size), starting at 1
- At most one BOM per (product, size) is active
- Activating a BOM deactivates only its siblings of the same product and size
- An active BOM cannot be deleted
- Custom sizes carry their BOM on the order item, never here

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from src.models import BOM, BOMItem, Section
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import StateConflictError, ValidationError
from src.services.logging_utils import get_service_logger, log_operation
from src.utils.constants import QUANTITY_DECIMAL_PLACES, STANDARD_SIZES

logger = get_service_logger(__name__)


def default_bom_name(size: str, version: int) -> str:
    return f"Size {size} - Version {version}"


def _normalize_size(size: str) -> str:
    size = (size or "").strip().upper()
    if size not in STANDARD_SIZES:
        raise ValidationError(
            [f"Size must be one of {', '.join(STANDARD_SIZES)} (custom sizes use a custom BOM)"]
        )
    return size


# =============================================================================
# Create
# =============================================================================


def _create_bom_impl(
    product_id: int,
    size: str,
    name: Optional[str],
    notes: Optional[str],
    activate: bool,
    session: Session,
) -> BOM:
    size = _normalize_size(size)
    repository.get_product(session, product_id)

    latest = (
        session.query(func.max(BOM.version))
        .filter(BOM.product_id == product_id, BOM.size == size)
        .scalar()
    )
    version = (latest or 0) + 1

    bom = BOM(
        product_id=product_id,
        size=size,
        version=version,
        name=(name or "").strip() or default_bom_name(size, version),
        notes=notes,
        is_active=False,
    )
    session.add(bom)
    session.flush()

    if activate:
        _activate_bom_impl(bom.id, session)

    log_operation(
        logger,
        "create_bom",
        "success",
        bom_id=bom.id,
        product_id=product_id,
        size=size,
        version=version,
    )
    return bom


def create_bom(
    product_id: int,
    size: str,
    name: Optional[str] = None,
    notes: Optional[str] = None,
    activate: bool = False,
    session: Session = None,
) -> BOM:
    """
    Create the next BOM version for a product size.

    Args:
        product_id: Product the BOM belongs to
        size: Standard size code (XS..XXL)
        name: Display name (defaults to "Size {size} - Version {version}")
        notes: Free-form notes
        activate: Make the new version the active one
        session: Optional session for transaction sharing

    Returns:
        The created BOM, with version = previous max + 1

    Raises:
        ValidationError: If the size is not a standard size
        NotFoundError: If product not found
    """
    if session is not None:
        return _create_bom_impl(product_id, size, name, notes, activate, session)

    with session_scope() as session:
        return _create_bom_impl(product_id, size, name, notes, activate, session)


def _add_bom_item_impl(
    bom_id: int,
    inventory_item_id: int,
    quantity: float,
    piece: str,
    unit: Optional[str],
    session: Session,
) -> BOMItem:
    bom = repository.get_bom(session, bom_id)
    inventory_item = repository.get_inventory_item(session, inventory_item_id)

    errors = []
    if quantity is None or quantity <= 0:
        errors.append("Quantity per unit must be greater than zero")
    try:
        section = Section.parse(piece)
    except ValueError as exc:
        errors.append(str(exc))
        section = None
    if section is not None:
        product = bom.product
        known = set(product.base_pieces or []) | set(product.add_on_pieces or [])
        if section.value not in known:
            errors.append(f"Piece '{section.value}' is not part of product {product.sku}")
    if errors:
        raise ValidationError(errors)

    line = BOMItem(
        bom_id=bom.id,
        inventory_item_id=inventory_item.id,
        quantity=round(float(quantity), QUANTITY_DECIMAL_PLACES),
        unit=unit or inventory_item.unit,
        piece=section.value,
    )
    session.add(line)
    session.flush()
    log_operation(
        logger,
        "add_bom_item",
        "success",
        bom_id=bom.id,
        inventory_item_id=inventory_item.id,
        piece=section.value,
    )
    return line


def add_bom_item(
    bom_id: int,
    inventory_item_id: int,
    quantity: float,
    piece: str,
    unit: Optional[str] = None,
    session: Session = None,
) -> BOMItem:
    """
    Add a material line to a BOM.

    Args:
        bom_id: BOM to extend
        inventory_item_id: Material consumed
        quantity: Quantity per garment unit
        piece: Section the material is for (must belong to the product)
        unit: Unit of measure (defaults to the inventory item's unit)
        session: Optional session for transaction sharing

    Raises:
        NotFoundError: If the BOM or inventory item does not exist
        ValidationError: If quantity is not positive or the piece is unknown
    """
    if session is not None:
        return _add_bom_item_impl(bom_id, inventory_item_id, quantity, piece, unit, session)

    with session_scope() as session:
        return _add_bom_item_impl(bom_id, inventory_item_id, quantity, piece, unit, session)


# =============================================================================
# Activation
# =============================================================================


def _activate_bom_impl(bom_id: int, session: Session) -> BOM:
    bom = repository.get_bom(session, bom_id)
    if bom.is_active:
        return bom

    siblings = (
        session.query(BOM)
        .filter(
            BOM.product_id == bom.product_id,
            BOM.size == bom.size,
            BOM.id != bom.id,
            BOM.is_active.is_(True),
        )
        .all()
    )
    for sibling in siblings:
        sibling.is_active = False
    # The partial unique index would reject two active rows mid-update
    session.flush()

    bom.is_active = True
    session.flush()
    log_operation(
        logger,
        "activate_bom",
        "success",
        bom_id=bom.id,
        product_id=bom.product_id,
        size=bom.size,
        deactivated=[s.id for s in siblings],
    )
    return bom


def activate_bom(bom_id: int, session: Session = None) -> BOM:
    """
    Make a BOM the active one for its (product, size).

    Transaction boundary: the sibling deactivation and the activation are
    one unit of work.

    Raises:
        NotFoundError: If BOM not found
    """
    if session is not None:
        return _activate_bom_impl(bom_id, session)

    with session_scope() as session:
        return _activate_bom_impl(bom_id, session)


def _delete_bom_impl(bom_id: int, session: Session) -> None:
    bom = repository.get_bom(session, bom_id)
    if bom.is_active:
        log_operation(
            logger, "delete_bom", "rejected_active", level=logging.WARNING, bom_id=bom_id
        )
        raise StateConflictError("BOM", bom_id, "active", ["inactive"], "delete BOM")

    session.delete(bom)
    session.flush()
    log_operation(logger, "delete_bom", "success", bom_id=bom_id)


def delete_bom(bom_id: int, session: Session = None) -> None:
    """
    Delete an inactive BOM and its lines.

    Raises:
        NotFoundError: If BOM not found
        StateConflictError: If the BOM is active
    """
    if session is not None:
        return _delete_bom_impl(bom_id, session)

    with session_scope() as session:
        return _delete_bom_impl(bom_id, session)


# =============================================================================
# Queries
# =============================================================================


def get_active_bom(product_id: int, size: str, session: Session = None) -> Optional[BOM]:
    """The active BOM for (product, size), or None when there is none."""
    if session is not None:
        return repository.get_active_bom(session, product_id, size)

    with session_scope() as session:
        return repository.get_active_bom(session, product_id, size)


def list_boms(product_id: int, size: Optional[str] = None, session: Session = None) -> List[BOM]:
    """BOMs of a product, ordered by size then version."""

    def _query(session: Session) -> List[BOM]:
        query = session.query(BOM).filter(BOM.product_id == product_id)
        if size is not None:
            query = query.filter(BOM.size == size.strip().upper())
        return query.order_by(BOM.size, BOM.version).all()

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)
