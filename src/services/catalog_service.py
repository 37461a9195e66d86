"""Catalog Service - products and workers.

Provides creation and lookup for the reference data the workflow runs on:
- Products (garment designs with their pieces and routing flags)
- Workers (fabrication, dyeing, production, QA, sales, dispatch staff)

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from src.models import Product, Section, Worker, WorkerRole
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import NotFoundError, ValidationError
from src.services.logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)


# =============================================================================
# Workers
# =============================================================================


def _create_worker_impl(name: str, role: WorkerRole, session: Session) -> Worker:
    errors = []
    if not name or not name.strip():
        errors.append("Worker name is required")
    try:
        role = WorkerRole(role)
    except ValueError:
        errors.append(f"Unknown worker role: {role}")
    if errors:
        raise ValidationError(errors)

    worker = Worker(name=name.strip(), role=role, is_active=True)
    session.add(worker)
    session.flush()
    log_operation(logger, "create_worker", "success", worker_id=worker.id, role=role.value)
    return worker


def create_worker(name: str, role: WorkerRole, session: Session = None) -> Worker:
    """Create an active worker.

    Args:
        name: Display name
        role: WorkerRole (or its string value)
        session: Optional session for transaction sharing

    Returns:
        Created Worker

    Raises:
        ValidationError: If name is blank or role is unknown
    """
    if session is not None:
        return _create_worker_impl(name, role, session)

    with session_scope() as session:
        return _create_worker_impl(name, role, session)


def _set_worker_active_impl(worker_id: int, active: bool, session: Session) -> Worker:
    # get_worker rejects inactive workers, so look up directly
    worker = session.get(Worker, worker_id)
    if worker is None:
        raise NotFoundError("Worker", worker_id)
    worker.is_active = active
    session.flush()
    log_operation(logger, "set_worker_active", "success", worker_id=worker_id, active=active)
    return worker


def set_worker_active(worker_id: int, active: bool, session: Session = None) -> Worker:
    """Activate or deactivate a worker.

    Deactivated production heads drop out of round-robin assignment.

    Raises:
        NotFoundError: If worker not found
    """
    if session is not None:
        return _set_worker_active_impl(worker_id, active, session)

    with session_scope() as session:
        return _set_worker_active_impl(worker_id, active, session)


def list_workers(role: Optional[WorkerRole] = None, session: Session = None) -> List[Worker]:
    """List active workers, optionally filtered by role, ordered by id."""

    def _query(session: Session) -> List[Worker]:
        query = session.query(Worker).filter(Worker.is_active.is_(True))
        if role is not None:
            query = query.filter(Worker.role == WorkerRole(role))
        return query.order_by(Worker.id).all()

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)


# =============================================================================
# Products
# =============================================================================


def _normalize_pieces(values: Iterable, field: str, errors: List[str]) -> List[str]:
    pieces = []
    for value in values or []:
        try:
            section = Section.parse(value)
        except ValueError as exc:
            errors.append(f"{field}: {exc}")
            continue
        if section.value not in pieces:
            pieces.append(section.value)
    return pieces


def _create_product_impl(
    name: str,
    sku: str,
    base_pieces: Iterable,
    add_on_pieces: Iterable,
    requires_dyeing: bool,
    ready_stock_eligible: bool,
    session: Session,
) -> Product:
    errors = []
    if not name or not name.strip():
        errors.append("Product name is required")
    if not sku or not sku.strip():
        errors.append("Product SKU is required")
    base = _normalize_pieces(base_pieces, "base_pieces", errors)
    add_ons = _normalize_pieces(add_on_pieces, "add_on_pieces", errors)
    if not base and not errors:
        errors.append("A product needs at least one base piece")
    overlap = set(base) & set(add_ons)
    if overlap:
        errors.append(f"Pieces cannot be both base and add-on: {', '.join(sorted(overlap))}")
    if sku and session.query(Product).filter(Product.sku == sku.strip()).first():
        errors.append(f"Product with SKU '{sku.strip()}' already exists")
    if errors:
        raise ValidationError(errors)

    product = Product(
        name=name.strip(),
        sku=sku.strip(),
        base_pieces=base,
        add_on_pieces=add_ons,
        requires_dyeing=requires_dyeing,
        ready_stock_eligible=ready_stock_eligible,
        is_active=True,
    )
    session.add(product)
    session.flush()
    log_operation(logger, "create_product", "success", product_id=product.id, sku=product.sku)
    return product


def create_product(
    name: str,
    sku: str,
    base_pieces: Iterable,
    add_on_pieces: Iterable = (),
    requires_dyeing: bool = True,
    ready_stock_eligible: bool = False,
    session: Session = None,
) -> Product:
    """Create a garment product.

    Args:
        name: Product name
        sku: Unique product code
        base_pieces: Pieces every order of this product includes
        add_on_pieces: Optional pieces a customer can add
        requires_dyeing: Route approved packets through dyeing
        ready_stock_eligible: Allow the ready-stock path (skips production)
        session: Optional session for transaction sharing

    Returns:
        Created Product

    Raises:
        ValidationError: On blank fields, unknown pieces or duplicate SKU
    """
    if session is not None:
        return _create_product_impl(
            name, sku, base_pieces, add_on_pieces, requires_dyeing, ready_stock_eligible, session
        )

    with session_scope() as session:
        return _create_product_impl(
            name, sku, base_pieces, add_on_pieces, requires_dyeing, ready_stock_eligible, session
        )


def get_product(product_id: int, session: Session = None) -> Product:
    """Get a product by ID.

    Raises:
        NotFoundError: If product not found
    """
    if session is not None:
        return repository.get_product(session, product_id)

    with session_scope() as session:
        return repository.get_product(session, product_id)
