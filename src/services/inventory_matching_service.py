"""
Inventory Matching Service.

Matches an order item's bill of materials against current stock:

1. Relevant pieces are the item's included base pieces and selected
   add-ons, minus any section already past packet verification.
2. The BOM is the item's custom BOM for custom sizes, otherwise the
   single active BOM for (product, size). No BOM means no requirements.
3. BOM lines for relevant pieces are consolidated per inventory item,
   summing quantity_per_unit * order quantity.
4. Each requirement is classified SUFFICIENT or SHORTAGE against the
   current remaining stock.
5. Prior procurement demands for the item are replaced by one demand per
   shortage line.
6. The item moves to READY_FOR_PRODUCTION (no shortage) or
   AWAITING_MATERIAL; each checked section moves to INVENTORY_PASSED or
   AWAITING_MATERIAL depending on whether any of its materials is short.

The check never changes stock and is idempotent: with unchanged stock, a
re-run reproduces the same demand set and statuses.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from src.models import (
    InventoryItem,
    MaterialStatus,
    OrderItem,
    OrderItemStatus,
    ProcurementDemand,
    ProcurementDemandStatus,
    Section,
)
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import StateConflictError
from src.services.logging_utils import get_service_logger, log_operation
from src.services.transitions import (
    ORDER_ITEM_TRANSITIONS,
    SECTION_TRANSITIONS,
    OrderItemEvent,
    SectionEvent,
    is_beyond_packet_verification,
)
from src.utils.constants import CUSTOM_SIZE, QUANTITY_DECIMAL_PLACES
from src.utils.datetime_utils import utc_now

logger = get_service_logger(__name__)


@dataclass
class BomLine:
    """One BOM line resolved for an order item."""

    inventory_item_id: int
    quantity_per_unit: float
    unit: str
    section: Section


@dataclass
class MaterialRequirement:
    """Consolidated need for one inventory item."""

    inventory_item_id: int
    name: str
    sku: str
    unit: str
    rack_location: str
    required_qty: float
    available_qty: float
    shortage_qty: float  # max(0, required - available)
    status: MaterialStatus
    pieces: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class InventoryCheckResult:
    """Outcome of one inventory check."""

    order_item_id: int
    requirements: List[MaterialRequirement]
    item_status: OrderItemStatus
    sections_passed: List[str]
    sections_short: List[str]

    @property
    def shortages(self) -> List[MaterialRequirement]:
        return [r for r in self.requirements if r.status == MaterialStatus.SHORTAGE]

    @property
    def has_shortage(self) -> bool:
        return bool(self.shortages)


def _round_qty(value: float) -> float:
    return round(value, QUANTITY_DECIMAL_PLACES)


# =============================================================================
# BOM resolution
# =============================================================================


def resolve_bom_lines(session: Session, item: OrderItem) -> List[BomLine]:
    """
    BOM lines that apply to an order item, for all of its pieces.

    Custom sizes use the item's own custom BOM; other sizes use the active
    BOM for (product, size). Returns an empty list when there is no BOM.
    """
    if item.size == CUSTOM_SIZE:
        return [
            BomLine(
                inventory_item_id=line["inventory_item_id"],
                quantity_per_unit=float(line["quantity"]),
                unit=line["unit"],
                section=Section.parse(line["piece"]),
            )
            for line in item.custom_bom or []
        ]

    bom = repository.get_active_bom(session, item.product_id, item.size)
    if bom is None:
        return []
    return [
        BomLine(
            inventory_item_id=line.inventory_item_id,
            quantity_per_unit=line.quantity,
            unit=line.unit,
            section=line.section,
        )
        for line in bom.items
    ]


def relevant_sections(item: OrderItem) -> List[Section]:
    """
    Included base pieces and selected add-ons that are still waiting on, or
    have just been through, an inventory check.

    Sections past packet verification already have their material and are
    never re-checked.
    """
    names = list(item.included_pieces or []) + list(item.add_on_pieces or [])
    statuses = item.section_status_map()
    sections = []
    for section in dict.fromkeys(Section.parse(name) for name in names):
        status = statuses.get(section)
        if status is None or is_beyond_packet_verification(status):
            continue
        if SECTION_TRANSITIONS.can_fire(status, SectionEvent.MATERIAL_PASSED):
            sections.append(section)
    return sections


def calculate_requirements(
    session: Session, item: OrderItem, sections: List[Section]
) -> List[MaterialRequirement]:
    """
    Consolidate BOM lines for ``sections`` per inventory item and compare
    each total against current stock.
    """
    wanted = set(sections)
    totals: Dict[int, float] = {}
    pieces: Dict[int, List[str]] = {}
    units: Dict[int, str] = {}
    for line in resolve_bom_lines(session, item):
        if line.section not in wanted:
            continue
        totals[line.inventory_item_id] = (
            totals.get(line.inventory_item_id, 0.0) + line.quantity_per_unit * item.quantity
        )
        units.setdefault(line.inventory_item_id, line.unit)
        contributing = pieces.setdefault(line.inventory_item_id, [])
        if line.section.value not in contributing:
            contributing.append(line.section.value)

    requirements = []
    for inventory_item_id in sorted(totals):
        stock = session.get(InventoryItem, inventory_item_id)
        required = _round_qty(totals[inventory_item_id])
        available = _round_qty(stock.remaining_stock if stock is not None else 0.0)
        shortage = _round_qty(max(0.0, required - available))
        requirements.append(
            MaterialRequirement(
                inventory_item_id=inventory_item_id,
                name=stock.name if stock is not None else f"Item {inventory_item_id}",
                sku=stock.sku if stock is not None else "",
                unit=units[inventory_item_id],
                rack_location=stock.rack_location if stock is not None else "",
                required_qty=required,
                available_qty=available,
                shortage_qty=shortage,
                status=MaterialStatus.SHORTAGE if shortage > 0 else MaterialStatus.SUFFICIENT,
                pieces=pieces[inventory_item_id],
            )
        )
    return requirements


# =============================================================================
# Inventory check
# =============================================================================


def _replace_procurement_demands(
    session: Session, item: OrderItem, requirements: List[MaterialRequirement]
) -> List[ProcurementDemand]:
    session.query(ProcurementDemand).filter(
        ProcurementDemand.order_item_id == item.id
    ).delete(synchronize_session="fetch")

    demands = []
    for requirement in requirements:
        if requirement.status != MaterialStatus.SHORTAGE:
            continue
        demand = ProcurementDemand(
            order_item_id=item.id,
            inventory_item_id=requirement.inventory_item_id,
            required_qty=requirement.required_qty,
            available_qty=requirement.available_qty,
            shortage_qty=requirement.shortage_qty,
            unit=requirement.unit,
            pieces=list(requirement.pieces),
            status=ProcurementDemandStatus.OPEN,
        )
        session.add(demand)
        demands.append(demand)
    return demands


def _run_inventory_check_impl(
    order_item_id: int, user_id: Optional[int], session: Session
) -> InventoryCheckResult:
    item = repository.get_order_item(session, order_item_id)

    # Re-checks are only legal until a packet exists
    if item.status != OrderItemStatus.INVENTORY_CHECK and (
        repository.find_packet_for_item(session, item.id) is not None
        or not ORDER_ITEM_TRANSITIONS.can_fire(item.status, OrderItemEvent.INVENTORY_PASSED)
    ):
        log_operation(
            logger,
            "run_inventory_check",
            "state_conflict",
            level=logging.WARNING,
            order_item_id=item.id,
            status=item.status.value,
        )
        raise StateConflictError(
            "OrderItem",
            item.id,
            item.status,
            [OrderItemStatus.INVENTORY_CHECK],
            "run inventory check",
        )

    sections = relevant_sections(item)
    requirements = calculate_requirements(session, item, sections)
    short_pieces = {
        piece
        for requirement in requirements
        if requirement.status == MaterialStatus.SHORTAGE
        for piece in requirement.pieces
    }

    event = OrderItemEvent.INVENTORY_SHORT if short_pieces else OrderItemEvent.INVENTORY_PASSED
    new_status = ORDER_ITEM_TRANSITIONS.fire(item.status, event, item.id)

    records = item.copy_section_records()
    current = item.section_status_map()
    checked_at = utc_now()
    passed, short = [], []
    for section in sections:
        if section.value in short_pieces:
            section_event = SectionEvent.MATERIAL_SHORT
            short.append(section.value)
        else:
            section_event = SectionEvent.MATERIAL_PASSED
            passed.append(section.value)
        target = SECTION_TRANSITIONS.fire(
            current[section], section_event, f"{item.id}:{section.value}"
        )
        repository.set_section_status(
            records, section, target, inventory_checked_at=checked_at
        )

    demands = _replace_procurement_demands(session, item, requirements)

    item.replace_section_records(records)
    item.material_requirements = [r.to_dict() for r in requirements]
    item.status = new_status
    repository.refresh_order_status(session, item.order)
    repository.add_item_timeline(
        session,
        item,
        (
            "Inventory check: materials short"
            if short_pieces
            else "Inventory check: all materials available"
        ),
        user_id=user_id,
        details={
            "sections_passed": passed,
            "sections_short": short,
            "shortages": [
                {"inventory_item_id": d.inventory_item_id, "shortage_qty": d.shortage_qty}
                for d in demands
            ],
        },
    )
    session.flush()

    log_operation(
        logger,
        "run_inventory_check",
        "shortage" if short_pieces else "sufficient",
        order_item_id=item.id,
        status=new_status.value,
        demand_count=len(demands),
    )
    return InventoryCheckResult(
        order_item_id=item.id,
        requirements=requirements,
        item_status=new_status,
        sections_passed=passed,
        sections_short=short,
    )


def run_inventory_check(
    order_item_id: int, user_id: Optional[int] = None, session: Session = None
) -> InventoryCheckResult:
    """
    Run the inventory check for an order item.

    Transaction boundary: the procurement demand replacement and every
    status change commit together or not at all.

    Args:
        order_item_id: Item in INVENTORY_CHECK (or re-checked before it has a packet)
        user_id: Acting worker for the timeline
        session: Optional session for transaction sharing

    Returns:
        InventoryCheckResult with every consolidated requirement

    Raises:
        NotFoundError: If order item not found
        StateConflictError: If the item is not in INVENTORY_CHECK
    """
    if session is not None:
        return _run_inventory_check_impl(order_item_id, user_id, session)

    with session_scope() as session:
        return _run_inventory_check_impl(order_item_id, user_id, session)
