"""
Packet Service - fabrication packet assembly and verification.

A packet is the material-picking task for one order item. Its lifecycle:

    UNASSIGNED -> ASSIGNED -> IN_PROGRESS -> COMPLETED -> APPROVED
                     ^                           |
                     +---------- REJECTED -------+

A packet is partial when some sections were short of material at creation
time. Those sections wait in ``sections_pending`` and are added later as a
new round (or join the open round while it is unverified); approval and
rejection of a round > 1 only touch that round's sections and pick-list
lines.

Stock is consumed when the packet is completed (every picked line not yet
consumed) and released again when a rejection resets a consumed line. Both
directions are recorded as stock movements.

Sections already past packet verification (dyeing or later) are never
moved back by approval or rejection.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from src.models import (
    InventoryItem,
    OrderItem,
    Packet,
    PacketStatus,
    PickListItem,
    Section,
    SectionStatus,
    StockMovementReason,
)
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import (
    IncompletePreconditionError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from src.services.inventory_matching_service import resolve_bom_lines
from src.services.logging_utils import get_service_logger, log_operation
from src.services.transitions import (
    ORDER_ITEM_TRANSITIONS,
    PACKET_TRANSITIONS,
    SECTION_TRANSITIONS,
    OrderItemEvent,
    PacketEvent,
    SectionEvent,
    is_beyond_packet_verification,
)
from src.utils.constants import PACKET_REJECTION_REASONS, QUANTITY_DECIMAL_PLACES
from src.utils.datetime_utils import utc_now

logger = get_service_logger(__name__)


def _round_qty(value: float) -> float:
    return round(value, QUANTITY_DECIMAL_PLACES)


def _fire(packet: Packet, event: PacketEvent, operation: str) -> PacketStatus:
    """Next packet status for ``event``, logging and re-raising conflicts."""
    try:
        return PACKET_TRANSITIONS.fire(packet.status, event, packet.id)
    except StateConflictError:
        log_operation(
            logger,
            operation,
            "state_conflict",
            level=logging.WARNING,
            packet_id=packet.id,
            order_item_id=packet.order_item_id,
            status=packet.status.value,
        )
        raise


def _build_pick_lines(
    session: Session, item: OrderItem, sections: Iterable[Section], packet_round: int
) -> List[PickListItem]:
    """One pick-list line per (piece, inventory item) BOM line of ``sections``."""
    wanted = set(sections)
    lines = []
    for bom_line in resolve_bom_lines(session, item):
        if bom_line.section not in wanted:
            continue
        stock = repository.get_inventory_item(session, bom_line.inventory_item_id)
        lines.append(
            PickListItem(
                inventory_item_id=stock.id,
                name=stock.name,
                sku=stock.sku,
                required_qty=_round_qty(bom_line.quantity_per_unit * item.quantity),
                unit=bom_line.unit,
                rack_location=stock.rack_location,
                piece=bom_line.section.value,
                added_in_round=packet_round,
            )
        )
    return lines


def release_line_stock(
    session: Session,
    line: PickListItem,
    reason: StockMovementReason = StockMovementReason.PACKET_REJECTION_RELEASE,
    user_id: Optional[int] = None,
) -> float:
    """
    Return a consumed line's picked quantity to stock.

    Returns:
        The quantity released (0 when the line was not consumed)
    """
    if not line.is_consumed:
        return 0.0
    stock = repository.get_inventory_item(session, line.inventory_item_id)
    repository.adjust_stock(
        session,
        stock,
        line.picked_qty,
        reason,
        order_item_id=line.packet.order_item_id,
        packet_id=line.packet_id,
        user_id=user_id,
        notes=f"{line.piece}: {line.name}",
    )
    line.is_consumed = False
    return line.picked_qty


def _approval_event(item: OrderItem, is_ready_stock: bool) -> SectionEvent:
    product = item.product
    if is_ready_stock:
        if not product.ready_stock_eligible:
            raise ValidationError(
                [f"Product {product.sku} is not eligible for the ready-stock path"]
            )
        return SectionEvent.APPROVE_READY_STOCK
    if product.requires_dyeing:
        return SectionEvent.APPROVE_TO_DYEING
    return SectionEvent.APPROVE_TO_PRODUCTION


def _approve_section_records(
    item: OrderItem,
    records: Dict[str, dict],
    sections: Iterable[Section],
    event: SectionEvent,
    user_id: Optional[int],
) -> Dict[str, List[str]]:
    """Advance ``sections`` in ``records``; returns approved and skipped names."""
    now = utc_now()
    approved, skipped = [], []
    for section in sections:
        status = item.section_status(section)
        if is_beyond_packet_verification(status):
            skipped.append(section.value)
            continue
        target = SECTION_TRANSITIONS.fire(status, event, f"{item.id}:{section.value}")
        repository.set_section_status(
            records,
            section,
            target,
            packet_approved_at=now,
            packet_approved_by=user_id,
        )
        approved.append(section.value)
    return {"approved": approved, "skipped": skipped}


# =============================================================================
# Create
# =============================================================================


def _create_packet_impl(order_item_id: int, user_id: Optional[int], session: Session) -> Packet:
    item = repository.get_order_item(session, order_item_id)
    ORDER_ITEM_TRANSITIONS.fire(item.status, OrderItemEvent.OPEN_PACKET, item.id, "create packet")

    existing = repository.find_packet_for_item(session, item.id)
    if existing is not None:
        raise ValidationError([f"Order item {item.id} already has packet {existing.id}"])

    statuses = item.section_status_map()
    included = [
        s
        for s, status in statuses.items()
        if status in (SectionStatus.INVENTORY_PASSED, SectionStatus.CREATE_PACKET)
    ]
    pending = [s for s, status in statuses.items() if status == SectionStatus.AWAITING_MATERIAL]
    if not included:
        log_operation(
            logger,
            "create_packet",
            "no_sections_available",
            level=logging.WARNING,
            order_item_id=item.id,
        )
        raise IncompletePreconditionError(
            f"No section of order item {item.id} has its material available",
            [s.value for s in pending],
        )

    packet = Packet(
        order_item_id=item.id,
        status=PacketStatus.UNASSIGNED,
        packet_round=1,
        is_partial=bool(pending),
        sections_included=[s.value for s in included],
        sections_pending=[s.value for s in pending],
        current_round_sections=[s.value for s in included],
    )
    packet.pick_list = _build_pick_lines(session, item, included, 1)
    packet.recount()
    session.add(packet)
    session.flush()

    records = item.copy_section_records()
    for section in included:
        target = SECTION_TRANSITIONS.fire(
            statuses[section], SectionEvent.ADD_TO_PACKET, f"{item.id}:{section.value}"
        )
        repository.set_section_status(records, section, target, packet_created_at=utc_now())
    repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        "Partial packet created" if packet.is_partial else "Packet created",
        user_id=user_id,
        details={
            "packet_id": packet.id,
            "sections_included": packet.sections_included,
            "sections_pending": packet.sections_pending,
            "pick_list_lines": packet.total_items,
        },
    )
    log_operation(
        logger,
        "create_packet",
        "success",
        order_item_id=item.id,
        packet_id=packet.id,
        is_partial=packet.is_partial,
    )
    return packet


def create_packet(order_item_id: int, user_id: Optional[int] = None, session: Session = None) -> Packet:
    """
    Create the fabrication packet for an order item.

    Sections that passed the inventory check go into the packet and its
    pick list; sections still awaiting material are kept pending, which
    makes the packet partial.

    Raises:
        NotFoundError: If order item not found
        StateConflictError: If the item is not ready for a packet
        ValidationError: If the item already has a packet
        IncompletePreconditionError: If no section has its material
    """
    if session is not None:
        return _create_packet_impl(order_item_id, user_id, session)

    with session_scope() as session:
        return _create_packet_impl(order_item_id, user_id, session)


# =============================================================================
# Fabrication
# =============================================================================


def _assign_packet_impl(
    order_item_id: int, worker_id: int, assigned_by: Optional[int], session: Session
) -> Packet:
    packet = repository.get_packet_for_item(session, order_item_id)
    worker = repository.get_worker(session, worker_id)
    packet.status = _fire(packet, PacketEvent.ASSIGN, "assign_packet")

    packet.assigned_to = worker.id
    packet.assigned_by = assigned_by
    packet.assigned_at = utc_now()

    repository.add_item_timeline(
        session,
        packet.order_item,
        f"Packet assigned to {worker.name}",
        user_id=assigned_by,
        details={"packet_id": packet.id, "assigned_to": worker.id},
    )
    session.flush()
    log_operation(
        logger, "assign_packet", "success", packet_id=packet.id, assigned_to=worker.id
    )
    return packet


def assign_packet(
    order_item_id: int,
    worker_id: int,
    assigned_by: Optional[int] = None,
    session: Session = None,
) -> Packet:
    """
    Assign (or reassign) an order item's packet to a fabrication worker.

    Raises:
        NotFoundError: If the item, its packet or the worker does not exist
        ValidationError: If the worker is inactive
        StateConflictError: If the packet is not UNASSIGNED or ASSIGNED
    """
    if session is not None:
        return _assign_packet_impl(order_item_id, worker_id, assigned_by, session)

    with session_scope() as session:
        return _assign_packet_impl(order_item_id, worker_id, assigned_by, session)


def _start_packet_impl(order_item_id: int, user_id: Optional[int], session: Session) -> Packet:
    packet = repository.get_packet_for_item(session, order_item_id)
    packet.status = _fire(packet, PacketEvent.START, "start_packet")
    packet.started_at = utc_now()

    repository.add_item_timeline(
        session,
        packet.order_item,
        "Packet picking started",
        user_id=user_id,
        details={"packet_id": packet.id, "packet_round": packet.packet_round},
    )
    session.flush()
    log_operation(logger, "start_packet", "success", packet_id=packet.id)
    return packet


def start_packet(order_item_id: int, user_id: Optional[int] = None, session: Session = None) -> Packet:
    """
    Start picking an assigned packet.

    Raises:
        NotFoundError: If the item or its packet does not exist
        StateConflictError: If the packet is not ASSIGNED
    """
    if session is not None:
        return _start_packet_impl(order_item_id, user_id, session)

    with session_scope() as session:
        return _start_packet_impl(order_item_id, user_id, session)


def _pick_item_impl(
    order_item_id: int,
    pick_list_item_id: int,
    picked_qty: Optional[float],
    notes: Optional[str],
    session: Session,
) -> PickListItem:
    packet = repository.get_packet_for_item(session, order_item_id)
    line = session.get(PickListItem, pick_list_item_id)
    if line is None or line.packet_id != packet.id:
        raise NotFoundError("PickListItem", pick_list_item_id)
    _fire(packet, PacketEvent.PICK, "pick_item")

    quantity = line.required_qty if picked_qty is None else picked_qty
    if quantity <= 0:
        raise ValidationError(["Picked quantity must be greater than zero"])

    line.is_picked = True
    line.picked_qty = _round_qty(quantity)
    line.picked_at = utc_now()
    if notes:
        line.notes = notes
    session.flush()
    packet.recount()
    session.flush()

    log_operation(
        logger,
        "pick_item",
        "success",
        level=logging.DEBUG,
        packet_id=packet.id,
        pick_list_item_id=line.id,
        picked_items=packet.picked_items,
        total_items=packet.total_items,
    )
    return line


def pick_item(
    order_item_id: int,
    pick_list_item_id: int,
    picked_qty: Optional[float] = None,
    notes: Optional[str] = None,
    session: Session = None,
) -> PickListItem:
    """
    Mark one pick-list line as picked.

    Args:
        order_item_id: Item whose packet is being picked
        pick_list_item_id: Line to mark
        picked_qty: Actual quantity picked (defaults to the required quantity)
        notes: Picker's notes
        session: Optional session for transaction sharing

    Raises:
        NotFoundError: If the packet or the line does not exist
        StateConflictError: If the packet is not IN_PROGRESS
        ValidationError: If the picked quantity is not positive
    """
    if session is not None:
        return _pick_item_impl(order_item_id, pick_list_item_id, picked_qty, notes, session)

    with session_scope() as session:
        return _pick_item_impl(order_item_id, pick_list_item_id, picked_qty, notes, session)


def _complete_packet_impl(order_item_id: int, user_id: Optional[int], session: Session) -> Packet:
    packet = repository.get_packet_for_item(session, order_item_id)
    new_status = _fire(packet, PacketEvent.COMPLETE, "complete_packet")

    unpicked = [line for line in packet.pick_list if not line.is_picked]
    if unpicked:
        log_operation(
            logger,
            "complete_packet",
            "unpicked_lines",
            level=logging.WARNING,
            packet_id=packet.id,
            unpicked=[line.id for line in unpicked],
        )
        raise IncompletePreconditionError(
            f"{len(unpicked)} pick-list line(s) not picked",
            [line.to_summary() for line in unpicked],
        )

    to_consume = [line for line in packet.pick_list if not line.is_consumed]
    needed: Dict[int, float] = {}
    for line in to_consume:
        needed[line.inventory_item_id] = needed.get(line.inventory_item_id, 0.0) + line.picked_qty

    short_items = set()
    for inventory_item_id, quantity in needed.items():
        stock = session.get(InventoryItem, inventory_item_id)
        if stock is None or _round_qty(stock.remaining_stock - quantity) < 0:
            short_items.add(inventory_item_id)
    if short_items:
        offending = [
            line.to_summary() for line in to_consume if line.inventory_item_id in short_items
        ]
        log_operation(
            logger,
            "complete_packet",
            "insufficient_stock",
            level=logging.WARNING,
            packet_id=packet.id,
            inventory_item_ids=sorted(short_items),
        )
        raise IncompletePreconditionError(
            "Insufficient stock to consume picked material", offending
        )

    for inventory_item_id, quantity in needed.items():
        repository.adjust_stock(
            session,
            session.get(InventoryItem, inventory_item_id),
            -quantity,
            StockMovementReason.PACKET_CONSUMPTION,
            order_item_id=packet.order_item_id,
            packet_id=packet.id,
            user_id=user_id,
        )
    for line in to_consume:
        line.is_consumed = True

    packet.status = new_status
    packet.completed_at = utc_now()
    packet.recount()
    session.flush()

    item = packet.order_item
    repository.refresh_item_status(session, item)
    repository.add_item_timeline(
        session,
        item,
        "Packet completed, awaiting verification",
        user_id=user_id,
        details={"packet_id": packet.id, "packet_round": packet.packet_round},
    )
    session.flush()
    log_operation(
        logger,
        "complete_packet",
        "success",
        packet_id=packet.id,
        consumed_lines=len(to_consume),
    )
    return packet


def complete_packet(order_item_id: int, user_id: Optional[int] = None, session: Session = None) -> Packet:
    """
    Complete a packet once every line is picked.

    Transaction boundary: stock consumption for every picked line and the
    status change commit together.

    Raises:
        NotFoundError: If the item or its packet does not exist
        StateConflictError: If the packet is not IN_PROGRESS
        IncompletePreconditionError: Listing unpicked lines, or lines whose
            material is no longer in stock
    """
    if session is not None:
        return _complete_packet_impl(order_item_id, user_id, session)

    with session_scope() as session:
        return _complete_packet_impl(order_item_id, user_id, session)


# =============================================================================
# Verification
# =============================================================================


def _approve_packet_impl(
    order_item_id: int,
    is_ready_stock: bool,
    user_id: Optional[int],
    notes: Optional[str],
    session: Session,
) -> Packet:
    packet = repository.get_packet_for_item(session, order_item_id)
    new_status = _fire(packet, PacketEvent.APPROVE, "approve_packet")
    item = packet.order_item
    event = _approval_event(item, is_ready_stock)

    covered = packet.current_round if packet.packet_round > 1 else packet.included
    records = item.copy_section_records()
    outcome = _approve_section_records(item, records, covered, event, user_id)

    packet.status = new_status
    packet.checked_by = user_id
    packet.checked_at = utc_now()
    packet.check_result = PacketStatus.APPROVED
    if is_ready_stock:
        item.is_ready_stock = True
    session.flush()
    repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        f"Packet round {packet.packet_round} approved",
        user_id=user_id,
        details={
            "packet_id": packet.id,
            "sections_approved": outcome["approved"],
            "sections_skipped": outcome["skipped"],
            "is_ready_stock": is_ready_stock,
            "notes": notes,
        },
    )
    session.flush()
    log_operation(
        logger,
        "approve_packet",
        "success",
        packet_id=packet.id,
        packet_round=packet.packet_round,
        sections=outcome["approved"],
        item_status=item.status.value,
    )
    return packet


def approve_packet(
    order_item_id: int,
    is_ready_stock: bool = False,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    session: Session = None,
) -> Packet:
    """
    Approve a completed packet.

    Covers the current round's sections when the packet is past round 1,
    otherwise every included section. Each covered section moves to
    QA_PENDING (ready stock), READY_FOR_DYEING (product requires dyeing)
    or READY_FOR_PRODUCTION. Sections past packet verification are left
    as they are.

    Raises:
        NotFoundError: If the item or its packet does not exist
        StateConflictError: If the packet is not COMPLETED
        ValidationError: If ready stock is requested for an ineligible product
    """
    if session is not None:
        return _approve_packet_impl(order_item_id, is_ready_stock, user_id, notes, session)

    with session_scope() as session:
        return _approve_packet_impl(order_item_id, is_ready_stock, user_id, notes, session)


def _reject_packet_impl(
    order_item_id: int,
    reason_code: str,
    reason: str,
    notes: Optional[str],
    user_id: Optional[int],
    session: Session,
) -> Packet:
    errors = []
    if not reason_code:
        errors.append("Rejection reason code is required")
    elif reason_code not in PACKET_REJECTION_REASONS:
        errors.append(
            f"Unknown rejection reason code '{reason_code}'; "
            f"expected one of {', '.join(PACKET_REJECTION_REASONS)}"
        )
    if not reason or not reason.strip():
        errors.append("Rejection reason is required")
    if errors:
        raise ValidationError(errors)

    packet = repository.get_packet_for_item(session, order_item_id)
    new_status = _fire(packet, PacketEvent.REJECT, "reject_packet")
    item = packet.order_item

    if packet.packet_round >= 2:
        sections = packet.current_round
        lines = [line for line in packet.pick_list if line.added_in_round == packet.packet_round]
    else:
        sections = packet.included
        lines = list(packet.pick_list)

    released = 0.0
    for line in lines:
        released += release_line_stock(session, line, user_id=user_id)
        line.reset()

    now = utc_now()
    records = item.copy_section_records()
    reset, skipped = [], []
    for section in sections:
        status = item.section_status(section)
        if is_beyond_packet_verification(status):
            skipped.append(section.value)
            continue
        target = SECTION_TRANSITIONS.fire(
            status, SectionEvent.REJECT_PACKET, f"{item.id}:{section.value}"
        )
        repository.set_section_status(
            records,
            section,
            target,
            packet_rejected_at=now,
            packet_rejected_by=user_id,
            packet_rejection_reason_code=reason_code,
            packet_rejection_reason=reason.strip(),
            packet_rejection_notes=notes,
        )
        reset.append(section.value)

    packet.status = new_status
    packet.checked_by = user_id
    packet.checked_at = now
    packet.check_result = PacketStatus.REJECTED
    packet.rejection_reason_code = reason_code
    packet.rejection_reason = reason.strip()
    packet.rejection_notes = notes
    packet.completed_at = None
    packet.recount()
    session.flush()
    repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        f"Packet round {packet.packet_round} rejected: {PACKET_REJECTION_REASONS[reason_code]}",
        user_id=user_id,
        details={
            "packet_id": packet.id,
            "reason_code": reason_code,
            "reason": reason.strip(),
            "notes": notes,
            "sections_reset": reset,
            "sections_skipped": skipped,
            "lines_reset": [line.id for line in lines],
        },
    )
    session.flush()
    log_operation(
        logger,
        "reject_packet",
        "success",
        level=logging.WARNING,
        packet_id=packet.id,
        packet_round=packet.packet_round,
        reason_code=reason_code,
        sections=reset,
        released_qty=_round_qty(released),
    )
    return packet


def reject_packet(
    order_item_id: int,
    reason_code: str,
    reason: str,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = None,
) -> Packet:
    """
    Reject a completed packet back to its assignee for rework.

    On round 2 or later only the current round's lines and sections are
    reset; on round 1 the whole packet is. Reset lines become unpicked and
    their consumed stock is released. Reset sections go back to
    CREATE_PACKET. The packet returns to ASSIGNED.

    Transaction boundary: stock release, line resets and section updates
    commit together.

    Raises:
        ValidationError: If the reason code or reason is missing or unknown
        NotFoundError: If the item or its packet does not exist
        StateConflictError: If the packet is not COMPLETED
    """
    if session is not None:
        return _reject_packet_impl(order_item_id, reason_code, reason, notes, user_id, session)

    with session_scope() as session:
        return _reject_packet_impl(order_item_id, reason_code, reason, notes, user_id, session)


def _approve_sections_impl(
    order_item_id: int,
    sections: Iterable,
    is_ready_stock: bool,
    user_id: Optional[int],
    session: Session,
) -> Dict[str, List[str]]:
    parsed = repository.parse_section_names(sections)
    packet = repository.get_packet_for_item(session, order_item_id)
    item = packet.order_item
    repository.require_sections(item, parsed)

    not_in_packet = [s.value for s in parsed if s not in packet.included]
    if not_in_packet:
        raise ValidationError(
            [f"Sections not included in packet {packet.id}: {', '.join(not_in_packet)}"]
        )

    event = _approval_event(item, is_ready_stock)
    records = item.copy_section_records()
    outcome = _approve_section_records(item, records, parsed, event, user_id)
    if is_ready_stock and outcome["approved"]:
        item.is_ready_stock = True
    repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        f"Sections approved: {', '.join(outcome['approved']) or 'none'}",
        user_id=user_id,
        details={
            "packet_id": packet.id,
            "sections_approved": outcome["approved"],
            "sections_skipped": outcome["skipped"],
        },
    )
    session.flush()
    log_operation(
        logger,
        "approve_sections",
        "success",
        packet_id=packet.id,
        sections=outcome["approved"],
        skipped=outcome["skipped"],
    )
    return outcome


def approve_sections(
    order_item_id: int,
    sections: Iterable,
    is_ready_stock: bool = False,
    user_id: Optional[int] = None,
    session: Session = None,
) -> Dict[str, List[str]]:
    """
    Approve only the named sections of a packet, whatever the packet status.

    Returns:
        {"approved": [...], "skipped": [...]} where skipped sections were
        already past packet verification

    Raises:
        ValidationError: If a name is unknown or not in the packet
        NotFoundError: If the item, its packet or a section does not exist
        StateConflictError: If a section is not at the packet stage
    """
    if session is not None:
        return _approve_sections_impl(order_item_id, sections, is_ready_stock, user_id, session)

    with session_scope() as session:
        return _approve_sections_impl(order_item_id, sections, is_ready_stock, user_id, session)


# =============================================================================
# Rounds
# =============================================================================


def _add_sections_to_packet_impl(
    order_item_id: int, sections: Iterable, user_id: Optional[int], session: Session
) -> Packet:
    parsed = repository.parse_section_names(sections)
    packet = repository.get_packet_for_item(session, order_item_id)
    item = packet.order_item
    repository.require_sections(item, parsed)

    event = PacketEvent.REOPEN_ASSIGNED if packet.assigned_to else PacketEvent.REOPEN_UNASSIGNED
    new_status = _fire(packet, event, "add_sections_to_packet")

    not_pending = [s.value for s in parsed if s not in packet.pending]
    if not_pending:
        raise ValidationError(
            [f"Sections not pending on packet {packet.id}: {', '.join(not_pending)}"]
        )
    statuses = item.section_status_map()
    for section in parsed:
        # Validates the section can go into a packet before anything changes
        SECTION_TRANSITIONS.fire(
            statuses[section], SectionEvent.ADD_TO_PACKET, f"{item.id}:{section.value}"
        )

    # Sections added before the open round is verified join that round
    unverified = packet.status in (PacketStatus.UNASSIGNED, PacketStatus.ASSIGNED)
    target_round = packet.packet_round if unverified else packet.packet_round + 1
    lines = _build_pick_lines(session, item, parsed, target_round)
    needed: Dict[int, float] = {}
    for line in lines:
        needed[line.inventory_item_id] = needed.get(line.inventory_item_id, 0.0) + line.required_qty
    short = {
        inventory_item_id
        for inventory_item_id, quantity in needed.items()
        if _round_qty(
            repository.get_inventory_item(session, inventory_item_id).remaining_stock - quantity
        )
        < 0
    }
    if short:
        log_operation(
            logger,
            "add_sections_to_packet",
            "insufficient_stock",
            level=logging.WARNING,
            packet_id=packet.id,
            inventory_item_ids=sorted(short),
        )
        raise IncompletePreconditionError(
            "Material for the requested sections is still short",
            [line.to_summary() for line in lines if line.inventory_item_id in short],
        )

    for line in lines:
        packet.pick_list.append(line)
    added = [s.value for s in parsed]
    packet.packet_round = target_round
    packet.sections_included = list(packet.sections_included or []) + [
        value for value in added if value not in (packet.sections_included or [])
    ]
    packet.sections_pending = [v for v in packet.sections_pending or [] if v not in added]
    if unverified:
        packet.current_round_sections = list(packet.current_round_sections or []) + added
    else:
        packet.current_round_sections = added
        packet.started_at = None
        packet.completed_at = None
        packet.check_result = None
    packet.is_partial = bool(packet.sections_pending)
    packet.status = new_status
    session.flush()
    packet.recount()

    now = utc_now()
    records = item.copy_section_records()
    for section in parsed:
        repository.set_section_status(
            records,
            section,
            SectionStatus.PACKET_CREATED,
            packet_created_at=now,
            packet_round=target_round,
        )
    repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        f"Sections added to packet round {target_round}",
        user_id=user_id,
        details={"packet_id": packet.id, "sections": added, "pick_list_lines": len(lines)},
    )
    session.flush()
    log_operation(
        logger,
        "add_sections_to_packet",
        "success",
        packet_id=packet.id,
        packet_round=target_round,
        sections=added,
    )
    return packet


def add_sections_to_packet(
    order_item_id: int,
    sections: Iterable,
    user_id: Optional[int] = None,
    session: Session = None,
) -> Packet:
    """
    Add pending sections to an item's packet.

    Used once material for a short section has arrived, or after a dyeing
    rejection sent a section back for new material. A verified packet
    (APPROVED or INVALIDATED) opens a new round; a packet whose current
    round is still unverified (UNASSIGNED or ASSIGNED) takes the sections
    into that round, so one approval covers them all. The new lines are
    appended to the pick list; the packet returns to its assignee
    (ASSIGNED) or to UNASSIGNED if it never had one.

    Raises:
        ValidationError: If a name is unknown or the section is not pending
        NotFoundError: If the item, its packet or a section does not exist
        StateConflictError: If the packet is being picked or awaiting verification
        IncompletePreconditionError: If the material is still short
    """
    if session is not None:
        return _add_sections_to_packet_impl(order_item_id, sections, user_id, session)

    with session_scope() as session:
        return _add_sections_to_packet_impl(order_item_id, sections, user_id, session)


# =============================================================================
# Queries
# =============================================================================


def get_packet(order_item_id: int, session: Session = None) -> Packet:
    """Get an order item's packet, raising NotFoundError if it has none."""
    if session is not None:
        return repository.get_packet_for_item(session, order_item_id)

    with session_scope() as session:
        return repository.get_packet_for_item(session, order_item_id)


def get_pick_list(order_item_id: int, session: Session = None) -> List[dict]:
    """Pick-list lines of an order item's packet as plain dicts, in order."""

    def _query(session: Session) -> List[dict]:
        packet = repository.get_packet_for_item(session, order_item_id)
        return [line.to_dict() for line in packet.pick_list]

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)
