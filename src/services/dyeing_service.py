"""
Dyeing Service - per-section dyeing workflow.

Section lifecycle:

    READY_FOR_DYEING -> DYEING_ACCEPTED -> DYEING_IN_PROGRESS -> DYEING_COMPLETED

Dyeing work on an order item is held by one worker at a time: while any
section is accepted or in progress, other workers cannot accept sections
of the same item. Only the accepting worker starts and completes them.

A rejection sends the section back to packet creation: its consumed
material goes back to stock, its pick-list lines are removed, and it
becomes pending on the packet so fresh material can be added as a new
round. A packet left with no sections is invalidated.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from src.models import OrderItem, Section, SectionStatus, StockMovementReason
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import StateConflictError, ValidationError
from src.services.logging_utils import get_service_logger, log_operation
from src.services.packet_service import release_line_stock
from src.services.transitions import (
    PACKET_TRANSITIONS,
    SECTION_TRANSITIONS,
    PacketEvent,
    SectionEvent,
)
from src.utils.constants import DYEING_REJECTION_REASONS
from src.utils.datetime_utils import utc_now

logger = get_service_logger(__name__)

_HELD_STATUSES = (SectionStatus.DYEING_ACCEPTED, SectionStatus.DYEING_IN_PROGRESS)


def _fire_sections(
    item: OrderItem, sections: List[Section], event: SectionEvent, operation: str
) -> dict:
    """Next status per section; every section is checked before any write."""
    targets = {}
    for section in sections:
        try:
            targets[section] = SECTION_TRANSITIONS.fire(
                item.section_status(section), event, f"{item.id}:{section.value}"
            )
        except StateConflictError:
            log_operation(
                logger,
                operation,
                "state_conflict",
                level=logging.WARNING,
                order_item_id=item.id,
                section=section.value,
            )
            raise
    return targets


def _require_holder(item: OrderItem, sections: List[Section], worker_id: int, action: str) -> None:
    for section in sections:
        holder = item.section_statuses[section.value].get("dyeing_accepted_by")
        if holder != worker_id:
            raise StateConflictError(
                f"Section {section.value} of order item",
                item.id,
                f"held by worker {holder}",
                [f"held by worker {worker_id}"],
                action,
            )


def _load(order_item_id: int, sections: Iterable, session: Session):
    parsed = repository.parse_section_names(sections)
    item = repository.get_order_item(session, order_item_id)
    repository.require_sections(item, parsed)
    return item, parsed


# =============================================================================
# Accept / start / complete
# =============================================================================


def _accept_dyeing_impl(
    order_item_id: int, sections: Iterable, worker_id: int, session: Session
) -> OrderItem:
    item, parsed = _load(order_item_id, sections, session)
    worker = repository.get_worker(session, worker_id)

    for section, status in item.section_status_map().items():
        holder = item.section_statuses[section.value].get("dyeing_accepted_by")
        if status in _HELD_STATUSES and holder != worker.id:
            log_operation(
                logger,
                "accept_dyeing",
                "held_by_other_worker",
                level=logging.WARNING,
                order_item_id=item.id,
                holder=holder,
                worker_id=worker.id,
            )
            raise StateConflictError(
                "Dyeing of order item",
                item.id,
                f"held by worker {holder}",
                ["not held by another worker"],
                "accept dyeing",
            )

    targets = _fire_sections(item, parsed, SectionEvent.ACCEPT_DYEING, "accept_dyeing")
    now = utc_now()
    records = item.copy_section_records()
    for section, target in targets.items():
        repository.set_section_status(
            records, section, target, dyeing_accepted_by=worker.id, dyeing_accepted_at=now
        )
    repository.write_sections(session, item, records)

    names = [s.value for s in parsed]
    repository.add_item_timeline(
        session,
        item,
        f"Dyeing accepted by {worker.name}: {', '.join(names)}",
        user_id=worker.id,
        details={"sections": names},
    )
    session.flush()
    log_operation(
        logger,
        "accept_dyeing",
        "success",
        order_item_id=item.id,
        worker_id=worker.id,
        sections=names,
    )
    return item


def accept_dyeing(
    order_item_id: int, sections: Iterable, worker_id: int, session: Session = None
) -> OrderItem:
    """
    Accept READY_FOR_DYEING sections for a dyeing worker.

    Raises:
        ValidationError: If no section is named or a name is unknown
        NotFoundError: If the item, worker or a section does not exist
        StateConflictError: If a section is not READY_FOR_DYEING, or another
            worker holds dyeing work on this item
    """
    if session is not None:
        return _accept_dyeing_impl(order_item_id, sections, worker_id, session)

    with session_scope() as session:
        return _accept_dyeing_impl(order_item_id, sections, worker_id, session)


def _advance_impl(
    order_item_id: int,
    sections: Iterable,
    worker_id: int,
    event: SectionEvent,
    operation: str,
    timestamp_field: str,
    session: Session,
) -> OrderItem:
    item, parsed = _load(order_item_id, sections, session)
    targets = _fire_sections(item, parsed, event, operation)
    _require_holder(item, parsed, worker_id, operation.replace("_", " "))

    now = utc_now()
    records = item.copy_section_records()
    for section, target in targets.items():
        repository.set_section_status(records, section, target, **{timestamp_field: now})
    repository.write_sections(session, item, records)

    names = [s.value for s in parsed]
    repository.add_item_timeline(
        session,
        item,
        f"{operation.replace('_', ' ').capitalize()}: {', '.join(names)}",
        user_id=worker_id,
        details={"sections": names},
    )
    session.flush()
    log_operation(
        logger, operation, "success", order_item_id=item.id, worker_id=worker_id, sections=names
    )
    return item


def start_dyeing(
    order_item_id: int, sections: Iterable, worker_id: int, session: Session = None
) -> OrderItem:
    """
    Start dyeing accepted sections. Only the accepting worker may start them.

    Raises:
        StateConflictError: If a section is not DYEING_ACCEPTED or is held
            by another worker
    """
    if session is not None:
        return _advance_impl(
            order_item_id,
            sections,
            worker_id,
            SectionEvent.START_DYEING,
            "start_dyeing",
            "dyeing_started_at",
            session,
        )

    with session_scope() as session:
        return _advance_impl(
            order_item_id,
            sections,
            worker_id,
            SectionEvent.START_DYEING,
            "start_dyeing",
            "dyeing_started_at",
            session,
        )


def complete_dyeing(
    order_item_id: int, sections: Iterable, worker_id: int, session: Session = None
) -> OrderItem:
    """
    Complete dyeing of in-progress sections. Only the accepting worker may
    complete them.

    Raises:
        StateConflictError: If a section is not DYEING_IN_PROGRESS or is held
            by another worker
    """
    if session is not None:
        return _advance_impl(
            order_item_id,
            sections,
            worker_id,
            SectionEvent.COMPLETE_DYEING,
            "complete_dyeing",
            "dyeing_completed_at",
            session,
        )

    with session_scope() as session:
        return _advance_impl(
            order_item_id,
            sections,
            worker_id,
            SectionEvent.COMPLETE_DYEING,
            "complete_dyeing",
            "dyeing_completed_at",
            session,
        )


# =============================================================================
# Reject
# =============================================================================


def _reject_dyeing_impl(
    order_item_id: int,
    sections: Iterable,
    notes: str,
    reason_code: Optional[str],
    user_id: Optional[int],
    session: Session,
) -> OrderItem:
    errors = []
    if not notes or not notes.strip():
        errors.append("Rejection notes are required")
    if reason_code is not None and reason_code not in DYEING_REJECTION_REASONS:
        errors.append(
            f"Unknown dyeing rejection reason '{reason_code}'; "
            f"expected one of {', '.join(DYEING_REJECTION_REASONS)}"
        )
    if errors:
        raise ValidationError(errors)

    item, parsed = _load(order_item_id, sections, session)
    targets = _fire_sections(item, parsed, SectionEvent.REJECT_DYEING, "reject_dyeing")
    packet = repository.get_packet_for_item(session, item.id)

    names = [s.value for s in parsed]
    remaining = [v for v in packet.sections_included or [] if v not in names]
    invalidate = not remaining
    if invalidate:
        packet_status = PACKET_TRANSITIONS.fire(packet.status, PacketEvent.INVALIDATE, packet.id)

    released = 0.0
    removed_lines = []
    for line in [line for line in packet.pick_list if line.piece in names]:
        released += release_line_stock(
            session, line, StockMovementReason.DYEING_REJECTION_RELEASE, user_id=user_id
        )
        removed_lines.append(line.id)
        packet.pick_list.remove(line)

    packet.sections_included = remaining
    packet.sections_pending = list(packet.sections_pending or []) + [
        v for v in names if v not in (packet.sections_pending or [])
    ]
    packet.current_round_sections = [
        v for v in packet.current_round_sections or [] if v not in names
    ]
    packet.is_partial = True
    if invalidate:
        packet.status = packet_status
    session.flush()
    packet.recount()

    now = utc_now()
    records = item.copy_section_records()
    for section, target in targets.items():
        dyeing_round = int(records[section.value].get("dyeing_round", 0)) + 1
        repository.set_section_status(
            records,
            section,
            target,
            dyeing_rejected_at=now,
            dyeing_rejected_by=user_id,
            dyeing_rejection_reason_code=reason_code,
            dyeing_rejection_notes=notes.strip(),
            dyeing_round=dyeing_round,
            reassigned_to=packet.assigned_to,
            dyeing_accepted_by=None,
            dyeing_accepted_at=None,
            dyeing_started_at=None,
            dyeing_completed_at=None,
        )
    repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        f"Dyeing rejected: {', '.join(names)}",
        user_id=user_id,
        details={
            "sections": names,
            "reason_code": reason_code,
            "notes": notes.strip(),
            "released_qty": round(released, 3),
            "removed_pick_list_items": removed_lines,
            "packet_invalidated": invalidate,
            "reassigned_to": packet.assigned_to,
        },
    )
    session.flush()
    log_operation(
        logger,
        "reject_dyeing",
        "success",
        level=logging.WARNING,
        order_item_id=item.id,
        sections=names,
        reason_code=reason_code,
        packet_invalidated=invalidate,
    )
    return item


def reject_dyeing(
    order_item_id: int,
    sections: Iterable,
    notes: str,
    reason_code: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = None,
) -> OrderItem:
    """
    Reject sections out of dyeing back to packet creation.

    Transaction boundary: stock release, pick-list removal, packet update
    and section updates commit together.

    Args:
        order_item_id: Item the sections belong to
        sections: Sections in READY_FOR_DYEING, DYEING_ACCEPTED or DYEING_IN_PROGRESS
        notes: Why the material was rejected (required)
        reason_code: Optional dyeing rejection code
        user_id: Acting worker
        session: Optional session for transaction sharing

    Raises:
        ValidationError: If notes are missing or the reason code is unknown
        NotFoundError: If the item, its packet or a section does not exist
        StateConflictError: If a section is not in dyeing
    """
    if session is not None:
        return _reject_dyeing_impl(order_item_id, sections, notes, reason_code, user_id, session)

    with session_scope() as session:
        return _reject_dyeing_impl(order_item_id, sections, notes, reason_code, user_id, session)
