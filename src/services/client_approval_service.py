"""
Client Approval Service - customer sign-off on QA-passed sections.

Section lifecycle:

    READY_FOR_CLIENT_APPROVAL -> AWAITING_CLIENT_APPROVAL -> CLIENT_APPROVED

The item reads AWAITING_CLIENT_APPROVAL only once every section has been
sent, and READY_FOR_DISPATCH once every section is approved. When every
item of an order is ready, the order becomes READY_FOR_DISPATCH.

A client who wants to see sections filmed again does not approve them;
sales files a re-video request instead. The sections stay where they are
until QA uploads the new video (see qa_service.upload_re_video).
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.models import OrderItem, Section, SectionStatus
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import StateConflictError, ValidationError
from src.services.logging_utils import get_service_logger, log_operation
from src.services.transitions import SECTION_TRANSITIONS, SectionEvent
from src.utils.datetime_utils import to_iso, utc_now

logger = get_service_logger(__name__)


def _apply(
    item: OrderItem,
    sections: List[Section],
    event: SectionEvent,
    operation: str,
    **fields: Any,
) -> dict:
    """Fire ``event`` for every section into a copy of the records."""
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

    records = item.copy_section_records()
    for section, target in targets.items():
        repository.set_section_status(records, section, target, **fields)
    return records


def _eligible(item: OrderItem, status: SectionStatus, action: str) -> List[Section]:
    sections = [s for s, current in item.section_status_map().items() if current == status]
    if not sections:
        log_operation(
            logger,
            action.replace(" ", "_"),
            "no_eligible_sections",
            level=logging.WARNING,
            order_item_id=item.id,
        )
        raise StateConflictError("OrderItem", item.id, item.status, [status], action)
    return sections


def _send_impl(
    order_item_id: int, sections: Optional[List[Any]], user_id: Optional[int], session: Session
) -> OrderItem:
    item = repository.get_order_item(session, order_item_id)
    if sections is None:
        parsed = _eligible(item, SectionStatus.READY_FOR_CLIENT_APPROVAL, "send all sections to client")
    else:
        parsed = repository.parse_section_names(sections)
        repository.require_sections(item, parsed)

    records = _apply(
        item,
        parsed,
        SectionEvent.SEND_TO_CLIENT,
        "send_to_client",
        sent_to_client_at=utc_now(),
        sent_to_client_by=user_id,
    )
    repository.write_sections(session, item, records)

    names = [s.value for s in parsed]
    repository.add_item_timeline(
        session,
        item,
        f"Sent for client approval: {', '.join(names)}",
        user_id=user_id,
        details={"sections": names},
    )
    session.flush()
    log_operation(logger, "send_to_client", "success", order_item_id=item.id, sections=names)
    return item


def _approve_impl(
    order_item_id: int,
    sections: Optional[List[Any]],
    notes: Optional[str],
    user_id: Optional[int],
    session: Session,
) -> OrderItem:
    item = repository.get_order_item(session, order_item_id)
    if sections is None:
        parsed = _eligible(item, SectionStatus.AWAITING_CLIENT_APPROVAL, "approve all sections")
    else:
        parsed = repository.parse_section_names(sections)
        repository.require_sections(item, parsed)

    records = _apply(
        item,
        parsed,
        SectionEvent.CLIENT_APPROVE,
        "client_approve",
        client_approved_at=utc_now(),
        client_approved_by=user_id,
        client_notes=notes,
    )
    repository.write_sections(session, item, records)

    names = [s.value for s in parsed]
    repository.add_item_timeline(
        session,
        item,
        f"Client approved: {', '.join(names)}",
        user_id=user_id,
        details={"sections": names, "notes": notes},
    )
    session.flush()
    log_operation(
        logger,
        "client_approve",
        "success",
        order_item_id=item.id,
        sections=names,
        item_status=item.status.value,
        order_status=item.order.status.value,
    )
    return item


def send_section_to_client(
    order_item_id: int, section: Any, user_id: Optional[int] = None, session: Session = None
) -> OrderItem:
    """
    Send one QA-passed section to the client for approval.

    Raises:
        NotFoundError: If the item or the section does not exist
        StateConflictError: If the section is not READY_FOR_CLIENT_APPROVAL
    """
    if session is not None:
        return _send_impl(order_item_id, [section], user_id, session)

    with session_scope() as session:
        return _send_impl(order_item_id, [section], user_id, session)


def send_all_to_client(
    order_item_id: int, user_id: Optional[int] = None, session: Session = None
) -> OrderItem:
    """
    Send every READY_FOR_CLIENT_APPROVAL section of an item to the client.

    Raises:
        StateConflictError: If no section is ready for client approval
    """
    if session is not None:
        return _send_impl(order_item_id, None, user_id, session)

    with session_scope() as session:
        return _send_impl(order_item_id, None, user_id, session)


def approve_section(
    order_item_id: int,
    section: Any,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = None,
) -> OrderItem:
    """
    Record the client's approval of one section.

    Raises:
        NotFoundError: If the item or the section does not exist
        StateConflictError: If the section is not AWAITING_CLIENT_APPROVAL
    """
    if session is not None:
        return _approve_impl(order_item_id, [section], notes, user_id, session)

    with session_scope() as session:
        return _approve_impl(order_item_id, [section], notes, user_id, session)


def approve_all_sections(
    order_item_id: int,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = None,
) -> OrderItem:
    """
    Approve every section of an item that is awaiting client approval.

    Raises:
        StateConflictError: If no section is awaiting client approval
    """
    if session is not None:
        return _approve_impl(order_item_id, None, notes, user_id, session)

    with session_scope() as session:
        return _approve_impl(order_item_id, None, notes, user_id, session)


def _request_re_video_impl(
    order_item_id: int,
    sections: List[Dict[str, Any]],
    requested_by: Optional[int],
    session: Session,
) -> OrderItem:
    errors = []
    if not sections:
        errors.append("Select at least one section to film again")
    for entry in sections or []:
        if not (entry.get("notes") or "").strip():
            errors.append(f"Notes are required for section '{entry.get('name')}'")
    if errors:
        raise ValidationError(errors)

    parsed = repository.parse_section_names([entry.get("name") for entry in sections])
    item = repository.get_order_item(session, order_item_id)
    repository.require_sections(item, parsed)
    if item.re_video_request:
        raise ValidationError([f"Order item {item.id} already has an open re-video request"])

    for section in parsed:
        status = item.section_status(section)
        if status != SectionStatus.AWAITING_CLIENT_APPROVAL:
            log_operation(
                logger,
                "request_re_video",
                "state_conflict",
                level=logging.WARNING,
                order_item_id=item.id,
                section=section.value,
            )
            raise StateConflictError(
                f"Section {section.value} of order item",
                item.id,
                status,
                [SectionStatus.AWAITING_CLIENT_APPROVAL],
                "request re-video",
            )

    requested = [
        {"name": section.value, "notes": entry["notes"].strip()}
        for section, entry in zip(parsed, sections)
    ]
    item.re_video_request = {
        "sections": requested,
        "requested_by": requested_by,
        "requested_at": to_iso(utc_now()),
    }

    names = [entry["name"] for entry in requested]
    repository.add_item_timeline(
        session,
        item,
        f"Re-video requested: {', '.join(names)}",
        user_id=requested_by,
        details={"sections": requested},
    )
    session.flush()
    log_operation(logger, "request_re_video", "success", order_item_id=item.id, sections=names)
    return item


def request_re_video(
    order_item_id: int,
    sections: List[Dict[str, Any]],
    requested_by: Optional[int] = None,
    session: Session = None,
) -> OrderItem:
    """
    Ask QA to film sections again for the client.

    Args:
        order_item_id: Item the sections belong to
        sections: ``[{"name": "shirt", "notes": "show the border"}, ...]``
        requested_by: Sales worker filing the request
        session: Optional session for transaction sharing

    Raises:
        ValidationError: If no section is given, notes are missing, or the
            item already has an open request
        NotFoundError: If the item or a section does not exist
        StateConflictError: If a section is not AWAITING_CLIENT_APPROVAL
    """
    if session is not None:
        return _request_re_video_impl(order_item_id, sections, requested_by, session)

    with session_scope() as session:
        return _request_re_video_impl(order_item_id, sections, requested_by, session)
