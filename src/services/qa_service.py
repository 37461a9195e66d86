"""
QA Service - quality verification of produced sections.

A section in QA_PENDING either passes, with a video of the finished piece
as evidence, and moves to READY_FOR_CLIENT_APPROVAL, or is rejected back
to production (QA_REJECTED) where a new task chain is created for it.

Every review is appended to the section's ``qa_data`` record:

    {
        "current_round": 2,
        "rounds": [
            {"round": 1, "result": "REJECTED", "notes": "...", ...},
            {"round": 2, "result": "APPROVED", "video_url": "...", ...},
        ],
    }

Sales can ask for sections to be filmed again while they wait on the client.
The new video is appended as a RE_VIDEO round and the one it replaces is
kept in the record's ``video_history``.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.models import Order, OrderItem, Section, SectionStatus, Worker
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import StateConflictError, ValidationError
from src.services.logging_utils import get_service_logger, log_operation
from src.services.transitions import SECTION_TRANSITIONS, SectionEvent
from src.utils.constants import ACCEPTED_VIDEO_URL_PATTERNS, QA_REJECTION_REASONS
from src.utils.datetime_utils import to_iso, utc_now

logger = get_service_logger(__name__)

_VIDEO_URL_RES = [re.compile(pattern) for pattern in ACCEPTED_VIDEO_URL_PATTERNS]


def is_accepted_video_url(url: Optional[str]) -> bool:
    """True when ``url`` points at an accepted video host."""
    if not url:
        return False
    return any(pattern.match(url.strip()) for pattern in _VIDEO_URL_RES)


def _fire(item: OrderItem, section, event: SectionEvent, operation: str):
    try:
        return SECTION_TRANSITIONS.fire(
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


def _append_round(record: dict, entry: dict, advance: bool) -> dict:
    qa_data = dict(record.get("qa_data") or {"current_round": 1, "rounds": []})
    entry = dict(entry, round=qa_data["current_round"])
    qa_data["rounds"] = list(qa_data.get("rounds") or []) + [entry]
    if advance:
        qa_data["current_round"] += 1
    return qa_data


def _add_qa_evidence_impl(
    order_item_id: int,
    section: Any,
    video_url: str,
    notes: Optional[str],
    user_id: Optional[int],
    session: Session,
) -> OrderItem:
    if not is_accepted_video_url(video_url):
        raise ValidationError(
            ["QA evidence must be a YouTube or Vimeo video URL"], video_url=video_url
        )
    (section,) = repository.parse_section_names([section], field="section")
    item = repository.get_order_item(session, order_item_id)
    repository.require_sections(item, [section])
    target = _fire(item, section, SectionEvent.PASS_QA, "add_qa_evidence")

    now = utc_now()
    records = item.copy_section_records()
    qa_data = _append_round(
        records[section.value],
        {
            "result": "APPROVED",
            "video_url": video_url.strip(),
            "notes": notes,
            "reviewed_by": user_id,
            "reviewed_at": to_iso(now),
        },
        advance=False,
    )
    repository.set_section_status(records, section, target, qa_data=qa_data, qa_approved_at=now)
    repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        f"QA passed for {section.value}",
        user_id=user_id,
        details={"section": section.value, "video_url": video_url.strip(), "notes": notes},
    )
    session.flush()
    log_operation(
        logger,
        "add_qa_evidence",
        "success",
        order_item_id=item.id,
        section=section.value,
        qa_round=qa_data["current_round"],
    )
    return item


def add_qa_evidence(
    order_item_id: int,
    section: Any,
    video_url: str,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = None,
) -> OrderItem:
    """
    Pass a QA_PENDING section with video evidence.

    Args:
        order_item_id: Item the section belongs to
        section: Section name
        video_url: YouTube, youtu.be or Vimeo link to the QA video
        notes: Reviewer notes
        user_id: Reviewing worker
        session: Optional session for transaction sharing

    Raises:
        ValidationError: If the URL is not an accepted video link
        NotFoundError: If the item or the section does not exist
        StateConflictError: If the section is not QA_PENDING
    """
    if session is not None:
        return _add_qa_evidence_impl(order_item_id, section, video_url, notes, user_id, session)

    with session_scope() as session:
        return _add_qa_evidence_impl(order_item_id, section, video_url, notes, user_id, session)


def _reject_qa_section_impl(
    order_item_id: int,
    section: Any,
    notes: str,
    reason_code: Optional[str],
    video_url: Optional[str],
    user_id: Optional[int],
    session: Session,
) -> OrderItem:
    errors = []
    if not notes or not notes.strip():
        errors.append("QA rejection notes are required")
    if reason_code is not None and reason_code not in QA_REJECTION_REASONS:
        errors.append(
            f"Unknown QA rejection reason '{reason_code}'; "
            f"expected one of {', '.join(QA_REJECTION_REASONS)}"
        )
    if video_url and not is_accepted_video_url(video_url):
        errors.append("QA evidence must be a YouTube or Vimeo video URL")
    if errors:
        raise ValidationError(errors)

    (section,) = repository.parse_section_names([section], field="section")
    item = repository.get_order_item(session, order_item_id)
    repository.require_sections(item, [section])
    target = _fire(item, section, SectionEvent.REJECT_QA, "reject_qa_section")

    now = utc_now()
    records = item.copy_section_records()
    qa_data = _append_round(
        records[section.value],
        {
            "result": "REJECTED",
            "reason_code": reason_code,
            "notes": notes.strip(),
            "video_url": video_url,
            "reviewed_by": user_id,
            "reviewed_at": to_iso(now),
        },
        advance=True,
    )
    repository.set_section_status(records, section, target, qa_data=qa_data, qa_rejected_at=now)
    repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        f"QA rejected {section.value}: {notes.strip()}",
        user_id=user_id,
        details={"section": section.value, "reason_code": reason_code},
    )
    session.flush()
    log_operation(
        logger,
        "reject_qa_section",
        "success",
        level=logging.WARNING,
        order_item_id=item.id,
        section=section.value,
        reason_code=reason_code,
    )
    return item


def reject_qa_section(
    order_item_id: int,
    section: Any,
    notes: str,
    reason_code: Optional[str] = None,
    video_url: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = None,
) -> OrderItem:
    """
    Send a QA_PENDING section back to production.

    The section becomes QA_REJECTED and returns to IN_PRODUCTION once a new
    task chain is created for it.

    Raises:
        ValidationError: If notes are missing, or the reason code or URL is invalid
        NotFoundError: If the item or the section does not exist
        StateConflictError: If the section is not QA_PENDING
    """
    if session is not None:
        return _reject_qa_section_impl(
            order_item_id, section, notes, reason_code, video_url, user_id, session
        )

    with session_scope() as session:
        return _reject_qa_section_impl(
            order_item_id, section, notes, reason_code, video_url, user_id, session
        )


# =============================================================================
# Re-video requests
# =============================================================================


def current_video_url(record: dict) -> Optional[str]:
    """Video the client is currently shown for a section record, if any."""
    for entry in reversed((record.get("qa_data") or {}).get("rounds") or []):
        if entry.get("result") in ("APPROVED", "RE_VIDEO") and entry.get("video_url"):
            return entry["video_url"]
    return None


def list_re_video_requests(session: Session = None) -> List[Dict[str, Any]]:
    """
    Open re-video requests from sales, oldest request first.

    Each entry carries the order reference, the requested sections with
    their notes and the video each section currently has.
    """

    def _query(session: Session) -> List[Dict[str, Any]]:
        items = (
            session.query(OrderItem)
            .join(Order, OrderItem.order_id == Order.id)
            .filter(OrderItem.re_video_request.isnot(None))
            .all()
        )
        requests = []
        for item in items:
            request = item.re_video_request
            requester = (
                session.get(Worker, request["requested_by"])
                if request.get("requested_by") is not None
                else None
            )
            requests.append(
                {
                    "order_item_id": item.id,
                    "order_id": item.order_id,
                    "order_number": item.order.order_number,
                    "customer_name": item.order.customer_name,
                    "product_name": item.product.name,
                    "fwd_date": to_iso(item.order.fwd_date),
                    "sections": list(request["sections"]),
                    "requested_by": request.get("requested_by"),
                    "requested_by_name": requester.name if requester else "Unknown",
                    "requested_at": request["requested_at"],
                    "previous_videos": {
                        entry["name"]: current_video_url(item.section_statuses[entry["name"]])
                        for entry in request["sections"]
                    },
                }
            )
        requests.sort(key=lambda r: r["requested_at"])
        return requests

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)


def _upload_re_video_impl(
    order_item_id: int, video_url: str, user_id: Optional[int], session: Session
) -> OrderItem:
    if not is_accepted_video_url(video_url):
        raise ValidationError(
            ["QA evidence must be a YouTube or Vimeo video URL"], video_url=video_url
        )
    item = repository.get_order_item(session, order_item_id)
    request = item.re_video_request
    if not request:
        raise ValidationError([f"No re-video request found for order item {item.id}"])

    now = to_iso(utc_now())
    records = item.copy_section_records()
    names = []
    for entry in request["sections"]:
        record = records[entry["name"]]
        previous = current_video_url(record)
        history = list(record.get("video_history") or [])
        if previous:
            history.append(
                {
                    "version": len(history) + 1,
                    "video_url": previous,
                    "replaced_at": now,
                    "replaced_reason": "Re-video requested by sales",
                    "request_notes": entry["notes"],
                }
            )
        qa_data = _append_round(
            record,
            {
                "result": "RE_VIDEO",
                "video_url": video_url.strip(),
                "notes": entry["notes"],
                "reviewed_by": user_id,
                "reviewed_at": now,
            },
            advance=False,
        )
        repository.set_section_status(
            records,
            Section.parse(entry["name"]),
            SectionStatus(record["status"]),
            qa_data=qa_data,
            video_history=history,
        )
        names.append(entry["name"])
    repository.write_sections(session, item, records)
    item.re_video_request = None

    repository.add_item_timeline(
        session,
        item,
        "New video uploaded, re-video request fulfilled",
        user_id=user_id,
        details={"sections": names, "video_url": video_url.strip()},
    )
    session.flush()
    log_operation(logger, "upload_re_video", "success", order_item_id=item.id, sections=names)
    return item


def upload_re_video(
    order_item_id: int, video_url: str, user_id: Optional[int] = None, session: Session = None
) -> OrderItem:
    """
    Answer an open re-video request with a new video.

    Section statuses do not change: the sections keep waiting on the client,
    now with the new video.

    Raises:
        ValidationError: If the URL is not an accepted video link, or the
            item has no open re-video request
        NotFoundError: If the item does not exist
    """
    if session is not None:
        return _upload_re_video_impl(order_item_id, video_url, user_id, session)

    with session_scope() as session:
        return _upload_re_video_impl(order_item_id, video_url, user_id, session)
