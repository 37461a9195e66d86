"""
Production Service - head assignment and per-section task chains.

This service provides:
- Round-robin assignment of production heads to eligible order items
- Creating a section's production task chain
- Starting and completing tasks in sequence order
- Handing finished sections over to QA

Round-robin: active production heads are ordered by id and the next head
is (cursor + 1) mod N. The cursor is a persisted, versioned row, so two
units of work advancing it concurrently cannot hand out the same slot; the
second one fails with ConcurrentUpdateError.

Task chains: within a section, task k+1 only becomes READY once task k is
COMPLETED. When the last task completes the section is PRODUCTION_COMPLETED.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from src.models import (
    OrderItem,
    ProductionTask,
    ProductionTaskStatus,
    RoundRobinCursor,
    Section,
    SectionStatus,
    Worker,
)
from src.services import repository
from src.services.database import session_scope
from src.services.exceptions import (
    IncompletePreconditionError,
    StateConflictError,
    ValidationError,
)
from src.services.logging_utils import get_service_logger, log_operation
from src.services.transitions import (
    SECTION_TRANSITIONS,
    TASK_TRANSITIONS,
    SectionEvent,
    TaskEvent,
)
from src.utils.constants import PRODUCTION_HEAD_CURSOR, PRODUCTION_TASK_TYPES
from src.utils.datetime_utils import minutes_between, utc_now

logger = get_service_logger(__name__)

_PRODUCTION_ELIGIBLE = (SectionStatus.READY_FOR_PRODUCTION, SectionStatus.DYEING_COMPLETED)


# =============================================================================
# Round-robin head assignment
# =============================================================================


def _get_cursor(session: Session, name: str) -> RoundRobinCursor:
    cursor = session.query(RoundRobinCursor).filter(RoundRobinCursor.name == name).first()
    if cursor is None:
        cursor = RoundRobinCursor(name=name, last_assigned_index=-1)
        session.add(cursor)
        session.flush()
    return cursor


def next_round_robin_index(last_index: int, count: int) -> int:
    """Index after ``last_index`` in a cycle of ``count`` slots."""
    return (last_index + 1) % count


def _assign_production_head_impl(
    order_item_id: int, assigned_by: Optional[int], session: Session
) -> OrderItem:
    item = repository.get_order_item(session, order_item_id)

    if item.production_head_id is not None:
        raise StateConflictError(
            "OrderItem",
            item.id,
            f"assigned to production head {item.production_head_id}",
            ["without a production head"],
            "assign production head",
        )
    statuses = item.section_status_map().values()
    if not any(status in _PRODUCTION_ELIGIBLE for status in statuses):
        log_operation(
            logger,
            "assign_production_head",
            "not_eligible",
            level=logging.WARNING,
            order_item_id=item.id,
            status=item.status.value,
        )
        raise StateConflictError(
            "OrderItem",
            item.id,
            item.status,
            list(_PRODUCTION_ELIGIBLE),
            "assign production head (no section ready for production)",
        )

    heads = repository.list_active_production_heads(session)
    if not heads:
        log_operation(
            logger,
            "assign_production_head",
            "no_active_heads",
            level=logging.WARNING,
            order_item_id=item.id,
        )
        raise IncompletePreconditionError("No active production heads to assign", [])

    cursor = _get_cursor(session, PRODUCTION_HEAD_CURSOR)
    index = next_round_robin_index(cursor.last_assigned_index, len(heads))
    head = heads[index]
    cursor.last_assigned_index = index

    item.production_head_id = head.id
    item.production_assigned_at = utc_now()
    repository.add_item_timeline(
        session,
        item,
        f"Production head {head.name} assigned",
        user_id=assigned_by,
        details={"production_head_id": head.id, "round_robin_index": index},
    )
    session.flush()
    log_operation(
        logger,
        "assign_production_head",
        "success",
        order_item_id=item.id,
        production_head_id=head.id,
        index=index,
        head_count=len(heads),
    )
    return item


def assign_production_head(
    order_item_id: int, assigned_by: Optional[int] = None, session: Session = None
) -> OrderItem:
    """
    Assign the next production head in round-robin order.

    The item is eligible when at least one section is READY_FOR_PRODUCTION
    or DYEING_COMPLETED and no head is assigned yet.

    Transaction boundary: the cursor advance and the assignment commit
    together; a concurrent advance of the cursor raises ConcurrentUpdateError.

    Raises:
        NotFoundError: If order item not found
        StateConflictError: If the item already has a head or is not eligible
        IncompletePreconditionError: If there are no active production heads
    """
    if session is not None:
        return _assign_production_head_impl(order_item_id, assigned_by, session)

    with session_scope() as session:
        return _assign_production_head_impl(order_item_id, assigned_by, session)


# =============================================================================
# Task chains
# =============================================================================


def _validate_task_specs(
    tasks: List[Dict[str, Any]], session: Session
) -> List[Dict[str, Any]]:
    if not tasks:
        raise ValidationError(["At least one production task is required"])

    errors = []
    normalized = []
    for position, spec in enumerate(tasks, start=1):
        task_type = (spec.get("task_type") or "").strip().lower()
        if task_type not in PRODUCTION_TASK_TYPES:
            errors.append(f"Task {position}: unknown task type '{spec.get('task_type')}'")
        custom_name = (spec.get("custom_task_name") or "").strip() or None
        if task_type == "custom" and not custom_name:
            errors.append(f"Task {position}: custom tasks need a custom_task_name")
        sequence = spec.get("sequence_order", position)
        if not isinstance(sequence, int) or sequence < 1:
            errors.append(f"Task {position}: sequence_order must be a positive integer")
        worker_id = spec.get("worker_id")
        worker = session.get(Worker, worker_id) if worker_id is not None else None
        if worker is None or not worker.is_active:
            errors.append(f"Task {position}: worker {worker_id} not found or inactive")
        normalized.append(
            {
                "task_type": task_type,
                "custom_task_name": custom_name,
                "sequence_order": sequence,
                "worker_id": spec.get("worker_id"),
                "notes": spec.get("notes"),
            }
        )

    sequences = [t["sequence_order"] for t in normalized]
    if len(set(sequences)) != len(sequences):
        errors.append("Task sequence_order values must be unique")
    if errors:
        raise ValidationError(errors)
    return sorted(normalized, key=lambda t: t["sequence_order"])


def _section_tasks(session: Session, order_item_id: int, section: Section) -> List[ProductionTask]:
    return (
        session.query(ProductionTask)
        .filter(
            ProductionTask.order_item_id == order_item_id,
            ProductionTask.section == section.value,
        )
        .order_by(ProductionTask.sequence_order)
        .all()
    )


def _create_section_tasks_impl(
    order_item_id: int,
    section: Any,
    tasks: List[Dict[str, Any]],
    assigned_by: Optional[int],
    session: Session,
) -> List[ProductionTask]:
    (section,) = repository.parse_section_names([section], field="section")
    item = repository.get_order_item(session, order_item_id)
    repository.require_sections(item, [section])

    if item.production_head_id is None:
        raise IncompletePreconditionError(
            f"Order item {item.id} has no production head assigned", []
        )
    specs = _validate_task_specs(tasks, session)

    existing = _section_tasks(session, item.id, section)
    open_tasks = [t for t in existing if t.status != ProductionTaskStatus.COMPLETED]
    if open_tasks:
        raise StateConflictError(
            f"Section {section.value} of order item",
            item.id,
            f"{len(open_tasks)} open task(s)",
            ["no open tasks"],
            "create production tasks",
        )
    try:
        target = SECTION_TRANSITIONS.fire(
            item.section_status(section),
            SectionEvent.START_PRODUCTION,
            f"{item.id}:{section.value}",
            "create production tasks",
        )
    except StateConflictError:
        log_operation(
            logger,
            "create_section_tasks",
            "state_conflict",
            level=logging.WARNING,
            order_item_id=item.id,
            section=section.value,
        )
        raise

    # Reworked sections continue numbering after their earlier chain
    offset = max((t.sequence_order for t in existing), default=0)
    created = []
    for index, spec in enumerate(specs):
        task = ProductionTask(
            order_item_id=item.id,
            section=section.value,
            task_type=spec["task_type"],
            custom_task_name=spec["custom_task_name"],
            sequence_order=offset + spec["sequence_order"],
            worker_id=spec["worker_id"],
            assigned_by=assigned_by,
            status=ProductionTaskStatus.READY if index == 0 else ProductionTaskStatus.PENDING,
            notes=spec["notes"],
        )
        session.add(task)
        created.append(task)
    session.flush()

    records = item.copy_section_records()
    production_round = int(records[section.value].get("production_round", 0)) + 1
    repository.set_section_status(
        records,
        section,
        target,
        production_started_at=utc_now(),
        production_round=production_round,
    )
    repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        f"Production tasks created for {section.value}",
        user_id=assigned_by,
        details={
            "section": section.value,
            "tasks": [
                {"id": t.id, "task_type": t.task_type, "sequence_order": t.sequence_order}
                for t in created
            ],
        },
    )
    session.flush()
    log_operation(
        logger,
        "create_section_tasks",
        "success",
        order_item_id=item.id,
        section=section.value,
        task_count=len(created),
    )
    return created


def create_section_tasks(
    order_item_id: int,
    section: Any,
    tasks: List[Dict[str, Any]],
    assigned_by: Optional[int] = None,
    session: Session = None,
) -> List[ProductionTask]:
    """
    Create a section's production task chain.

    Each task description is a dict with:
        task_type: One of PRODUCTION_TASK_TYPES
        worker_id: Active worker doing the task
        custom_task_name: Required when task_type is "custom"
        sequence_order: Position in the chain (default: list position + 1)
        notes: Optional notes

    The lowest sequence becomes READY, the rest PENDING, and the section
    moves to IN_PRODUCTION. Sections rejected by QA get a new chain the
    same way once their previous tasks are all completed.

    Raises:
        ValidationError: On unknown task types, inactive workers or duplicate sequences
        NotFoundError: If the item or the section does not exist
        IncompletePreconditionError: If the item has no production head
        StateConflictError: If the section is not ready for production or has open tasks
    """
    if session is not None:
        return _create_section_tasks_impl(order_item_id, section, tasks, assigned_by, session)

    with session_scope() as session:
        return _create_section_tasks_impl(order_item_id, section, tasks, assigned_by, session)


def _fire_task(task: ProductionTask, event: TaskEvent, operation: str) -> ProductionTaskStatus:
    try:
        return TASK_TRANSITIONS.fire(task.status, event, task.id)
    except StateConflictError:
        log_operation(
            logger,
            operation,
            "state_conflict",
            level=logging.WARNING,
            task_id=task.id,
            status=task.status.value,
        )
        raise


def _start_task_impl(task_id: int, user_id: Optional[int], session: Session) -> ProductionTask:
    task = repository.get_task(session, task_id)
    task.status = _fire_task(task, TaskEvent.START, "start_task")
    task.started_at = utc_now()

    repository.add_item_timeline(
        session,
        task.order_item,
        f"{task.display_name} started for {task.section}",
        user_id=user_id if user_id is not None else task.worker_id,
        details={"task_id": task.id, "section": task.section},
    )
    session.flush()
    log_operation(logger, "start_task", "success", task_id=task.id, section=task.section)
    return task


def start_task(task_id: int, user_id: Optional[int] = None, session: Session = None) -> ProductionTask:
    """
    Start a READY production task.

    Raises:
        NotFoundError: If task not found
        StateConflictError: If the task is not READY
    """
    if session is not None:
        return _start_task_impl(task_id, user_id, session)

    with session_scope() as session:
        return _start_task_impl(task_id, user_id, session)


def _complete_task_impl(
    task_id: int, notes: Optional[str], user_id: Optional[int], session: Session
) -> ProductionTask:
    task = repository.get_task(session, task_id)
    task.status = _fire_task(task, TaskEvent.COMPLETE, "complete_task")
    task.completed_at = utc_now()
    task.duration_minutes = minutes_between(task.started_at, task.completed_at)
    if notes:
        task.notes = notes
    session.flush()

    item = task.order_item
    section = task.section_id
    chain = _section_tasks(session, item.id, section)
    released = None
    pending = [t for t in chain if t.status == ProductionTaskStatus.PENDING]
    if pending:
        released = pending[0]
        released.status = TASK_TRANSITIONS.fire(released.status, TaskEvent.RELEASE, released.id)

    section_done = all(t.status == ProductionTaskStatus.COMPLETED for t in chain)
    if section_done:
        records = item.copy_section_records()
        target = SECTION_TRANSITIONS.fire(
            item.section_status(section),
            SectionEvent.COMPLETE_PRODUCTION,
            f"{item.id}:{section.value}",
        )
        repository.set_section_status(
            records, section, target, production_completed_at=task.completed_at
        )
        repository.write_sections(session, item, records)

    repository.add_item_timeline(
        session,
        item,
        f"{task.display_name} completed for {section.value}",
        user_id=user_id if user_id is not None else task.worker_id,
        details={
            "task_id": task.id,
            "duration_minutes": task.duration_minutes,
            "next_task_id": released.id if released is not None else None,
            "section_completed": section_done,
        },
    )
    session.flush()
    log_operation(
        logger,
        "complete_task",
        "success",
        task_id=task.id,
        section=section.value,
        duration_minutes=task.duration_minutes,
        section_completed=section_done,
    )
    return task


def complete_task(
    task_id: int,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = None,
) -> ProductionTask:
    """
    Complete an in-progress task and release the next one in the chain.

    When every task of the section is complete the section moves to
    PRODUCTION_COMPLETED and the item is re-aggregated.

    Raises:
        NotFoundError: If task not found
        StateConflictError: If the task is not IN_PROGRESS
    """
    if session is not None:
        return _complete_task_impl(task_id, notes, user_id, session)

    with session_scope() as session:
        return _complete_task_impl(task_id, notes, user_id, session)


# =============================================================================
# Hand-over to QA
# =============================================================================


def _send_to_qa_impl(
    order_item_id: int, sections: Iterable, user_id: Optional[int], session: Session
) -> OrderItem:
    parsed = repository.parse_section_names(sections)
    item = repository.get_order_item(session, order_item_id)
    repository.require_sections(item, parsed)

    targets = {}
    for section in parsed:
        try:
            targets[section] = SECTION_TRANSITIONS.fire(
                item.section_status(section),
                SectionEvent.SEND_TO_QA,
                f"{item.id}:{section.value}",
            )
        except StateConflictError:
            log_operation(
                logger,
                "send_to_qa",
                "state_conflict",
                level=logging.WARNING,
                order_item_id=item.id,
                section=section.value,
            )
            raise

    now = utc_now()
    records = item.copy_section_records()
    for section, target in targets.items():
        repository.set_section_status(records, section, target, qa_requested_at=now)
    repository.write_sections(session, item, records)

    names = [s.value for s in parsed]
    repository.add_item_timeline(
        session,
        item,
        f"Sent to QA: {', '.join(names)}",
        user_id=user_id,
        details={"sections": names},
    )
    session.flush()
    log_operation(logger, "send_to_qa", "success", order_item_id=item.id, sections=names)
    return item


def send_to_qa(
    order_item_id: int, sections: Iterable, user_id: Optional[int] = None, session: Session = None
) -> OrderItem:
    """
    Hand PRODUCTION_COMPLETED sections over to QA.

    Raises:
        StateConflictError: If a section is not PRODUCTION_COMPLETED
    """
    if session is not None:
        return _send_to_qa_impl(order_item_id, sections, user_id, session)

    with session_scope() as session:
        return _send_to_qa_impl(order_item_id, sections, user_id, session)


# =============================================================================
# Queries
# =============================================================================


def list_section_tasks(
    order_item_id: int, section: Any, session: Session = None
) -> List[ProductionTask]:
    """A section's tasks in sequence order."""

    def _query(session: Session) -> List[ProductionTask]:
        (parsed,) = repository.parse_section_names([section], field="section")
        item = repository.get_order_item(session, order_item_id)
        repository.require_sections(item, [parsed])
        return _section_tasks(session, item.id, parsed)

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)


def list_worker_tasks(
    worker_id: int,
    status: Optional[ProductionTaskStatus] = None,
    session: Session = None,
) -> List[ProductionTask]:
    """Tasks assigned to a worker, optionally filtered by status, oldest first."""

    def _query(session: Session) -> List[ProductionTask]:
        query = session.query(ProductionTask).filter(ProductionTask.worker_id == worker_id)
        if status is not None:
            query = query.filter(ProductionTask.status == ProductionTaskStatus(status))
        return query.order_by(ProductionTask.id).all()

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)


def count_head_assignments(session: Session = None) -> Dict[int, int]:
    """Number of order items assigned to each active production head."""

    def _query(session: Session) -> Dict[int, int]:
        counts = dict(
            session.query(OrderItem.production_head_id, func.count(OrderItem.id))
            .filter(OrderItem.production_head_id.isnot(None))
            .group_by(OrderItem.production_head_id)
            .all()
        )
        heads = repository.list_active_production_heads(session)
        return {head.id: counts.get(head.id, 0) for head in heads}

    if session is not None:
        return _query(session)

    with session_scope() as session:
        return _query(session)
