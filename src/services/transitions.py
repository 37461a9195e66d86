"""Transition tables for the fulfillment state machines.

Each entity (order, order item, section, packet, production task) has a
fixed table mapping an event to the statuses it may fire from and the
status it leads to. Services never assign a status directly; they ask the
table for the next status, which raises StateConflictError (naming the
required statuses) when the event is not legal from the current one.

Order item statuses are mostly derived by the status aggregator; the item
table only covers the transitions that are decided explicitly (inventory
check outcome, packet opening, dispatch).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Generic, Mapping, Tuple, TypeVar

from src.models.enums import (
    OrderItemStatus,
    OrderStatus,
    PacketStatus,
    ProductionTaskStatus,
    SectionStatus,
)
from src.services.exceptions import StateConflictError

S = TypeVar("S", bound=Enum)


class SectionEvent(str, Enum):
    QUEUE_INVENTORY_CHECK = "queue_inventory_check"
    MATERIAL_SHORT = "material_short"
    MATERIAL_PASSED = "material_passed"
    ADD_TO_PACKET = "add_to_packet"
    APPROVE_TO_DYEING = "approve_to_dyeing"
    APPROVE_TO_PRODUCTION = "approve_to_production"
    APPROVE_READY_STOCK = "approve_ready_stock"
    REJECT_PACKET = "reject_packet"
    ACCEPT_DYEING = "accept_dyeing"
    START_DYEING = "start_dyeing"
    COMPLETE_DYEING = "complete_dyeing"
    REJECT_DYEING = "reject_dyeing"
    START_PRODUCTION = "start_production"
    COMPLETE_PRODUCTION = "complete_production"
    SEND_TO_QA = "send_to_qa"
    PASS_QA = "pass_qa"
    REJECT_QA = "reject_qa"
    SEND_TO_CLIENT = "send_to_client"
    CLIENT_APPROVE = "client_approve"
    COMPLETE_ORDER = "complete_order"


class PacketEvent(str, Enum):
    ASSIGN = "assign"
    START = "start"
    PICK = "pick"
    COMPLETE = "complete"
    APPROVE = "approve"
    REJECT = "reject"
    REOPEN_ASSIGNED = "reopen_assigned"
    REOPEN_UNASSIGNED = "reopen_unassigned"
    INVALIDATE = "invalidate"


class TaskEvent(str, Enum):
    RELEASE = "release"
    START = "start"
    COMPLETE = "complete"


class OrderItemEvent(str, Enum):
    SEND_TO_INVENTORY_CHECK = "send_to_inventory_check"
    INVENTORY_PASSED = "inventory_passed"
    INVENTORY_SHORT = "inventory_short"
    OPEN_PACKET = "open_packet"
    DISPATCH = "dispatch"
    COMPLETE = "complete"


class OrderEvent(str, Enum):
    DISPATCH = "dispatch"
    COMPLETE = "complete"


@dataclass(frozen=True)
class TransitionTable(Generic[S]):
    """An event -> (allowed source statuses, target status) table."""

    entity: str
    rules: Mapping[Enum, Tuple[FrozenSet[S], S]]

    def can_fire(self, current: S, event: Enum) -> bool:
        sources, _ = self.rules[event]
        return current in sources

    def required(self, event: Enum) -> list:
        sources, _ = self.rules[event]
        return sorted(s.value for s in sources)

    def fire(self, current: S, event: Enum, entity_id, action: str = None) -> S:
        """
        Return the status ``event`` leads to from ``current``.

        Raises:
            StateConflictError: If the event is not legal from ``current``
        """
        sources, target = self.rules[event]
        if current not in sources:
            raise StateConflictError(
                self.entity,
                entity_id,
                current,
                self.required(event),
                action or event.value.replace("_", " "),
            )
        return target


def _from(*statuses) -> FrozenSet:
    return frozenset(statuses)


# Sections that are past packet verification: dyeing, production, QA,
# client approval or completed. Packet approval and rejection never touch them.
_BEYOND_PACKET_VERIFICATION: FrozenSet[SectionStatus] = frozenset(
    {
        SectionStatus.READY_FOR_DYEING,
        SectionStatus.DYEING_ACCEPTED,
        SectionStatus.DYEING_IN_PROGRESS,
        SectionStatus.DYEING_COMPLETED,
        SectionStatus.READY_FOR_PRODUCTION,
        SectionStatus.IN_PRODUCTION,
        SectionStatus.QA_REJECTED,
        SectionStatus.PRODUCTION_COMPLETED,
        SectionStatus.QA_PENDING,
        SectionStatus.READY_FOR_CLIENT_APPROVAL,
        SectionStatus.AWAITING_CLIENT_APPROVAL,
        SectionStatus.CLIENT_APPROVED,
        SectionStatus.COMPLETED,
    }
)


def is_beyond_packet_verification(status: SectionStatus) -> bool:
    """True when a section has moved past packet verification."""
    return SectionStatus(status) in _BEYOND_PACKET_VERIFICATION


_PACKET_STAGE = _from(
    SectionStatus.INVENTORY_PASSED,
    SectionStatus.CREATE_PACKET,
    SectionStatus.PACKET_CREATED,
    SectionStatus.PACKET_VERIFIED,
)

# An unchanged-stock re-check reproduces the same outcome
_CHECKED_OR_PENDING = _from(
    SectionStatus.PENDING_INVENTORY_CHECK,
    SectionStatus.AWAITING_MATERIAL,
    SectionStatus.INVENTORY_PASSED,
)

SECTION_TRANSITIONS: TransitionTable[SectionStatus] = TransitionTable(
    "Section",
    {
        SectionEvent.QUEUE_INVENTORY_CHECK: (
            _from(
                SectionStatus.PENDING_INVENTORY_CHECK,
                SectionStatus.AWAITING_MATERIAL,
                SectionStatus.INVENTORY_PASSED,
                SectionStatus.CREATE_PACKET,
            ),
            SectionStatus.PENDING_INVENTORY_CHECK,
        ),
        SectionEvent.MATERIAL_SHORT: (
            _CHECKED_OR_PENDING,
            SectionStatus.AWAITING_MATERIAL,
        ),
        SectionEvent.MATERIAL_PASSED: (
            _CHECKED_OR_PENDING,
            SectionStatus.INVENTORY_PASSED,
        ),
        SectionEvent.ADD_TO_PACKET: (
            _from(
                SectionStatus.INVENTORY_PASSED,
                SectionStatus.CREATE_PACKET,
                SectionStatus.AWAITING_MATERIAL,
            ),
            SectionStatus.PACKET_CREATED,
        ),
        SectionEvent.APPROVE_TO_DYEING: (_PACKET_STAGE, SectionStatus.READY_FOR_DYEING),
        SectionEvent.APPROVE_TO_PRODUCTION: (_PACKET_STAGE, SectionStatus.READY_FOR_PRODUCTION),
        SectionEvent.APPROVE_READY_STOCK: (_PACKET_STAGE, SectionStatus.QA_PENDING),
        SectionEvent.REJECT_PACKET: (_PACKET_STAGE, SectionStatus.CREATE_PACKET),
        SectionEvent.ACCEPT_DYEING: (
            _from(SectionStatus.READY_FOR_DYEING),
            SectionStatus.DYEING_ACCEPTED,
        ),
        SectionEvent.START_DYEING: (
            _from(SectionStatus.DYEING_ACCEPTED),
            SectionStatus.DYEING_IN_PROGRESS,
        ),
        SectionEvent.COMPLETE_DYEING: (
            _from(SectionStatus.DYEING_IN_PROGRESS),
            SectionStatus.DYEING_COMPLETED,
        ),
        SectionEvent.REJECT_DYEING: (
            _from(
                SectionStatus.READY_FOR_DYEING,
                SectionStatus.DYEING_ACCEPTED,
                SectionStatus.DYEING_IN_PROGRESS,
            ),
            SectionStatus.CREATE_PACKET,
        ),
        SectionEvent.START_PRODUCTION: (
            _from(
                SectionStatus.READY_FOR_PRODUCTION,
                SectionStatus.DYEING_COMPLETED,
                SectionStatus.QA_REJECTED,
            ),
            SectionStatus.IN_PRODUCTION,
        ),
        SectionEvent.COMPLETE_PRODUCTION: (
            _from(SectionStatus.IN_PRODUCTION),
            SectionStatus.PRODUCTION_COMPLETED,
        ),
        SectionEvent.SEND_TO_QA: (
            _from(SectionStatus.PRODUCTION_COMPLETED),
            SectionStatus.QA_PENDING,
        ),
        SectionEvent.PASS_QA: (
            _from(SectionStatus.QA_PENDING),
            SectionStatus.READY_FOR_CLIENT_APPROVAL,
        ),
        SectionEvent.REJECT_QA: (_from(SectionStatus.QA_PENDING), SectionStatus.QA_REJECTED),
        SectionEvent.SEND_TO_CLIENT: (
            _from(SectionStatus.READY_FOR_CLIENT_APPROVAL),
            SectionStatus.AWAITING_CLIENT_APPROVAL,
        ),
        SectionEvent.CLIENT_APPROVE: (
            _from(SectionStatus.AWAITING_CLIENT_APPROVAL),
            SectionStatus.CLIENT_APPROVED,
        ),
        SectionEvent.COMPLETE_ORDER: (
            _from(SectionStatus.CLIENT_APPROVED, SectionStatus.COMPLETED),
            SectionStatus.COMPLETED,
        ),
    },
)

PACKET_TRANSITIONS: TransitionTable[PacketStatus] = TransitionTable(
    "Packet",
    {
        PacketEvent.ASSIGN: (
            _from(PacketStatus.UNASSIGNED, PacketStatus.ASSIGNED),
            PacketStatus.ASSIGNED,
        ),
        PacketEvent.START: (_from(PacketStatus.ASSIGNED), PacketStatus.IN_PROGRESS),
        PacketEvent.PICK: (_from(PacketStatus.IN_PROGRESS), PacketStatus.IN_PROGRESS),
        PacketEvent.COMPLETE: (_from(PacketStatus.IN_PROGRESS), PacketStatus.COMPLETED),
        PacketEvent.APPROVE: (_from(PacketStatus.COMPLETED), PacketStatus.APPROVED),
        # Rework goes back to the same assignee, never to UNASSIGNED
        PacketEvent.REJECT: (_from(PacketStatus.COMPLETED), PacketStatus.ASSIGNED),
        PacketEvent.REOPEN_ASSIGNED: (
            _from(
                PacketStatus.UNASSIGNED,
                PacketStatus.ASSIGNED,
                PacketStatus.APPROVED,
                PacketStatus.INVALIDATED,
            ),
            PacketStatus.ASSIGNED,
        ),
        PacketEvent.REOPEN_UNASSIGNED: (
            _from(PacketStatus.UNASSIGNED, PacketStatus.APPROVED, PacketStatus.INVALIDATED),
            PacketStatus.UNASSIGNED,
        ),
        PacketEvent.INVALIDATE: (
            _from(
                PacketStatus.UNASSIGNED,
                PacketStatus.ASSIGNED,
                PacketStatus.IN_PROGRESS,
                PacketStatus.COMPLETED,
                PacketStatus.APPROVED,
            ),
            PacketStatus.INVALIDATED,
        ),
    },
)

TASK_TRANSITIONS: TransitionTable[ProductionTaskStatus] = TransitionTable(
    "ProductionTask",
    {
        TaskEvent.RELEASE: (_from(ProductionTaskStatus.PENDING), ProductionTaskStatus.READY),
        TaskEvent.START: (_from(ProductionTaskStatus.READY), ProductionTaskStatus.IN_PROGRESS),
        TaskEvent.COMPLETE: (
            _from(ProductionTaskStatus.IN_PROGRESS),
            ProductionTaskStatus.COMPLETED,
        ),
    },
)

# Re-running the check before a packet exists is allowed from its own outcomes
_INVENTORY_OUTCOME_SOURCES = _from(
    OrderItemStatus.INVENTORY_CHECK,
    OrderItemStatus.READY_FOR_PRODUCTION,
    OrderItemStatus.AWAITING_MATERIAL,
)

ORDER_ITEM_TRANSITIONS: TransitionTable[OrderItemStatus] = TransitionTable(
    "OrderItem",
    {
        OrderItemEvent.SEND_TO_INVENTORY_CHECK: (
            _from(OrderItemStatus.RECEIVED, OrderItemStatus.AWAITING_MATERIAL),
            OrderItemStatus.INVENTORY_CHECK,
        ),
        OrderItemEvent.INVENTORY_PASSED: (
            _INVENTORY_OUTCOME_SOURCES,
            OrderItemStatus.READY_FOR_PRODUCTION,
        ),
        OrderItemEvent.INVENTORY_SHORT: (
            _INVENTORY_OUTCOME_SOURCES,
            OrderItemStatus.AWAITING_MATERIAL,
        ),
        OrderItemEvent.OPEN_PACKET: (
            _from(
                OrderItemStatus.READY_FOR_PRODUCTION,
                OrderItemStatus.AWAITING_MATERIAL,
                OrderItemStatus.CREATE_PACKET,
            ),
            OrderItemStatus.CREATE_PACKET,
        ),
        OrderItemEvent.DISPATCH: (
            _from(OrderItemStatus.READY_FOR_DISPATCH),
            OrderItemStatus.DISPATCHED,
        ),
        OrderItemEvent.COMPLETE: (_from(OrderItemStatus.DISPATCHED), OrderItemStatus.COMPLETED),
    },
)

ORDER_TRANSITIONS: TransitionTable[OrderStatus] = TransitionTable(
    "Order",
    {
        OrderEvent.DISPATCH: (_from(OrderStatus.READY_FOR_DISPATCH), OrderStatus.DISPATCHED),
        OrderEvent.COMPLETE: (_from(OrderStatus.DISPATCHED), OrderStatus.COMPLETED),
    },
)

ALL_TABLES: Dict[str, TransitionTable] = {
    table.entity: table
    for table in (
        SECTION_TRANSITIONS,
        PACKET_TRANSITIONS,
        TASK_TRANSITIONS,
        ORDER_ITEM_TRANSITIONS,
        ORDER_TRANSITIONS,
    )
}
