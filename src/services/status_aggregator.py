"""Status aggregation for order items and orders.

Derives an order item's overall status from its independent section
statuses (plus the packet state), and an order's status from its items.

Both functions are pure: they read the statuses they are given and return
a status. They never write section state, so they can be called after any
mutation without side effects.

Precedence for order items (highest first):
    1. No sections                                   -> RECEIVED
    2. All sections COMPLETED                        -> COMPLETED
    3. Packet COMPLETED, awaiting verification       -> PACKET_CHECK
    4. Any mid-dyeing and any at packet stage        -> PARTIALLY_IN_DYEING
    5. Any in production or later and any at packet  -> PARTIAL_IN_PRODUCTION
    6. Otherwise all sections share a stage          -> that stage's item status
"""

from typing import Iterable, Mapping, Optional

from src.models.enums import OrderItemStatus, OrderStatus, PacketStatus, SectionStatus
from src.models.section import Section

# Before the packet is verified: inventory, shortage and packet creation
PACKET_STAGE = frozenset(
    {
        SectionStatus.PENDING_INVENTORY_CHECK,
        SectionStatus.AWAITING_MATERIAL,
        SectionStatus.INVENTORY_PASSED,
        SectionStatus.CREATE_PACKET,
        SectionStatus.PACKET_CREATED,
        SectionStatus.PACKET_VERIFIED,
    }
)

DYEING_STAGE = frozenset(
    {
        SectionStatus.READY_FOR_DYEING,
        SectionStatus.DYEING_ACCEPTED,
        SectionStatus.DYEING_IN_PROGRESS,
        SectionStatus.DYEING_COMPLETED,
    }
)

PRODUCTION_STAGE = frozenset(
    {
        SectionStatus.READY_FOR_PRODUCTION,
        SectionStatus.IN_PRODUCTION,
        SectionStatus.QA_REJECTED,
        SectionStatus.PRODUCTION_COMPLETED,
    }
)

POST_PRODUCTION_STAGE = frozenset(
    {
        SectionStatus.QA_PENDING,
        SectionStatus.READY_FOR_CLIENT_APPROVAL,
        SectionStatus.AWAITING_CLIENT_APPROVAL,
        SectionStatus.CLIENT_APPROVED,
        SectionStatus.COMPLETED,
    }
)

_AT_LEAST_CLIENT_READY = frozenset(
    {
        SectionStatus.READY_FOR_CLIENT_APPROVAL,
        SectionStatus.AWAITING_CLIENT_APPROVAL,
        SectionStatus.CLIENT_APPROVED,
        SectionStatus.COMPLETED,
    }
)
_AT_LEAST_AWAITING_CLIENT = _AT_LEAST_CLIENT_READY - {SectionStatus.READY_FOR_CLIENT_APPROVAL}
_CLIENT_APPROVED_OR_DONE = frozenset({SectionStatus.CLIENT_APPROVED, SectionStatus.COMPLETED})
_PRODUCTION_DONE_OR_LATER = POST_PRODUCTION_STAGE | {SectionStatus.PRODUCTION_COMPLETED}
_PRODUCTION_ELIGIBLE = frozenset(
    {SectionStatus.READY_FOR_PRODUCTION, SectionStatus.DYEING_COMPLETED}
)


def _all_in(statuses, group) -> bool:
    return all(status in group for status in statuses)


def _any_in(statuses, group) -> bool:
    return any(status in group for status in statuses)


def _aggregate_packet_stage(statuses, packet_status: Optional[PacketStatus]) -> OrderItemStatus:
    if SectionStatus.PENDING_INVENTORY_CHECK in statuses:
        return OrderItemStatus.INVENTORY_CHECK
    if packet_status is None and SectionStatus.AWAITING_MATERIAL in statuses:
        return OrderItemStatus.AWAITING_MATERIAL
    return OrderItemStatus.CREATE_PACKET


def _aggregate_dyeing_stage(statuses) -> OrderItemStatus:
    if _all_in(statuses, {SectionStatus.READY_FOR_DYEING}):
        return OrderItemStatus.READY_FOR_DYEING
    if _all_in(statuses, {SectionStatus.DYEING_COMPLETED}):
        return OrderItemStatus.DYEING_COMPLETED
    return OrderItemStatus.IN_DYEING


def _aggregate_post_production(statuses) -> OrderItemStatus:
    if _all_in(statuses, _CLIENT_APPROVED_OR_DONE):
        return OrderItemStatus.READY_FOR_DISPATCH
    if _all_in(statuses, _AT_LEAST_AWAITING_CLIENT):
        return OrderItemStatus.AWAITING_CLIENT_APPROVAL
    if _all_in(statuses, _AT_LEAST_CLIENT_READY):
        return OrderItemStatus.READY_FOR_CLIENT_APPROVAL
    return OrderItemStatus.QUALITY_ASSURANCE


def _aggregate_production(statuses) -> OrderItemStatus:
    if _all_in(statuses, {SectionStatus.READY_FOR_PRODUCTION}):
        return OrderItemStatus.READY_FOR_PRODUCTION
    if _all_in(statuses, _PRODUCTION_DONE_OR_LATER):
        return OrderItemStatus.PRODUCTION_COMPLETED
    if _all_in(statuses, {SectionStatus.IN_PRODUCTION}):
        return OrderItemStatus.IN_PRODUCTION
    return OrderItemStatus.PARTIAL_IN_PRODUCTION


def aggregate(
    section_statuses: Mapping[Section, SectionStatus],
    packet_status: Optional[PacketStatus] = None,
) -> OrderItemStatus:
    """
    Derive an order item's status from its sections.

    Args:
        section_statuses: Section -> status for every section of the item
        packet_status: Status of the item's packet, or None if it has none

    Returns:
        The order item status. Defined for every combination of inputs;
        the same multiset of section statuses always gives the same result.
    """
    statuses = [SectionStatus(s) for s in section_statuses.values()]
    if packet_status is not None:
        packet_status = PacketStatus(packet_status)

    if not statuses:
        return OrderItemStatus.RECEIVED
    if _all_in(statuses, {SectionStatus.COMPLETED}):
        return OrderItemStatus.COMPLETED
    if packet_status == PacketStatus.COMPLETED:
        return OrderItemStatus.PACKET_CHECK

    at_packet = _any_in(statuses, PACKET_STAGE)
    in_dyeing = _any_in(statuses, DYEING_STAGE)
    in_production = _any_in(statuses, PRODUCTION_STAGE | POST_PRODUCTION_STAGE)

    if at_packet and in_dyeing:
        return OrderItemStatus.PARTIALLY_IN_DYEING
    if at_packet and in_production:
        return OrderItemStatus.PARTIAL_IN_PRODUCTION
    if at_packet:
        return _aggregate_packet_stage(statuses, packet_status)

    if in_dyeing and not in_production:
        return _aggregate_dyeing_stage(statuses)
    if in_dyeing:
        if _all_in(statuses, _PRODUCTION_ELIGIBLE):
            return OrderItemStatus.READY_FOR_PRODUCTION
        return OrderItemStatus.PARTIAL_IN_PRODUCTION

    if _all_in(statuses, POST_PRODUCTION_STAGE):
        return _aggregate_post_production(statuses)
    return _aggregate_production(statuses)


_ORDER_READY = frozenset(
    {
        OrderItemStatus.READY_FOR_DISPATCH,
        OrderItemStatus.DISPATCHED,
        OrderItemStatus.COMPLETED,
    }
)


def aggregate_order(item_statuses: Iterable[OrderItemStatus]) -> OrderStatus:
    """
    Derive an order's pre-dispatch status from its items.

    Dispatch and completion are set explicitly by the dispatch workflow,
    not derived here.
    """
    statuses = [OrderItemStatus(s) for s in item_statuses]
    if not statuses or _all_in(statuses, {OrderItemStatus.RECEIVED}):
        return OrderStatus.RECEIVED
    if _all_in(statuses, _ORDER_READY):
        return OrderStatus.READY_FOR_DISPATCH
    return OrderStatus.IN_PROGRESS
