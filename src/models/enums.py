"""
Enumerations for the fulfillment workflow.

This module contains the status enums used across workflow models:
- OrderStatus: Order-level lifecycle
- OrderItemStatus: Derived status of one garment order item
- SectionStatus: Status of one garment section within an order item
- PacketStatus: Material-picking packet lifecycle
- ProductionTaskStatus: Production task lifecycle
- MaterialStatus: Inventory check classification
- ProcurementDemandStatus: Replenishment request lifecycle
- StockMovementReason: Why a stock level changed
- WorkerRole: Department a worker belongs to
"""

from enum import Enum


class OrderStatus(str, Enum):
    """
    Order-level status.

    Values:
        RECEIVED: No item has started moving through the pipeline
        IN_PROGRESS: At least one item is being worked on
        READY_FOR_DISPATCH: Every item has client approval
        DISPATCHED: Handed over to the courier
        COMPLETED: Delivery confirmed
    """

    RECEIVED = "RECEIVED"
    IN_PROGRESS = "IN_PROGRESS"
    READY_FOR_DISPATCH = "READY_FOR_DISPATCH"
    DISPATCHED = "DISPATCHED"
    COMPLETED = "COMPLETED"


class OrderItemStatus(str, Enum):
    """Overall status of an order item, derived from its sections."""

    RECEIVED = "RECEIVED"
    INVENTORY_CHECK = "INVENTORY_CHECK"
    AWAITING_MATERIAL = "AWAITING_MATERIAL"
    CREATE_PACKET = "CREATE_PACKET"
    PACKET_CHECK = "PACKET_CHECK"
    READY_FOR_DYEING = "READY_FOR_DYEING"
    PARTIALLY_IN_DYEING = "PARTIALLY_IN_DYEING"
    IN_DYEING = "IN_DYEING"
    DYEING_COMPLETED = "DYEING_COMPLETED"
    READY_FOR_PRODUCTION = "READY_FOR_PRODUCTION"
    PARTIAL_IN_PRODUCTION = "PARTIAL_IN_PRODUCTION"
    IN_PRODUCTION = "IN_PRODUCTION"
    PRODUCTION_COMPLETED = "PRODUCTION_COMPLETED"
    QUALITY_ASSURANCE = "QUALITY_ASSURANCE"
    READY_FOR_CLIENT_APPROVAL = "READY_FOR_CLIENT_APPROVAL"
    AWAITING_CLIENT_APPROVAL = "AWAITING_CLIENT_APPROVAL"
    READY_FOR_DISPATCH = "READY_FOR_DISPATCH"
    DISPATCHED = "DISPATCHED"
    COMPLETED = "COMPLETED"


class SectionStatus(str, Enum):
    """
    Status of a single garment section (shirt, dupatta, ...).

    Statuses are declared in pipeline order; several helpers in the
    service layer rely on that ordering.
    """

    PENDING_INVENTORY_CHECK = "PENDING_INVENTORY_CHECK"
    AWAITING_MATERIAL = "AWAITING_MATERIAL"
    INVENTORY_PASSED = "INVENTORY_PASSED"
    CREATE_PACKET = "CREATE_PACKET"
    PACKET_CREATED = "PACKET_CREATED"
    PACKET_VERIFIED = "PACKET_VERIFIED"
    READY_FOR_DYEING = "READY_FOR_DYEING"
    DYEING_ACCEPTED = "DYEING_ACCEPTED"
    DYEING_IN_PROGRESS = "DYEING_IN_PROGRESS"
    DYEING_COMPLETED = "DYEING_COMPLETED"
    READY_FOR_PRODUCTION = "READY_FOR_PRODUCTION"
    IN_PRODUCTION = "IN_PRODUCTION"
    QA_REJECTED = "QA_REJECTED"
    PRODUCTION_COMPLETED = "PRODUCTION_COMPLETED"
    QA_PENDING = "QA_PENDING"
    READY_FOR_CLIENT_APPROVAL = "READY_FOR_CLIENT_APPROVAL"
    AWAITING_CLIENT_APPROVAL = "AWAITING_CLIENT_APPROVAL"
    CLIENT_APPROVED = "CLIENT_APPROVED"
    COMPLETED = "COMPLETED"


class PacketStatus(str, Enum):
    """
    Material-picking packet status.

    Values:
        UNASSIGNED: Created, nobody picking yet
        ASSIGNED: Assigned to a fabrication worker (also the rework state)
        IN_PROGRESS: Worker is picking materials
        COMPLETED: All lines picked, awaiting verification
        APPROVED: Verified; covered sections moved on
        REJECTED: Verdict only, kept in check_result; the packet itself returns to ASSIGNED
        INVALIDATED: Every section was pulled back by dyeing rejection
    """

    UNASSIGNED = "UNASSIGNED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    INVALIDATED = "INVALIDATED"


class ProductionTaskStatus(str, Enum):
    """Production task status within a section's task chain."""

    PENDING = "PENDING"
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class MaterialStatus(str, Enum):
    """Inventory check classification for one consolidated requirement."""

    SUFFICIENT = "SUFFICIENT"
    SHORTAGE = "SHORTAGE"


class ProcurementDemandStatus(str, Enum):
    """
    Procurement demand status.

    Values:
        OPEN: Shortage recorded, nothing ordered yet
        ORDERED: Purchase placed with a supplier
        RECEIVED: Material arrived
        CANCELLED: No longer needed
    """

    OPEN = "OPEN"
    ORDERED = "ORDERED"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"


class StockMovementReason(str, Enum):
    """
    Why an inventory item's stock changed.

    Values:
        OPENING_BALANCE: Stock the item was created with
        RECEIPT: Material received from a supplier
        PACKET_CONSUMPTION: Picked lines consumed when a packet completed
        PACKET_REJECTION_RELEASE: Consumed lines returned by a packet rejection
        DYEING_REJECTION_RELEASE: Consumed lines returned by a dyeing rejection
    """

    OPENING_BALANCE = "OPENING_BALANCE"
    RECEIPT = "RECEIPT"
    PACKET_CONSUMPTION = "PACKET_CONSUMPTION"
    PACKET_REJECTION_RELEASE = "PACKET_REJECTION_RELEASE"
    DYEING_REJECTION_RELEASE = "DYEING_REJECTION_RELEASE"


class WorkerRole(str, Enum):
    """Department a worker belongs to."""

    FABRICATION = "fabrication"
    DYEING = "dyeing"
    PRODUCTION_HEAD = "production_head"
    PRODUCTION_WORKER = "production_worker"
    QA = "qa"
    SALES = "sales"
    DISPATCH = "dispatch"
