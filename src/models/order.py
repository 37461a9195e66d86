"""
Order models for garment fulfillment.

This module contains:
- Order: Customer order with payments and dispatch details
- OrderItem: One garment of an order, tracked per section
- TimelineEntry: Append-only audit trail for orders and order items
"""

import copy
from typing import Dict, List

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import relationship

from src.utils.datetime_utils import utc_now
from .base import BaseModel
from .enums import OrderItemStatus, OrderStatus, SectionStatus
from .section import Section


class Order(BaseModel):
    """
    Customer order.

    Attributes:
        order_number: Human facing order reference
        customer_name: Who the order is for
        destination_address: Where it ships to
        customer_phone: Contact number
        total_amount: Order value
        payments: List of payment records (amount, method, paid_at, reference)
        status: Order-level status, derived from items until dispatch
        fwd_date: Forward/delivery date promised to the customer
        is_urgent: Urgent orders are flagged for priority handling
        dispatch_data: Courier, tracking number and dispatch date once shipped
    """

    __tablename__ = "orders"

    order_number = Column(String(50), nullable=False, unique=True)
    customer_name = Column(String(200), nullable=False)
    destination_address = Column(Text, nullable=True)
    customer_phone = Column(String(50), nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    payments = Column(JSON, nullable=False, default=list)
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.RECEIVED)
    fwd_date = Column(Date, nullable=True)
    is_urgent = Column(Boolean, nullable=False, default=False)
    dispatch_data = Column(JSON, nullable=True)
    dispatched_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    timeline = relationship(
        "TimelineEntry",
        primaryjoin="and_(Order.id == TimelineEntry.order_id, TimelineEntry.order_item_id == None)",
        order_by="TimelineEntry.id",
        viewonly=True,
    )

    __table_args__ = (
        Index("idx_order_status", "status"),
        Index("idx_order_fwd_date", "fwd_date"),
    )

    @property
    def amount_paid(self) -> float:
        return round(sum(float(p.get("amount", 0)) for p in self.payments or []), 2)

    @property
    def balance_due(self) -> float:
        return round(float(self.total_amount or 0) - self.amount_paid, 2)

    def __repr__(self) -> str:
        """String representation of order."""
        return f"Order(id={self.id}, number='{self.order_number}', status={self.status.value})"


class OrderItem(BaseModel):
    """
    One garment of an order.

    Each garment piece (section) carries its own status record inside
    ``section_statuses``, keyed by the Section value. The record is a plain
    dict: ``status`` plus transition timestamps and workflow annexes.

    The row is versioned: writing a stale copy raises StaleDataError, which
    serializes concurrent updates to sibling sections. Section records must
    therefore be replaced as a whole (see ``replace_section_records``), never
    mutated in place.

    Attributes:
        order_id: Owning order
        product_id: Product ordered
        size: Standard size code or CUSTOM
        quantity: Number of garments
        included_pieces: Base pieces included in this item
        add_on_pieces: Add-on pieces the customer selected
        section_statuses: Section value -> section status record
        material_requirements: Result of the last inventory check
        custom_bom: BOM lines used when size is CUSTOM
        is_ready_stock: Item was fulfilled from ready stock
        status: Derived overall status
        production_head_id: Head assigned by round-robin
        re_video_request: Open request from sales for a new QA video
            (sections with notes, requested_by, requested_at), or None
    """

    __tablename__ = "order_items"

    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    size = Column(String(10), nullable=False)
    quantity = Column(Float, nullable=False, default=1)
    included_pieces = Column(JSON, nullable=False, default=list)
    add_on_pieces = Column(JSON, nullable=False, default=list)
    section_statuses = Column(JSON, nullable=False, default=dict)
    material_requirements = Column(JSON, nullable=True)
    custom_bom = Column(JSON, nullable=True)
    is_ready_stock = Column(Boolean, nullable=False, default=False)
    status = Column(SQLEnum(OrderItemStatus), nullable=False, default=OrderItemStatus.RECEIVED)
    production_head_id = Column(Integer, ForeignKey("workers.id"), nullable=True)
    production_assigned_at = Column(DateTime, nullable=True)
    re_video_request = Column(JSON(none_as_null=True), nullable=True)
    version = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
    production_head = relationship("Worker")
    procurement_demands = relationship(
        "ProcurementDemand",
        back_populates="order_item",
        cascade="all, delete-orphan",
        order_by="ProcurementDemand.id",
    )
    packet = relationship(
        "Packet", back_populates="order_item", uselist=False, cascade="all, delete-orphan"
    )
    tasks = relationship(
        "ProductionTask",
        back_populates="order_item",
        cascade="all, delete-orphan",
        order_by="ProductionTask.sequence_order",
    )
    timeline = relationship(
        "TimelineEntry",
        primaryjoin="OrderItem.id == TimelineEntry.order_item_id",
        order_by="TimelineEntry.id",
        viewonly=True,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (Index("idx_order_item_status", "status"),)

    @property
    def sections(self) -> List[Section]:
        """Sections tracked on this item, in insertion order."""
        return [Section.parse(key) for key in (self.section_statuses or {})]

    def has_section(self, section: Section) -> bool:
        return section.value in (self.section_statuses or {})

    def section_status(self, section: Section) -> SectionStatus:
        return SectionStatus(self.section_statuses[section.value]["status"])

    def section_status_map(self) -> Dict[Section, SectionStatus]:
        return {
            Section.parse(key): SectionStatus(record["status"])
            for key, record in (self.section_statuses or {}).items()
        }

    def copy_section_records(self) -> Dict[str, dict]:
        """Deep copy of the section records, safe to mutate."""
        return copy.deepcopy(dict(self.section_statuses or {}))

    def replace_section_records(self, records: Dict[str, dict]) -> None:
        """Write back a full set of section records."""
        self.section_statuses = records
        self.updated_at = utc_now()

    def __repr__(self) -> str:
        """String representation of order item."""
        return f"OrderItem(id={self.id}, order_id={self.order_id}, status={self.status.value})"


class TimelineEntry(BaseModel):
    """
    Append-only audit record.

    Entries attach to an order, and optionally to one of its items. Services
    only ever insert them.

    Attributes:
        order_id: Order the entry belongs to
        order_item_id: Item the entry belongs to (None for order-level entries)
        action: What happened, in words
        user_id: Acting worker, if any
        user_name: Acting worker's name at the time, or "System"
        timestamp: When it happened
        details: Structured extra data
    """

    __tablename__ = "timeline_entries"

    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    order_item_id = Column(
        Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=True, index=True
    )
    action = Column(Text, nullable=False)
    user_id = Column(Integer, nullable=True)
    user_name = Column(String(200), nullable=False, default="System")
    timestamp = Column(DateTime, nullable=False, default=utc_now)
    details = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        """String representation of timeline entry."""
        return f"TimelineEntry(id={self.id}, action='{self.action[:40]}')"
