"""
Packet models for fabrication material picking.

This module contains:
- Packet: The material-picking task for one order item
- PickListItem: One material line to pull from the racks
"""

from typing import List

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import relationship

from src.utils.constants import DEFAULT_RACK_LOCATION
from .base import BaseModel
from .enums import PacketStatus
from .section import Section


class Packet(BaseModel):
    """
    Material-picking packet for an order item.

    A packet is full when it covers every section of the item, or partial
    when some sections were short of material at creation time. Sections
    added later arrive as a new round; ``current_round_sections`` names the
    sections the latest round added.

    Attributes:
        order_item_id: Owning order item (one packet per item)
        status: Packet lifecycle status
        packet_round: Starts at 1, incremented per added round
        is_partial: True while any section is pending
        sections_included: Section values this packet covers
        sections_pending: Section values still waiting for material or rework
        current_round_sections: Section values added by the latest round
        assigned_to: Fabrication worker doing the picking
        total_items / picked_items: Pick-list progress counters
    """

    __tablename__ = "packets"

    order_item_id = Column(
        Integer,
        ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    status = Column(SQLEnum(PacketStatus), nullable=False, default=PacketStatus.UNASSIGNED)
    packet_round = Column(Integer, nullable=False, default=1)
    is_partial = Column(Boolean, nullable=False, default=False)
    sections_included = Column(JSON, nullable=False, default=list)
    sections_pending = Column(JSON, nullable=False, default=list)
    current_round_sections = Column(JSON, nullable=False, default=list)

    # Assignment
    assigned_to = Column(Integer, ForeignKey("workers.id"), nullable=True)
    assigned_by = Column(Integer, nullable=True)
    assigned_at = Column(DateTime, nullable=True)

    # Progress
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    total_items = Column(Integer, nullable=False, default=0)
    picked_items = Column(Integer, nullable=False, default=0)

    # Verification
    checked_by = Column(Integer, nullable=True)
    checked_at = Column(DateTime, nullable=True)
    check_result = Column(SQLEnum(PacketStatus), nullable=True)
    rejection_reason_code = Column(String(50), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    rejection_notes = Column(Text, nullable=True)

    order_item = relationship("OrderItem", back_populates="packet")
    assignee = relationship("Worker")
    pick_list = relationship(
        "PickListItem",
        back_populates="packet",
        cascade="all, delete-orphan",
        order_by="PickListItem.id",
    )

    @property
    def included(self) -> List[Section]:
        return [Section.parse(value) for value in self.sections_included or []]

    @property
    def pending(self) -> List[Section]:
        return [Section.parse(value) for value in self.sections_pending or []]

    @property
    def current_round(self) -> List[Section]:
        return [Section.parse(value) for value in self.current_round_sections or []]

    def recount(self) -> None:
        """Refresh the progress counters from the pick list."""
        self.total_items = len(self.pick_list)
        self.picked_items = sum(1 for line in self.pick_list if line.is_picked)


class PickListItem(BaseModel):
    """
    One material line of a packet's pick list.

    Attributes:
        packet_id: Owning packet
        inventory_item_id: Material to pick
        name / sku: Material snapshot for the picker
        required_qty: Quantity to pick
        rack_location: Where to find it
        piece: Section value the material is for
        is_picked / picked_qty / picked_at: Picking outcome
        added_in_round: Packet round that added this line
        is_consumed: Stock has been decremented for this line
    """

    __tablename__ = "pick_list_items"

    packet_id = Column(
        Integer, ForeignKey("packets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    inventory_item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    name = Column(String(200), nullable=False)
    sku = Column(String(100), nullable=True)
    required_qty = Column(Float, nullable=False)
    unit = Column(String(50), nullable=False)
    rack_location = Column(String(100), nullable=False, default=DEFAULT_RACK_LOCATION)
    piece = Column(String(50), nullable=False)
    is_picked = Column(Boolean, nullable=False, default=False)
    picked_qty = Column(Float, nullable=False, default=0.0)
    picked_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    added_in_round = Column(Integer, nullable=False, default=1)
    is_consumed = Column(Boolean, nullable=False, default=False)

    packet = relationship("Packet", back_populates="pick_list")
    inventory_item = relationship("InventoryItem")

    @property
    def section(self) -> Section:
        return Section.parse(self.piece)

    def reset(self) -> None:
        """Return the line to its unpicked state."""
        self.is_picked = False
        self.picked_qty = 0.0
        self.picked_at = None
        self.is_consumed = False

    def to_summary(self) -> dict:
        """Short description used in error details and timelines."""
        return {
            "id": self.id,
            "name": self.name,
            "piece": self.piece,
            "required_qty": self.required_qty,
            "unit": self.unit,
        }
