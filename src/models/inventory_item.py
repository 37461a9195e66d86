"""
Inventory and procurement models.

This module contains:
- InventoryItem: A stocked raw material (fabric, lace, buttons, ...)
- StockMovement: One signed change to an inventory item's stock
- ProcurementDemand: A recorded shortage for one order item
"""

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import relationship

from src.utils.constants import DEFAULT_RACK_LOCATION
from src.utils.datetime_utils import utc_now
from .base import BaseModel
from .enums import ProcurementDemandStatus, StockMovementReason


class InventoryItem(BaseModel):
    """
    A stocked material.

    The row is versioned like an order item: two units of work that read
    the same stock level and both write it back cannot both commit.

    Attributes:
        name: Material name
        sku: Unique stock code
        unit: Unit stock is counted in
        remaining_stock: Quantity currently available
        rack_location: Where pickers find it
        min_stock_level: Threshold for low-stock reporting
    """

    __tablename__ = "inventory_items"

    name = Column(String(200), nullable=False, index=True)
    sku = Column(String(100), nullable=False, unique=True)
    unit = Column(String(50), nullable=False)
    remaining_stock = Column(Float, nullable=False, default=0.0)
    rack_location = Column(String(100), nullable=False, default=DEFAULT_RACK_LOCATION)
    min_stock_level = Column(Float, nullable=False, default=0.0)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_low_stock(self) -> bool:
        return self.remaining_stock <= self.min_stock_level

    def __repr__(self) -> str:
        """String representation of inventory item."""
        return f"InventoryItem(id={self.id}, sku='{self.sku}', stock={self.remaining_stock})"


class StockMovement(BaseModel):
    """
    Append-only record of one stock change.

    Attributes:
        inventory_item_id: Material whose stock changed
        quantity: Signed change (negative when stock left the racks)
        balance_after: remaining_stock once the change was applied
        reason: Why the stock changed
        order_item_id: Order item the material was for, if any
        packet_id: Packet that consumed or returned it, if any
        user_id: Acting worker, if any
        timestamp: When the change was made
    """

    __tablename__ = "stock_movements"

    inventory_item_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity = Column(Float, nullable=False)
    balance_after = Column(Float, nullable=False)
    reason = Column(SQLEnum(StockMovementReason), nullable=False)
    order_item_id = Column(
        Integer, ForeignKey("order_items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    packet_id = Column(Integer, ForeignKey("packets.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utc_now)
    notes = Column(Text, nullable=True)

    inventory_item = relationship("InventoryItem")

    def __repr__(self) -> str:
        return (
            f"StockMovement(id={self.id}, inventory_item_id={self.inventory_item_id}, "
            f"quantity={self.quantity}, reason={self.reason.value})"
        )


class ProcurementDemand(BaseModel):
    """
    Shortage of one material for one order item.

    Demands for an order item are replaced wholesale on every inventory
    check, so the table only ever holds the latest shortage set.

    Attributes:
        order_item_id: Order item that needs the material
        inventory_item_id: Material that is short
        required_qty: Total quantity the order item needs
        available_qty: Stock at check time
        shortage_qty: required_qty - available_qty
        pieces: Section values that contributed to the requirement
        status: OPEN, ORDERED, RECEIVED or CANCELLED
    """

    __tablename__ = "procurement_demands"

    order_item_id = Column(
        Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    inventory_item_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="RESTRICT"), nullable=False
    )
    required_qty = Column(Float, nullable=False)
    available_qty = Column(Float, nullable=False)
    shortage_qty = Column(Float, nullable=False)
    unit = Column(String(50), nullable=False)
    pieces = Column(JSON, nullable=False, default=list)
    status = Column(
        SQLEnum(ProcurementDemandStatus), nullable=False, default=ProcurementDemandStatus.OPEN
    )
    notes = Column(Text, nullable=True)

    order_item = relationship("OrderItem", back_populates="procurement_demands")
    inventory_item = relationship("InventoryItem")

    __table_args__ = (Index("idx_procurement_demand_status", "status"),)
