"""
Database models package.

This package contains all SQLAlchemy ORM models for the application.
"""

from .base import Base, BaseModel
from .enums import (
    OrderStatus,
    OrderItemStatus,
    SectionStatus,
    PacketStatus,
    ProductionTaskStatus,
    MaterialStatus,
    ProcurementDemandStatus,
    StockMovementReason,
    WorkerRole,
)
from .section import Section, parse_sections
from .worker import Worker
from .inventory_item import InventoryItem, ProcurementDemand, StockMovement
from .product import Product, BOM, BOMItem
from .order import Order, OrderItem, TimelineEntry
from .packet import Packet, PickListItem
from .production import ProductionTask, RoundRobinCursor

__all__ = [
    "Base",
    "BaseModel",
    # Enums
    "OrderStatus",
    "OrderItemStatus",
    "SectionStatus",
    "PacketStatus",
    "ProductionTaskStatus",
    "MaterialStatus",
    "ProcurementDemandStatus",
    "StockMovementReason",
    "WorkerRole",
    "Section",
    "parse_sections",
    # Catalog
    "Worker",
    "InventoryItem",
    "ProcurementDemand",
    "StockMovement",
    "Product",
    "BOM",
    "BOMItem",
    # Orders
    "Order",
    "OrderItem",
    "TimelineEntry",
    # Workflow
    "Packet",
    "PickListItem",
    "ProductionTask",
    "RoundRobinCursor",
]
