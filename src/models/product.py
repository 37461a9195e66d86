"""
Product catalog and bill-of-materials models.

This module contains:
- Product: A garment design with its base pieces and optional add-ons
- BOM: Versioned bill of materials for one (product, size)
- BOMItem: One material line of a BOM, tied to a garment piece
"""

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    CheckConstraint,
    text,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import relationship

from .base import BaseModel
from .section import Section


class Product(BaseModel):
    """
    Product model representing a garment design.

    Attributes:
        name: Product name
        sku: Unique product code
        base_pieces: Section values always included (e.g. ["shirt", "pants"])
        add_on_pieces: Section values a customer may add (e.g. ["dupatta"])
        requires_dyeing: Whether approved packets route to dyeing before production
        ready_stock_eligible: Whether an order item may take the ready-stock path
        is_active: Inactive products cannot be ordered
    """

    __tablename__ = "products"

    name = Column(String(200), nullable=False, index=True)
    sku = Column(String(100), nullable=False, unique=True)
    base_pieces = Column(JSON, nullable=False, default=list)
    add_on_pieces = Column(JSON, nullable=False, default=list)
    requires_dyeing = Column(Boolean, nullable=False, default=True)
    ready_stock_eligible = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    boms = relationship(
        "BOM",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="BOM.version",
    )

    def __repr__(self) -> str:
        """String representation of product."""
        return f"Product(id={self.id}, sku='{self.sku}')"


class BOM(BaseModel):
    """
    Bill of materials for one product size.

    Versions increase monotonically per (product, size). At most one BOM
    per (product, size) is active; the partial unique index enforces it
    at the storage level as well.

    Attributes:
        product_id: Owning product
        size: Standard size code (XS..XXL)
        version: Version number, starting at 1 per (product, size)
        name: Display name, defaults to "Size {size} - Version {version}"
        is_active: Whether this is the BOM used by inventory checks
    """

    __tablename__ = "boms"

    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    size = Column(String(10), nullable=False)
    version = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)

    product = relationship("Product", back_populates="boms")
    items = relationship(
        "BOMItem",
        back_populates="bom",
        cascade="all, delete-orphan",
        order_by="BOMItem.id",
    )

    __table_args__ = (
        UniqueConstraint("product_id", "size", "version", name="uq_bom_product_size_version"),
        Index(
            "uq_bom_active_product_size",
            "product_id",
            "size",
            unique=True,
            sqlite_where=text("is_active = 1"),
        ),
        CheckConstraint("version >= 1", name="ck_bom_version_positive"),
    )

    def __repr__(self) -> str:
        """String representation of BOM."""
        return (
            f"BOM(id={self.id}, product_id={self.product_id}, size='{self.size}', "
            f"version={self.version}, active={self.is_active})"
        )


class BOMItem(BaseModel):
    """
    One material requirement line of a BOM.

    Attributes:
        bom_id: Owning BOM
        inventory_item_id: Material consumed
        quantity: Quantity required per garment unit
        unit: Unit of measure
        piece: Section value this material belongs to
    """

    __tablename__ = "bom_items"

    bom_id = Column(Integer, ForeignKey("boms.id", ondelete="CASCADE"), nullable=False, index=True)
    inventory_item_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="RESTRICT"), nullable=False
    )
    quantity = Column(Float, nullable=False)
    unit = Column(String(50), nullable=False)
    piece = Column(String(50), nullable=False)

    bom = relationship("BOM", back_populates="items")
    inventory_item = relationship("InventoryItem")

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_bom_item_quantity_positive"),)

    @property
    def section(self) -> Section:
        return Section.parse(self.piece)
