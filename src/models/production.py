"""
Production models.

This module contains:
- ProductionTask: One step of a section's production task chain
- RoundRobinCursor: Persisted position of a round-robin assignment
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import ProductionTaskStatus
from .section import Section


class ProductionTask(BaseModel):
    """
    A production step for one section of an order item.

    Tasks in the same section form a chain ordered by ``sequence_order``:
    a task only becomes READY once its predecessor is COMPLETED.

    Attributes:
        order_item_id: Order item being produced
        section: Section value the task belongs to
        task_type: Kind of work (cutting, stitching, ...)
        custom_task_name: Free-form name when task_type is "custom"
        sequence_order: Position within the section's chain
        worker_id: Worker doing the task
        status: PENDING, READY, IN_PROGRESS or COMPLETED
        duration_minutes: Wall-clock minutes between start and completion
    """

    __tablename__ = "production_tasks"

    order_item_id = Column(
        Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    section = Column(String(50), nullable=False)
    task_type = Column(String(50), nullable=False)
    custom_task_name = Column(String(200), nullable=True)
    sequence_order = Column(Integer, nullable=False)
    worker_id = Column(Integer, ForeignKey("workers.id"), nullable=False, index=True)
    assigned_by = Column(Integer, nullable=True)
    status = Column(
        SQLEnum(ProductionTaskStatus), nullable=False, default=ProductionTaskStatus.PENDING
    )
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)

    order_item = relationship("OrderItem", back_populates="tasks")
    worker = relationship("Worker")

    __table_args__ = (
        UniqueConstraint(
            "order_item_id", "section", "sequence_order", name="uq_production_task_sequence"
        ),
        Index("idx_production_task_item_section", "order_item_id", "section"),
    )

    @property
    def section_id(self) -> Section:
        return Section.parse(self.section)

    @property
    def display_name(self) -> str:
        return self.custom_task_name or self.task_type.replace("_", " ").title()


class RoundRobinCursor(BaseModel):
    """
    Last position handed out by a named round-robin.

    ``last_assigned_index`` starts at -1 so the first assignment lands on
    index 0. The version column makes concurrent advances of the same
    cursor fail instead of handing out the same slot twice.
    """

    __tablename__ = "round_robin_cursors"

    name = Column(String(100), nullable=False, unique=True)
    last_assigned_index = Column(Integer, nullable=False, default=-1)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
