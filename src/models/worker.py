"""
Worker model for people who act on the fulfillment workflow.

Workers are referenced as packet assignees, dyeing owners, production
heads and production task workers.
"""

from sqlalchemy import Column, String, Boolean, Index, Enum as SQLEnum

from .base import BaseModel
from .enums import WorkerRole


class Worker(BaseModel):
    """
    A member of staff in one department.

    Attributes:
        name: Display name
        role: Department (fabrication, dyeing, production head, ...)
        is_active: Inactive workers keep their history but receive no new work
    """

    __tablename__ = "workers"

    name = Column(String(200), nullable=False)
    role = Column(SQLEnum(WorkerRole), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("idx_worker_role_active", "role", "is_active"),)

    def __repr__(self) -> str:
        """String representation of worker."""
        return f"Worker(id={self.id}, name='{self.name}', role={self.role.value})"
