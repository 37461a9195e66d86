"""
Declarative base shared by every fulfillment model.

Each table gets an integer id, a uuid that stays stable outside the
database (CLI output, exported timelines), and created/updated timestamps.
"""

import uuid as uuid_lib
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import declarative_base, validates

from src.utils.datetime_utils import utc_now

Base = declarative_base()


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class BaseModel(Base):
    """Abstract base with id, uuid, timestamps and ``to_dict``."""

    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(
        String(36), unique=True, nullable=False, default=lambda: str(uuid_lib.uuid4()), index=True
    )
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """
        Column values keyed by column name.

        Status enums become their string values and datetimes ISO strings,
        so the result can go straight to ``json.dumps`` or into a JSON column.
        """
        return {
            column.name: _serialize(getattr(self, column.key)) for column in self.__table__.columns
        }

    @validates("uuid")
    def _validate_uuid(self, _key: str, value: Any) -> str:
        return value if value is None else str(value)

    def __repr__(self) -> str:
        attrs = []
        if getattr(self, "id", None) is not None:
            attrs.append(f"id={self.id}")
        status = getattr(self, "status", None)
        if status is not None:
            attrs.append(f"status={_serialize(status)}")
        return f"{self.__class__.__name__}({', '.join(attrs)})"
