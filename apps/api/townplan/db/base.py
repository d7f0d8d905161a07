import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, Uuid
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Python-side timestamp default (microsecond precision on every backend)."""
    return datetime.now(timezone.utc)


def enum_column(enum_cls: type[PyEnum], *, name: str) -> Enum:
    """Store str-enums by value as VARCHAR so the schema is portable."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    type_annotation_map = {
        datetime: DateTime(timezone=True),
        uuid.UUID: Uuid(),
    }
