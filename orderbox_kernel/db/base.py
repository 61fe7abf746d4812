"""
Module: orderbox_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.
    Provides the integer primary key convention, the type annotation map for
    consistent column types, and the TimestampedBase mixin.
Architecture position: Kernel > DB.  Lowest-level import target within the
    kernel; ALL model files import from here.  MUST NOT import from models/,
    repositories/ or outer layers.
"""

from datetime import datetime
from typing import ClassVar

from sqlalchemy import DateTime, Integer, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - ``id`` is an autoincrementing INTEGER primary key (SQLite rowid
          alias, so inserts never need an explicit key).
        - ``datetime`` maps to DateTime(timezone=True).
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: DateTime(timezone=True),
    }

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )


class TimestampedBase(Base):
    """
    Abstract base with row timestamps.

    Guarantees:
        - created_at is set to server NOW() on INSERT.
        - updated_at is set on INSERT and refreshed on every UPDATE.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
