"""Declarative base, shared column conventions and constraint helpers."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, Numeric, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Money is stored to the cent; exchange and tax rates to six places
MONEY = Numeric(14, 2)
RATE = Numeric(18, 6)


class Base(DeclarativeBase):
    """Base class for all ORM models.

    ``Decimal`` annotations default to money columns; rate columns pass
    ``RATE`` explicitly.
    """

    type_annotation_map = {
        UUID: Uuid(as_uuid=True),
        datetime: DateTime(timezone=True),
        Decimal: MONEY,
    }

    def to_dict(self) -> dict[str, Any]:
        """Column values keyed by attribute name."""
        return {c.key: getattr(self, c.key) for c in self.__mapper__.column_attrs}


class TimestampMixin:
    """Mixin for models with created_at timestamp."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


def enum_check(column: str, values: type[Enum], name: str) -> CheckConstraint:
    """CHECK constraint restricting a status column to an enum's values."""
    allowed = ", ".join(f"'{member.value}'" for member in values)
    return CheckConstraint(f"{column} IN ({allowed})", name=name)
