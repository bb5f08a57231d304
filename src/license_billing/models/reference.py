"""Reference data read by the external collaborator providers."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from license_billing.models.base import RATE, Base, TimestampMixin


class PaymentMethod(Base, TimestampMixin):
    """A way a tenant can pay. ``country_code`` NULL means available everywhere."""

    __tablename__ = "payment_method"

    payment_method_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    country_code: Mapped[str | None] = mapped_column(String(2), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TaxRule(Base, TimestampMixin):
    """A tax applied to license charges in one country."""

    __tablename__ = "tax_rule"

    tax_rule_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("country_code", "name", name="tax_rule_country_name_uq"),
        CheckConstraint("rate >= 0 AND rate <= 1", name="tax_rule_rate_check"),
        Index("ix_tax_rule_country_active", "country_code", "is_active"),
    )


class ExchangeRate(Base, TimestampMixin):
    """Conversion rate for one currency pair as of ``effective_at``."""

    __tablename__ = "exchange_rate"

    exchange_rate_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    effective_at: Mapped[datetime] = mapped_column(nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("rate > 0", name="exchange_rate_positive_check"),
        Index("ix_exchange_rate_pair", "from_currency", "to_currency", "effective_at"),
    )
