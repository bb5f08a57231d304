"""SQLAlchemy ORM models for license billing."""

from license_billing.models.base import Base, TimestampMixin
from license_billing.models.billing import BillingCycle, LicenseAdjustment, PaymentTransaction
from license_billing.models.license import (
    ALLOWED_BILLING_CYCLE_MONTHS,
    DEFAULT_BASE_PRICE_USD,
    DEFAULT_MINIMUM_SEATS,
    MAX_LEAVE_REASON_LENGTH,
    EmployeeLicense,
    GlobalLicense,
    Tenant,
)
from license_billing.models.reference import ExchangeRate, PaymentMethod, TaxRule

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # License
    "ALLOWED_BILLING_CYCLE_MONTHS",
    "DEFAULT_BASE_PRICE_USD",
    "DEFAULT_MINIMUM_SEATS",
    "MAX_LEAVE_REASON_LENGTH",
    "Tenant",
    "GlobalLicense",
    "EmployeeLicense",
    # Billing
    "BillingCycle",
    "LicenseAdjustment",
    "PaymentTransaction",
    # Reference data
    "PaymentMethod",
    "TaxRule",
    "ExchangeRate",
]
