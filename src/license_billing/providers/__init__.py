"""External collaborator protocols and their SQL implementations."""

from license_billing.providers.base import (
    ExchangeRateProvider,
    PaymentMethodRegistry,
    Providers,
    ProvidersFactory,
    TaxProvider,
    TenantInfo,
)
from license_billing.providers.sql import (
    SqlExchangeRateProvider,
    SqlPaymentMethodRegistry,
    SqlTaxProvider,
    sql_providers,
)

__all__ = [
    "ExchangeRateProvider",
    "PaymentMethodRegistry",
    "Providers",
    "ProvidersFactory",
    "TaxProvider",
    "TenantInfo",
    "SqlExchangeRateProvider",
    "SqlPaymentMethodRegistry",
    "SqlTaxProvider",
    "sql_providers",
]
