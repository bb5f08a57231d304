"""Error taxonomy raised by the billing engine.

Every error carries a stable ``code`` so callers can map each kind to a
distinct client-facing response. None of these are retried internally.
"""

from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for all billing engine errors."""

    code = "billing_error"
    context_fields: tuple[str, ...] = ()

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Structured attributes for clients, unset ones omitted."""
        values = ((name, getattr(self, name, None)) for name in self.context_fields)
        return {name: value for name, value in values if value is not None}


class ValidationFailed(BillingError):
    """Malformed input: negative counts, non-chronological dates, missing fields."""

    code = "validation_failed"
    context_fields = ("field",)

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class AntiFraudRejected(BillingError):
    """Long-leave declaration conflicts with recent activity."""

    code = "anti_fraud_rejected"
    context_fields = ("employee", "last_activity", "window_days")

    def __init__(self, employee: str, last_activity: Any, window_days: int):
        self.employee = employee
        self.last_activity = last_activity
        self.window_days = window_days
        super().__init__(
            f"Cannot declare long leave for '{employee}': activity recorded at "
            f"{last_activity} is within the last {window_days} days"
        )


class NotFound(BillingError):
    """Referenced entity does not exist."""

    code = "not_found"
    context_fields = ("entity", "identifier")

    def __init__(self, entity: str, identifier: Any):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} '{identifier}' not found")


class MissingPaymentMethod(NotFound):
    """No payment method is available for a country."""

    code = "missing_payment_method"

    def __init__(self, country_code: str):
        super().__init__("Payment method", country_code)
        self.message = f"No active payment method available for country '{country_code}'"
        self.args = (self.message,)


class Conflict(BillingError):
    """Operation conflicts with existing state."""

    code = "conflict"


class DuplicateAdjustment(Conflict):
    """A second pending adjustment would exist for one license."""

    code = "duplicate_adjustment"
    context_fields = ("global_license_id",)

    def __init__(self, global_license_id: Any):
        self.global_license_id = global_license_id
        super().__init__(
            f"License {global_license_id} already has a pending adjustment"
        )


class InvalidStateTransition(BillingError):
    """Illegal status change on a transaction, adjustment or cycle."""

    code = "invalid_state_transition"
    context_fields = ("from_status", "to_status", "reason")

    def __init__(self, from_status: Any, to_status: Any, reason: str | None = None):
        self.from_status = getattr(from_status, "value", from_status)
        self.to_status = getattr(to_status, "value", to_status)
        self.reason = reason
        msg = f"Invalid transition from '{self.from_status}' to '{self.to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MissingExchangeRate(BillingError):
    """No conversion rate on record for a currency pair."""

    code = "missing_exchange_rate"
    context_fields = ("from_currency", "to_currency")

    def __init__(self, from_currency: str, to_currency: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(f"No exchange rate on record for {from_currency}->{to_currency}")


class MissingTaxRules(BillingError):
    """No active tax rule set for a jurisdiction."""

    code = "missing_tax_rules"
    context_fields = ("country_code",)

    def __init__(self, country_code: str):
        self.country_code = country_code
        super().__init__(f"No active tax rules on record for country '{country_code}'")
