"""Billing engine exceptions.

Routes translate these into HTTP responses:
- MalformedPayload            -> 400 (fatal to the request)
- InvalidSignature            -> 400
- InvalidPlan                 -> 400
- ProviderCancellationFailure -> 502
- StoreFailure / StoreWriteFailure -> 503 (provider retries the webhook)

ConfigReadFailure never reaches a route: the metrics aggregator catches it and
falls back to default sales settings.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for billing engine errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MalformedPayload(BillingError):
    """Webhook body is not a JSON object."""


class InvalidSignature(BillingError):
    """Webhook signature does not match the configured token."""


class StoreFailure(BillingError):
    """Store unavailable while processing a request. Retryable."""

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        self.tenant_id = tenant_id
        super().__init__(message)


class StoreWriteFailure(StoreFailure):
    """Subscription store rejected or failed a write."""


class ConfigReadFailure(BillingError):
    """Sales configuration could not be read for a tenant."""


class InvalidPlan(BillingError):
    """Plan id is not a valid catalog key."""


class ProviderCancellationFailure(BillingError):
    """Payment provider refused or failed the cancellation request."""
