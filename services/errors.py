"""
Error taxonomy for the bundle pricing and checkout engine.
"""
from typing import Optional


class BundleEngineError(Exception):
    """Base class for every error raised by the engine."""


class InvalidSelection(BundleEngineError):
    """Buyer selection references something that is not part of the bundle."""


class InvalidPricingConfig(BundleEngineError):
    """A pricing mode is missing the value it needs."""


class BundleNotFound(BundleEngineError):
    """Bundle id unknown to the configuration store."""


class ShopifyAPIError(BundleEngineError):
    """Base for failures surfaced by the catalog client."""


class Unauthorized(ShopifyAPIError):
    """Missing, expired or rejected access token."""


class RateLimited(ShopifyAPIError):
    """Platform throttled the call; safe to retry after a short delay."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class NotFound(ShopifyAPIError):
    """Remote resource does not exist (or no longer exists)."""


class RemoteError(ShopifyAPIError):
    """Any other non-success answer from the platform."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"remote error {status}: {body[:300]}")
        self.status = status
        self.body = body


class MaterializationFailed(BundleEngineError):
    """Neither the master path nor the fallback produced a SKU."""


class DiscountIssuanceFailed(BundleEngineError):
    """Discount rule or code could not be created."""
