# pipeline/__init__.py
# ============================================================================
# ALIF STOREFRONT: ORDER PIPELINE
# ============================================================================
# checkout session creation -> gateway -> signed webhook -> fulfillment
# ============================================================================

from pipeline.errors import (
    CheckoutValidationError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    StoreUnavailableError,
    StorefrontError,
    WebhookRejectedError,
    WebhookVerificationFaultError,
)

__all__ = [
    "CheckoutValidationError",
    "GatewayTimeoutError",
    "GatewayUnavailableError",
    "StoreUnavailableError",
    "StorefrontError",
    "WebhookRejectedError",
    "WebhookVerificationFaultError",
]
