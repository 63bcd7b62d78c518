# pipeline/errors.py
# ============================================================================
# ALIF STOREFRONT: ERROR TAXONOMY
# ============================================================================
# Each error carries the HTTP status the API layer maps it to and a
# customer-safe message. Gateway/internal detail stays in the logs.
# ============================================================================

from typing import Optional


class StorefrontError(Exception):
    status_code: int = 500
    public_message: str = "Internal error."
    retryable: bool = False

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message


class CheckoutValidationError(StorefrontError):
    """Empty cart or malformed line item. Never reaches the gateway."""
    status_code = 400
    public_message = "Invalid cart."

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail)
        # validation messages describe the caller's own input, safe to echo
        self.public_message = self.detail


class GatewayUnavailableError(StorefrontError):
    status_code = 500
    public_message = "Checkout session creation failed."
    retryable = True


class GatewayTimeoutError(GatewayUnavailableError):
    status_code = 503
    public_message = "Checkout is temporarily unavailable, please try again."


class WebhookRejectedError(StorefrontError):
    """Bad or missing signature, or no signing secret configured."""
    status_code = 400
    public_message = "Webhook signature verification failed."


class WebhookVerificationFaultError(StorefrontError):
    """Signature could not be checked at all; the gateway should redeliver."""
    status_code = 503
    public_message = "Webhook verification unavailable."
    retryable = True


class StoreUnavailableError(StorefrontError):
    status_code = 503
    public_message = "Storage unavailable."
    retryable = True
