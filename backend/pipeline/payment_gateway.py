"""
Payment Gateway Adapter
=======================
Boundary to the hosted payment processor (Stripe):

- create_checkout_session: hosted checkout session for a cart
- verify_event: signature check over the RAW request body, then JSON decode

Both calls are bounded by a timeout. The Stripe SDK is blocking, so calls
run in a worker thread and the await is what gets cut off.

pip install stripe structlog
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import stripe
import structlog
from pydantic import BaseModel

from pipeline.errors import (
    GatewayTimeoutError,
    GatewayUnavailableError,
    WebhookRejectedError,
    WebhookVerificationFaultError,
)

SIGNATURE_HEADER = "Stripe-Signature"


class GatewaySession(BaseModel):
    id: str
    url: str


class IPaymentGateway(ABC):
    """Payment gateway interface"""

    @abstractmethod
    async def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        customer_email: Optional[str],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> GatewaySession:
        pass

    @abstractmethod
    async def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        pass


class StripeGateway(IPaymentGateway):
    """
    Stripe implementation.

    A missing webhook secret is a fatal misconfiguration: every event is
    rejected, verification is never skipped.
    """

    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str],
        timeout_seconds: float = 10.0,
        tolerance_seconds: int = 300,
    ):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._timeout = timeout_seconds
        self._tolerance = tolerance_seconds
        self._logger = structlog.get_logger().bind(component="stripe_gateway")

    @property
    def webhook_secret_configured(self) -> bool:
        return bool(self._webhook_secret)

    async def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        customer_email: Optional[str],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> GatewaySession:
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            async with asyncio.timeout(self._timeout):
                session = await asyncio.to_thread(
                    stripe.checkout.Session.create, api_key=self._api_key, **params
                )
        except TimeoutError as e:
            self._logger.error("stripe_session_timeout", timeout_seconds=self._timeout)
            raise GatewayTimeoutError("checkout session creation timed out") from e
        except stripe.StripeError as e:
            self._logger.error("stripe_session_failed",
                               error=str(e),
                               error_type=type(e).__name__)
            raise GatewayUnavailableError(str(e)) from e

        return GatewaySession(id=session.id, url=session.url)

    async def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self._webhook_secret:
            self._logger.error("webhook_secret_missing")
            raise WebhookRejectedError("webhook signing secret is not configured")
        if not signature:
            raise WebhookRejectedError("missing signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookRejectedError("payload is not valid UTF-8") from e

        try:
            async with asyncio.timeout(self._timeout):
                await asyncio.to_thread(
                    stripe.WebhookSignature.verify_header,
                    body,
                    signature,
                    self._webhook_secret,
                    self._tolerance,
                )
        except stripe.SignatureVerificationError as e:
            raise WebhookRejectedError(str(e)) from e
        except TimeoutError as e:
            raise WebhookVerificationFaultError("signature verification timed out") from e
        except Exception as e:
            # Could not compute a verdict at all: not the sender's fault.
            self._logger.error("webhook_verification_fault",
                               error=str(e),
                               error_type=type(e).__name__)
            raise WebhookVerificationFaultError(str(e)) from e

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise WebhookRejectedError("payload is not valid JSON") from e
        if not isinstance(event, dict):
            raise WebhookRejectedError("payload is not a JSON object")
        return event
