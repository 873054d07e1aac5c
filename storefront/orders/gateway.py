import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from storefront.shared.utils import settings, BadRequestException, InternalException

logger = logging.getLogger(__name__)


class PaymentGatewayError(InternalException):
    def __init__(self, detail: str = "Payment gateway unavailable"):
        super().__init__(detail=detail)


class WebhookSignatureError(BadRequestException):
    def __init__(self, detail: str = "Webhook signature verification failed"):
        super().__init__(detail=detail)


@dataclass
class PaymentIntent:
    id: str
    client_secret: str


class StripeGateway:
    """
    Thin async wrapper over the Stripe SDK.

    The SDK is blocking, so calls run in a worker thread under a deadline.
    Nothing is retried here: a timeout or API error surfaces as
    PaymentGatewayError and the caller decides what to undo.
    """

    def __init__(
        self,
        secret_key: str = settings.STRIPE_SECRET_KEY,
        publishable_key: str = settings.STRIPE_PUBLISHABLE_KEY,
        webhook_secret: str = settings.STRIPE_WEBHOOK_SECRET,
        timeout: float = settings.PAYMENT_GATEWAY_TIMEOUT,
        tolerance: int = settings.STRIPE_WEBHOOK_TOLERANCE,
    ):
        self.secret_key = secret_key
        self.publishable_key = publishable_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.tolerance = tolerance
        # Failed creations are surfaced to the caller, never replayed
        stripe.max_network_retries = 0

    async def _call(self, func, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self.secret_key, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            # The worker thread is not interrupted and may still complete the call
            logger.error(
                f"Payment gateway call timed out after {self.timeout}s, the request may still land",
                extra={"idempotency_key": kwargs.get("idempotency_key")}
            )
            raise PaymentGatewayError()
        except stripe.StripeError as e:
            logger.error(f"Payment gateway error: {e.user_message or e}")
            raise PaymentGatewayError()

    async def create_payment_intent(
        self, amount: int, currency: str, metadata: dict, idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        """
        Create an intent for ``amount`` minor units. The idempotency key ties any
        late-landing intent to its order, so a retry or reconciliation finds the
        same intent instead of a second one.
        """
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency.lower(),
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return PaymentIntent(id=intent.id, client_secret=intent.client_secret)

    async def cancel_payment_intent(self, intent_id: str) -> None:
        await self._call(stripe.PaymentIntent.cancel, intent_id)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> str:
        """Check the Stripe-Signature header against the exact raw body and return it decoded."""
        if not signature:
            raise WebhookSignatureError("Missing stripe-signature header")
        if not self.webhook_secret:
            logger.error("Webhook secret is not configured")
            raise WebhookSignatureError()
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError()
        return body
