# src/api/security/stripe_verifier.py

import json
import logging

import stripe
from pydantic import ValidationError

from src.api.schemas.schemas import StripeWebhookEvent
from src.domain.exceptions import WebhookAuthenticationError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


class StripeSignatureVerifier:
    """
    Authenticates Stripe webhook deliveries.

    The HMAC is checked against the raw request bytes before anything is
    parsed. Every failure mode raises WebhookAuthenticationError.
    """

    def __init__(
        self,
        webhook_secret: str | None,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes, signature: str | None) -> StripeWebhookEvent:
        if not self.webhook_secret:
            raise WebhookAuthenticationError("Webhook secret not configured")
        if not signature:
            raise WebhookAuthenticationError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookAuthenticationError("Payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.webhook_secret,
                self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Invalid webhook signature: %s", str(exc))
            raise WebhookAuthenticationError("Invalid webhook signature") from exc

        try:
            event = StripeWebhookEvent.model_validate(json.loads(body))
        except (ValueError, ValidationError) as exc:
            raise WebhookAuthenticationError("Malformed webhook payload") from exc

        logger.info("Webhook signature verified for event: %s", event.id)
        return event
