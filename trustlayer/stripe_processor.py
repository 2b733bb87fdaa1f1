import json
import logging
from typing import Dict, Optional

import stripe

from trustlayer.errors import ProcessorError, SignatureError, ValidationError
from trustlayer.processor import (
    PaymentProcessor,
    ProcessorIntent,
    ProcessorRefund,
    WebhookEvent,
    event_from_payload,
)

logger = logging.getLogger(__name__)


def _metadata(obj) -> Dict[str, str]:
    metadata = getattr(obj, "metadata", None) or {}
    return {str(k): str(v) for k, v in metadata.items()}


def _processor_error(e: "stripe.StripeError") -> ProcessorError:
    # Card errors carry a message written for the customer ("Your card was declined.")
    message = getattr(e, "user_message", None) or str(e) or "Payment processor error"
    return ProcessorError(message, code=getattr(e, "code", None))


class StripeProcessor(PaymentProcessor):
    """PaymentProcessor backed by the Stripe API."""

    def __init__(self, api_key: str):
        stripe.api_key = api_key

    @staticmethod
    def _intent(intent) -> ProcessorIntent:
        return ProcessorIntent(
            id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
            client_secret=getattr(intent, "client_secret", None),
            metadata=_metadata(intent),
        )

    def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        receipt_email: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ProcessorIntent:
        params = dict(
            amount=amount,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        if receipt_email:
            params["receipt_email"] = receipt_email
        if description:
            params["description"] = description

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            logger.error("Stripe create intent failed for order %s: %s", metadata.get("orderId"), e)
            raise _processor_error(e) from e
        return self._intent(intent)

    def retrieve_intent(self, intent_id: str) -> ProcessorIntent:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as e:
            logger.error("Stripe retrieve intent %s failed: %s", intent_id, e)
            raise _processor_error(e) from e
        return self._intent(intent)

    def create_refund(
        self,
        intent_id: str,
        reason: str,
        amount: Optional[int] = None,
    ) -> ProcessorRefund:
        params = dict(payment_intent=intent_id, reason=reason)
        if amount is not None:
            params["amount"] = amount

        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            logger.error("Stripe refund for %s failed: %s", intent_id, e)
            raise _processor_error(e) from e

        return ProcessorRefund(
            id=refund.id,
            payment_intent_id=intent_id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status,
            reason=getattr(refund, "reason", None) or reason,
        )

    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: str,
    ) -> WebhookEvent:
        if not signature_header or not secret:
            raise SignatureError("Missing signature")

        try:
            stripe.Webhook.construct_event(raw_body, signature_header, secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureError("Invalid signature") from e
        except ValueError as e:
            raise ValidationError("Invalid payload") from e

        # Signature is good; build the event from the raw JSON, not the SDK object
        return event_from_payload(json.loads(raw_body))
