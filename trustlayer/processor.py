"""
Payment processor contract.

The lifecycle engine only talks to a processor through `PaymentProcessor`.
Concrete integrations (see `trustlayer.stripe_processor`) translate the
processor's SDK objects into the small value types defined here.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from trustlayer.errors import SignatureError, ValidationError
from trustlayer.signing import verify_payload_signature

logger = logging.getLogger(__name__)

# Currencies whose minor unit is the major unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})


def currency_exponent(currency: str) -> int:
    return 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: Any, currency: str) -> int:
    """
    Convert a major-unit amount to an integer of minor units.

    The conversion is exact: an amount with more fractional digits than the
    currency has is rejected instead of being rounded.
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError("Valid amount is required") from e

    if not value.is_finite():
        raise ValidationError("Valid amount is required")

    scaled = value.scaleb(currency_exponent(currency))
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"Amount {amount} has more precision than {currency.upper()} allows"
        )
    return int(scaled)


def from_minor_units(amount: int, currency: str) -> Decimal:
    return Decimal(amount).scaleb(-currency_exponent(currency))


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    DISPUTE_CREATED = "charge.dispute.created"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, event_type: str) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class ProcessorIntent:
    id: str
    amount: int
    currency: str
    status: str
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def order_id(self) -> Optional[str]:
        return self.metadata.get("orderId")


@dataclass(frozen=True)
class ProcessorRefund:
    id: str
    payment_intent_id: str
    amount: int
    currency: str
    status: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data_object: Dict[str, Any]

    @property
    def kind(self) -> EventKind:
        return EventKind.parse(self.type)


def event_from_payload(payload: Any) -> WebhookEvent:
    """Build a WebhookEvent from an already verified, parsed body."""
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    data = payload.get("data")
    data_object = data.get("object") if isinstance(data, dict) else None
    if not event_id or not event_type or not isinstance(data_object, dict):
        raise ValidationError("Webhook payload is missing id, type or data.object")
    return WebhookEvent(id=str(event_id), type=str(event_type), data_object=data_object)


class PaymentProcessor(ABC):
    """What any processor integration must provide."""

    @abstractmethod
    def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        receipt_email: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ProcessorIntent:
        ...

    @abstractmethod
    def retrieve_intent(self, intent_id: str) -> ProcessorIntent:
        ...

    @abstractmethod
    def create_refund(
        self,
        intent_id: str,
        reason: str,
        amount: Optional[int] = None,
    ) -> ProcessorRefund:
        ...

    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: str,
    ) -> WebhookEvent:
        """
        Verify the HMAC over the raw body, then parse it.

        Integrations with their own signature scheme override this.
        """
        if not verify_payload_signature(secret, raw_body, signature_header):
            raise SignatureError("Invalid signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Invalid payload") from e
        return event_from_payload(payload)
