"""
Payment Lifecycle Engine.

Creates payment intents, reconciles processor webhook events into the order
payment projection, issues refunds and releases escrowed funds.

Order state only moves on verified webhook events or explicit refund calls:

    awaiting_payment -> paid -> refunded | disputed
    awaiting_payment -> payment_failed   (a new intent may be created to retry)
    payment_failed -> paid               (a failed intent confirmed later)

An order awaiting payment has one live intent; asking again returns it. A
capture on any other intent of an already settled order is reported as
unreconciled and logged as a security event.

Webhook delivery is at-least-once. Each transition is keyed by the id of the
event that caused it, so a redelivered event changes nothing and triggers no
second notification. Nothing here retries: processor and store errors go back
to the caller, and the processor's own redelivery covers webhooks.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from trustlayer.errors import (
    NotRefundable,
    OrderNotFound,
    PolicyViolation,
    SignatureError,
    ValidationError,
)
from trustlayer.escrow import EscrowDecision, OrderContext, decide
from trustlayer.messaging import PaymentNotifier
from trustlayer.models import PaymentStatus
from trustlayer.order_store import OrderStore, OrderView, TransitionResult
from trustlayer.processor import (
    EventKind,
    PaymentProcessor,
    WebhookEvent,
    from_minor_units,
    to_minor_units,
)
from trustlayer.verification import utcnow

logger = logging.getLogger(__name__)

PLATFORM = "marketplace"
DEFAULT_CURRENCY = "usd"
REFUND_REASONS = ("requested_by_customer", "duplicate", "fraudulent")
FALLBACK_REFUND_REASON = "fraudulent"


@dataclass(frozen=True)
class Transition:
    to: PaymentStatus
    allowed_from: Tuple[PaymentStatus, ...]
    pause_release: bool = False


TRANSITIONS: Dict[EventKind, Transition] = {
    # A failed intent can still be confirmed later, and events arrive out of order
    EventKind.PAYMENT_SUCCEEDED: Transition(
        PaymentStatus.PAID, (PaymentStatus.AWAITING_PAYMENT, PaymentStatus.PAYMENT_FAILED)
    ),
    EventKind.PAYMENT_FAILED: Transition(PaymentStatus.PAYMENT_FAILED, (PaymentStatus.AWAITING_PAYMENT,)),
    EventKind.CHARGE_REFUNDED: Transition(PaymentStatus.REFUNDED, (PaymentStatus.PAID,)),
    EventKind.DISPUTE_CREATED: Transition(
        PaymentStatus.DISPUTED, (PaymentStatus.PAID,), pause_release=True
    ),
}


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNRECONCILED = "unreconciled"


@dataclass(frozen=True)
class IntentCreated:
    client_secret: Optional[str]
    intent_id: str
    escrow: Optional[EscrowDecision] = None


@dataclass(frozen=True)
class IntentStatus:
    status: str
    order_id: Optional[str]
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    amount: Decimal


@dataclass(frozen=True)
class ReleaseResult:
    order_id: str
    released: bool


def normalize_currency(currency: Optional[str]) -> str:
    value = (currency or DEFAULT_CURRENCY).strip().lower()
    if len(value) != 3 or not value.isalpha():
        raise ValidationError(f"Unsupported currency: {currency}")
    return value


class PaymentLifecycleEngine:
    """Composes a payment processor, the order store and the escrow policy."""

    def __init__(
        self,
        processor: PaymentProcessor,
        store: OrderStore,
        webhook_secret: str,
        notifier: Optional[PaymentNotifier] = None,
        strict_refund_reasons: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.processor = processor
        self.store = store
        self.webhook_secret = webhook_secret
        self.notifier = notifier
        self.strict_refund_reasons = strict_refund_reasons
        self._clock = clock

    # -- intents ---------------------------------------------------------

    def create_intent(
        self,
        amount: Any,
        currency: Optional[str],
        order_id: str,
        customer_email: Optional[str] = None,
        description: Optional[str] = None,
        order_context: Optional[OrderContext] = None,
    ) -> IntentCreated:
        order_id = (order_id or "").strip()
        if not order_id:
            raise ValidationError("Order ID is required")
        if amount is None:
            raise ValidationError("Valid amount is required")

        currency = normalize_currency(currency)
        minor_amount = to_minor_units(amount, currency)
        if minor_amount <= 0:
            raise ValidationError("Valid amount is required")

        escrow = decide(order_context, self._clock()) if order_context is not None else None

        existing = self.store.get_order(order_id)
        if (
            existing is not None
            and existing.payment_status == PaymentStatus.AWAITING_PAYMENT.value
            and existing.payment_intent_id
        ):
            return self._reuse_open_intent(existing, minor_amount, currency, escrow)

        attempt = self.store.begin_attempt(order_id, minor_amount, currency, customer_email)

        metadata = {"orderId": order_id, "platform": PLATFORM}
        if escrow is not None:
            metadata["requireSecurePayment"] = "true" if escrow.require_secure_payment else "false"

        intent = self.processor.create_intent(
            amount=minor_amount,
            currency=currency,
            metadata=metadata,
            idempotency_key=f"{order_id}:{attempt}",
            receipt_email=customer_email,
            description=description or f"Marketplace order #{order_id}",
        )
        self.store.attach_intent(order_id, intent.id)

        logger.info(
            "Created intent %s for order %s (attempt %d, %d %s)",
            intent.id, order_id, attempt, minor_amount, currency,
        )
        return IntentCreated(client_secret=intent.client_secret, intent_id=intent.id, escrow=escrow)

    def _reuse_open_intent(
        self,
        order: OrderView,
        minor_amount: int,
        currency: str,
        escrow: Optional[EscrowDecision],
    ) -> IntentCreated:
        """An order awaiting payment has exactly one live intent; hand it out again."""
        intent = self.processor.retrieve_intent(order.payment_intent_id)
        if intent.amount != minor_amount or intent.currency.lower() != currency:
            raise PolicyViolation(
                f"Order {order.order_id} already has an open payment of "
                f"{from_minor_units(intent.amount, intent.currency)} {intent.currency.upper()}"
            )
        logger.info("Reusing open intent %s for order %s", intent.id, order.order_id)
        return IntentCreated(client_secret=intent.client_secret, intent_id=intent.id, escrow=escrow)

    def retrieve_status(self, intent_id: str) -> IntentStatus:
        """Read-only view of an intent for client polling."""
        if not intent_id:
            raise ValidationError("Payment intent ID is required")

        intent = self.processor.retrieve_intent(intent_id)
        return IntentStatus(
            status=intent.status,
            order_id=intent.order_id,
            amount=from_minor_units(intent.amount, intent.currency),
            currency=intent.currency.upper(),
        )

    def get_payment_status(self, order_id: str) -> OrderView:
        order = self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    # -- webhooks --------------------------------------------------------

    def handle_webhook_event(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
    ) -> WebhookOutcome:
        # Signature first, over the raw bytes; nothing is parsed before this passes
        try:
            event = self.processor.verify_webhook_signature(
                raw_body, signature_header, self.webhook_secret
            )
        except SignatureError:
            logger.warning("Rejected webhook with invalid signature", extra={"security": True})
            raise

        kind = event.kind
        transition = TRANSITIONS.get(kind)
        if transition is None:
            logger.info("Unhandled event type: %s", event.type)
            return WebhookOutcome.IGNORED

        if kind == EventKind.CHARGE_REFUNDED and event.data_object.get("refunded") is False:
            logger.info("Partial refund on charge %s; order stays paid", event.data_object.get("id"))
            return WebhookOutcome.IGNORED

        order = self._resolve_order(event)
        if order is None:
            return WebhookOutcome.IGNORED

        intent_id = self._intent_id(event)
        other_intent = bool(
            order.payment_intent_id and intent_id and intent_id != order.payment_intent_id
        )

        if kind == EventKind.PAYMENT_FAILED and other_intent:
            logger.info(
                "Ignoring failure of superseded intent %s for order %s",
                intent_id, order.order_id,
            )
            return WebhookOutcome.IGNORED

        if (
            kind == EventKind.PAYMENT_SUCCEEDED
            and other_intent
            and PaymentStatus(order.payment_status) not in transition.allowed_from
        ):
            # Money was captured on a second intent of an order that is already settled
            logger.error(
                "Unreconciled capture: intent %s succeeded for order %s, which is %s on intent %s (event %s)",
                intent_id, order.order_id, order.payment_status, order.payment_intent_id, event.id,
                extra={"security": True},
            )
            return WebhookOutcome.UNRECONCILED

        result = self.store.update_payment_status(
            order.order_id,
            transition.to,
            event.id,
            transition.allowed_from,
            pause_release=transition.pause_release,
        )

        if result == TransitionResult.DUPLICATE:
            logger.info("Event %s already applied to order %s", event.id, order.order_id)
            return WebhookOutcome.DUPLICATE
        if result == TransitionResult.REJECTED:
            return WebhookOutcome.IGNORED

        if kind == EventKind.PAYMENT_SUCCEEDED and other_intent:
            # An earlier intent of a retried order was paid; refunds must target it
            self.store.attach_intent(order.order_id, intent_id)
            logger.warning(
                "Order %s paid through earlier intent %s; intent %s left open",
                order.order_id, intent_id, order.payment_intent_id,
            )
        if kind == EventKind.DISPUTE_CREATED:
            logger.warning("Dispute opened on order %s; fund release paused", order.order_id)
        self._notify(order, transition.to)
        return WebhookOutcome.APPLIED

    @staticmethod
    def _intent_id(event: WebhookEvent) -> Optional[str]:
        obj = event.data_object
        if event.kind in (EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED):
            return obj.get("id")
        return obj.get("payment_intent")

    def _resolve_order(self, event: WebhookEvent) -> Optional[OrderView]:
        metadata = event.data_object.get("metadata") or {}
        order_id = metadata.get("orderId") if isinstance(metadata, dict) else None

        if order_id:
            order = self.store.get_order(order_id)
        else:
            intent_id = self._intent_id(event)
            order = self.store.get_order_by_intent(intent_id) if intent_id else None

        if order is None:
            logger.error(
                "Cannot reconcile %s event %s: no order (orderId=%s)",
                event.type, event.id, order_id,
            )
        return order

    def _notify(self, order: OrderView, status: PaymentStatus) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(
                order.order_id, status.value, order.customer_email, order.amount, order.currency
            )
        except Exception:
            # The transition is committed; a lost notice must not fail the event
            logger.exception("Notification for order %s failed", order.order_id)

    # -- refunds and release ---------------------------------------------

    def _refund_reason(self, reason: Optional[str]) -> str:
        if reason in REFUND_REASONS:
            return reason
        if self.strict_refund_reasons:
            raise ValidationError(
                f"Refund reason must be one of: {', '.join(REFUND_REASONS)}"
            )
        logger.warning("Unknown refund reason %r coerced to %s", reason, FALLBACK_REFUND_REASON)
        return FALLBACK_REFUND_REASON

    def _order_for_intent(self, intent_id: str) -> Optional[OrderView]:
        order = self.store.get_order_by_intent(intent_id)
        if order is not None:
            return order
        # An earlier intent of a retried order is no longer on the projection
        intent = self.processor.retrieve_intent(intent_id)
        return self.store.get_order(intent.order_id) if intent.order_id else None

    def create_refund(
        self,
        intent_id: str,
        amount: Any = None,
        reason: Optional[str] = "requested_by_customer",
    ) -> RefundResult:
        if not intent_id:
            raise ValidationError("Payment intent ID is required")
        reason = self._refund_reason(reason)

        order = self._order_for_intent(intent_id)
        if order is None or order.payment_status != PaymentStatus.PAID.value:
            status = order.payment_status if order else "unknown"
            raise NotRefundable(f"Payment {intent_id} is not refundable (order is {status})")

        currency = order.currency or DEFAULT_CURRENCY
        already_refunded = sum(
            r.amount for r in self.store.list_refunds(order.order_id) if r.status != "failed"
        )
        remaining = (order.amount or 0) - already_refunded

        minor_amount = None
        if amount is not None:
            minor_amount = to_minor_units(amount, currency)
            if minor_amount <= 0:
                raise ValidationError("Refund amount must be positive")
            if order.amount is not None and minor_amount > remaining:
                raise ValidationError("Refund amount exceeds the refundable balance")

        refund = self.processor.create_refund(intent_id, reason, minor_amount)
        self.store.record_refund(refund, order.order_id)
        logger.info(
            "Refund %s on %s for order %s: %s (%s)",
            refund.id, intent_id, order.order_id, refund.status, reason,
        )

        fully_refunded = minor_amount is None or already_refunded + refund.amount >= (order.amount or 0)
        if refund.status == "succeeded" and fully_refunded:
            result = self.store.update_payment_status(
                order.order_id,
                PaymentStatus.REFUNDED,
                f"refund:{refund.id}",
                (PaymentStatus.PAID,),
            )
            if result == TransitionResult.APPLIED:
                self._notify(order, PaymentStatus.REFUNDED)

        return RefundResult(
            refund_id=refund.id,
            status=refund.status,
            amount=from_minor_units(refund.amount, refund.currency),
        )

    def release_funds(self, order_id: str) -> ReleaseResult:
        """Release escrowed funds to the seller once delivery is confirmed."""
        order = self.store.mark_released(order_id)
        logger.info("Funds released for order %s", order.order_id)
        return ReleaseResult(order_id=order.order_id, released=order.funds_released)
