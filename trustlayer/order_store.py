"""
Order store: the payment-status projection of marketplace orders.

Every status change is keyed by the id of the event that caused it. The
applied-event marker and the status update commit in one transaction, so a
redelivered event is recognised and absorbed instead of applied twice.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from trustlayer.errors import OrderNotFound, PolicyViolation
from trustlayer.models import AppliedEvent, OrderPayment, PaymentStatus, Refund
from trustlayer.processor import ProcessorRefund

logger = logging.getLogger(__name__)

# An order in one of these states can never get a new intent
SETTLED_STATUSES = frozenset({
    PaymentStatus.PAID.value,
    PaymentStatus.REFUNDED.value,
    PaymentStatus.DISPUTED.value,
})


class TransitionResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True)
class OrderView:
    order_id: str
    payment_status: str
    payment_intent_id: Optional[str]
    amount: Optional[int]
    currency: Optional[str]
    customer_email: Optional[str]
    intent_attempts: int
    release_paused: bool
    funds_released: bool

    @classmethod
    def from_row(cls, row: OrderPayment) -> "OrderView":
        return cls(
            order_id=row.order_id,
            payment_status=row.payment_status,
            payment_intent_id=row.payment_intent_id,
            amount=row.amount,
            currency=row.currency,
            customer_email=row.customer_email,
            intent_attempts=row.intent_attempts,
            release_paused=row.release_paused,
            funds_released=row.funds_released,
        )


@dataclass(frozen=True)
class RefundView:
    id: str
    payment_intent_id: str
    order_id: str
    amount: int
    currency: str
    reason: str
    status: str


class OrderStore(ABC):
    """Storage contract used by the payment lifecycle engine."""

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[OrderView]:
        ...

    @abstractmethod
    def get_order_by_intent(self, intent_id: str) -> Optional[OrderView]:
        ...

    @abstractmethod
    def begin_attempt(
        self,
        order_id: str,
        amount: int,
        currency: str,
        customer_email: Optional[str] = None,
    ) -> int:
        """
        Register a payment attempt and return its 1-based number.

        Only a new order or one whose last payment failed starts a new
        attempt; an order still awaiting payment keeps its current one.
        """

    @abstractmethod
    def attach_intent(self, order_id: str, intent_id: str) -> None:
        ...

    @abstractmethod
    def update_payment_status(
        self,
        order_id: str,
        new_status: PaymentStatus,
        caused_by_event_id: str,
        allowed_from: Iterable[PaymentStatus],
        pause_release: bool = False,
    ) -> TransitionResult:
        ...

    @abstractmethod
    def record_refund(self, refund: ProcessorRefund, order_id: str) -> None:
        ...

    @abstractmethod
    def list_refunds(self, order_id: str) -> List[RefundView]:
        ...

    @abstractmethod
    def mark_released(self, order_id: str) -> OrderView:
        ...


class SqlOrderStore(OrderStore):
    """OrderStore on SQLAlchemy; one transaction per call."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get_order(self, order_id: str) -> Optional[OrderView]:
        with self._session_factory() as db:
            row = db.get(OrderPayment, order_id)
            return OrderView.from_row(row) if row else None

    def get_order_by_intent(self, intent_id: str) -> Optional[OrderView]:
        with self._session_factory() as db:
            row = db.execute(
                select(OrderPayment).where(OrderPayment.payment_intent_id == intent_id)
            ).scalar_one_or_none()
            return OrderView.from_row(row) if row else None

    def begin_attempt(
        self,
        order_id: str,
        amount: int,
        currency: str,
        customer_email: Optional[str] = None,
    ) -> int:
        with self._session_factory() as db, db.begin():
            row = db.get(OrderPayment, order_id, with_for_update=True)
            if row is None:
                row = OrderPayment(
                    order_id=order_id,
                    payment_status=PaymentStatus.AWAITING_PAYMENT.value,
                    intent_attempts=0,
                    release_paused=False,
                    funds_released=False,
                )
                db.add(row)
            elif row.payment_status in SETTLED_STATUSES:
                raise PolicyViolation(f"Order {order_id} is already {row.payment_status}")
            elif row.payment_status == PaymentStatus.PAYMENT_FAILED.value:
                logger.info("Order %s: retrying payment after failure", order_id)
                row.payment_status = PaymentStatus.AWAITING_PAYMENT.value
            elif row.intent_attempts:
                # Still awaiting payment: same attempt, same idempotency key
                if row.payment_intent_id is None:
                    row.amount = amount
                    row.currency = currency
                return row.intent_attempts

            row.amount = amount
            row.currency = currency
            if customer_email:
                row.customer_email = customer_email
            row.intent_attempts = (row.intent_attempts or 0) + 1
            return row.intent_attempts

    def attach_intent(self, order_id: str, intent_id: str) -> None:
        with self._session_factory() as db, db.begin():
            row = db.get(OrderPayment, order_id, with_for_update=True)
            if row is None:
                raise OrderNotFound(order_id)
            row.payment_intent_id = intent_id

    def update_payment_status(
        self,
        order_id: str,
        new_status: PaymentStatus,
        caused_by_event_id: str,
        allowed_from: Iterable[PaymentStatus],
        pause_release: bool = False,
    ) -> TransitionResult:
        allowed = {PaymentStatus(s).value for s in allowed_from}
        target = PaymentStatus(new_status).value

        try:
            with self._session_factory() as db, db.begin():
                if db.get(AppliedEvent, caused_by_event_id) is not None:
                    return TransitionResult.DUPLICATE

                row = db.get(OrderPayment, order_id, with_for_update=True)
                if row is None:
                    raise OrderNotFound(order_id)
                if row.payment_status == target:
                    return TransitionResult.DUPLICATE
                if row.payment_status not in allowed:
                    logger.warning(
                        "Order %s: refusing %s -> %s (event %s)",
                        order_id, row.payment_status, target, caused_by_event_id,
                    )
                    return TransitionResult.REJECTED

                row.payment_status = target
                if pause_release:
                    row.release_paused = True
                db.add(AppliedEvent(
                    event_id=caused_by_event_id,
                    order_id=order_id,
                    new_status=target,
                ))
                db.flush()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            return TransitionResult.DUPLICATE

        logger.info("Order %s -> %s (event %s)", order_id, target, caused_by_event_id)
        return TransitionResult.APPLIED

    def record_refund(self, refund: ProcessorRefund, order_id: str) -> None:
        with self._session_factory() as db, db.begin():
            row = db.get(Refund, refund.id)
            if row is None:
                row = Refund(id=refund.id)
                db.add(row)
            row.payment_intent_id = refund.payment_intent_id
            row.order_id = order_id
            row.amount = refund.amount
            row.currency = refund.currency
            row.reason = refund.reason or ""
            row.status = refund.status

    def list_refunds(self, order_id: str) -> List[RefundView]:
        with self._session_factory() as db:
            rows = db.execute(
                select(Refund).where(Refund.order_id == order_id).order_by(Refund.created_at)
            ).scalars().all()
            return [
                RefundView(
                    id=r.id,
                    payment_intent_id=r.payment_intent_id,
                    order_id=r.order_id,
                    amount=r.amount,
                    currency=r.currency,
                    reason=r.reason,
                    status=r.status,
                )
                for r in rows
            ]

    def mark_released(self, order_id: str) -> OrderView:
        with self._session_factory() as db, db.begin():
            row = db.get(OrderPayment, order_id, with_for_update=True)
            if row is None:
                raise OrderNotFound(order_id)
            if row.payment_status != PaymentStatus.PAID.value:
                raise PolicyViolation(
                    f"Order {order_id} is {row.payment_status}; only paid orders can be released"
                )
            if row.release_paused:
                raise PolicyViolation(f"Release of order {order_id} is paused by a dispute")
            row.funds_released = True
            db.flush()
            return OrderView.from_row(row)
