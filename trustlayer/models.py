from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from trustlayer.database import Base


def _now():
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class OrderPayment(Base):
    """Payment-status projection of a marketplace order."""

    __tablename__ = "order_payments"

    order_id = Column(String, primary_key=True)
    payment_status = Column(String, nullable=False, default=PaymentStatus.AWAITING_PAYMENT.value)
    payment_intent_id = Column(String, unique=True, index=True)   # latest intent
    amount = Column(Integer)                                       # minor units
    currency = Column(String(3))
    customer_email = Column(String)
    intent_attempts = Column(Integer, nullable=False, default=0)
    release_paused = Column(Boolean, nullable=False, default=False)
    funds_released = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)


class AppliedEvent(Base):
    """Marks a status change as applied so redeliveries are absorbed."""

    __tablename__ = "applied_events"

    event_id = Column(String, primary_key=True)
    order_id = Column(String, index=True, nullable=False)
    new_status = Column(String, nullable=False)
    applied_at = Column(DateTime(timezone=True), default=_now, nullable=False)


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String, primary_key=True)                          # processor refund ID
    payment_intent_id = Column(String, index=True, nullable=False)
    order_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)                       # minor units
    currency = Column(String(3), nullable=False)
    reason = Column(String, nullable=False)
    status = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
