"""Request and response bodies for the HTTP surface."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from trustlayer.escrow import Category, EscrowDecision, OrderContext


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- verification --------------------------------------------------------

class IssueRequest(CamelModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    identifier: str
    name: Optional[str] = None


class IssueResponse(CamelModel):
    token: str
    expires_at: datetime
    message: str
    code: Optional[str] = None


class ConfirmRequest(CamelModel):
    # Clients often send the code as a JSON number
    model_config = ConfigDict(coerce_numbers_to_str=True)

    token: str
    code: str


class ConfirmResponse(CamelModel):
    identifier: str


# -- escrow policy -------------------------------------------------------

class OrderContextIn(CamelModel):
    category: Category
    total_amount: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=1)
    delivery_distance_km: Optional[Decimal] = Field(default=None, ge=0)
    seller_txn_count: Optional[int] = Field(default=None, ge=0)
    buyer_txn_count: Optional[int] = Field(default=None, ge=0)
    seller_join_date: Optional[Union[datetime, date]] = None
    buyer_join_date: Optional[Union[datetime, date]] = None

    def to_context(self) -> OrderContext:
        return OrderContext(**self.model_dump())


class EscrowDecisionOut(CamelModel):
    require_secure_payment: bool
    allow_direct_payment: bool
    reasons: List[str]
    direct_payment_warning: Optional[str] = None

    @classmethod
    def from_decision(cls, decision: EscrowDecision) -> "EscrowDecisionOut":
        return cls(
            require_secure_payment=decision.require_secure_payment,
            allow_direct_payment=decision.allow_direct_payment,
            reasons=list(decision.reasons),
            direct_payment_warning=decision.direct_payment_warning,
        )


class PaymentOptionOut(CamelModel):
    id: str
    name: str
    description: str
    recommended: bool
    available: bool


class FeesOut(CamelModel):
    subtotal: float
    platform_fee: float
    total: float
    seller_receives: float


class PolicyResponse(CamelModel):
    decision: EscrowDecisionOut
    options: List[PaymentOptionOut]
    fees: FeesOut


# -- payments ------------------------------------------------------------

class CreateIntentRequest(CamelModel):
    amount: Decimal
    currency: str = "usd"
    order_id: str
    customer_email: Optional[str] = None
    description: Optional[str] = None
    order_context: Optional[OrderContextIn] = None


class CreateIntentResponse(CamelModel):
    client_secret: Optional[str]
    intent_id: str
    escrow: Optional[EscrowDecisionOut] = None


class IntentStatusResponse(CamelModel):
    status: str
    order_id: Optional[str]
    amount: float
    currency: str


class OrderPaymentResponse(CamelModel):
    order_id: str
    payment_status: str
    payment_intent_id: Optional[str]
    release_paused: bool
    funds_released: bool


class RefundRequest(CamelModel):
    intent_id: str
    amount: Optional[Decimal] = None
    reason: Optional[str] = "requested_by_customer"


class RefundResponse(CamelModel):
    refund_id: str
    status: str
    amount: float


class ReleaseResponse(CamelModel):
    order_id: str
    released: bool


class WebhookResponse(CamelModel):
    received: bool = True
    outcome: str
