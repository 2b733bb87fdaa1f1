"""
Escrow policy: decides whether an order must go through secure (escrowed)
payment or may be paid directly to the seller.

`decide` is a pure function of its arguments. The current time is passed in
rather than read from the clock so that the same context always yields the
same decision.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional, Tuple, Union

HIGH_VALUE_THRESHOLD = Decimal("500")
LOW_VALUE_CROP_THRESHOLD = Decimal("100")
LONG_DISTANCE_THRESHOLD = Decimal("100")  # km
NEW_USER_TXN_THRESHOLD = 5
NEW_USER_DAYS_THRESHOLD = 30

PLATFORM_FEE_RATE = Decimal("0.05")
CENT = Decimal("0.01")

DIRECT_PAYMENT_WARNING = (
    "Direct payment is not protected. We recommend using Secure Payment for your safety."
)


class Category(str, Enum):
    CROPS = "crops"
    LIVESTOCK = "livestock"
    EQUIPMENT = "equipment"
    SERVICES = "services"


@dataclass(frozen=True)
class OrderContext:
    category: Category
    total_amount: Decimal
    quantity: int = 1
    delivery_distance_km: Optional[Decimal] = None
    seller_txn_count: Optional[int] = None
    buyer_txn_count: Optional[int] = None
    seller_join_date: Optional[Union[date, datetime]] = None
    buyer_join_date: Optional[Union[date, datetime]] = None


@dataclass(frozen=True)
class EscrowDecision:
    require_secure_payment: bool
    allow_direct_payment: bool
    reasons: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def direct_payment_warning(self) -> Optional[str]:
        return DIRECT_PAYMENT_WARNING if self.allow_direct_payment else None


@dataclass(frozen=True)
class PaymentOption:
    id: str
    name: str
    description: str
    recommended: bool
    available: bool = True


@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: Decimal
    platform_fee: Decimal
    total: Decimal
    seller_receives: Decimal


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def days_since(joined: Union[date, datetime], now: datetime) -> int:
    """Whole days elapsed between `joined` and `now`."""
    if isinstance(joined, datetime) and joined.tzinfo is not None and now.tzinfo is not None:
        return (now - joined).days
    return (_as_date(now) - _as_date(joined)).days


def is_new_user(
    txn_count: Optional[int],
    join_date: Optional[Union[date, datetime]],
    now: datetime,
) -> bool:
    if txn_count is not None and txn_count < NEW_USER_TXN_THRESHOLD:
        return True
    if join_date is not None and days_since(join_date, now) < NEW_USER_DAYS_THRESHOLD:
        return True
    return False


def decide(context: OrderContext, now: datetime) -> EscrowDecision:
    """Evaluate every rule in order and collect the reasons that matched."""
    reasons: List[str] = []
    blocked = False

    if context.category == Category.LIVESTOCK:
        blocked = True
        reasons.append("Livestock transactions require secure payment for buyer and seller protection")

    if context.total_amount >= HIGH_VALUE_THRESHOLD:
        blocked = True
        reasons.append(f"Orders of ${HIGH_VALUE_THRESHOLD} or more require secure payment")

    if (
        context.delivery_distance_km is not None
        and context.delivery_distance_km >= LONG_DISTANCE_THRESHOLD
    ):
        blocked = True
        reasons.append(f"Deliveries of {LONG_DISTANCE_THRESHOLD}km or more require secure payment")

    if is_new_user(context.seller_txn_count, context.seller_join_date, now):
        blocked = True
        reasons.append("New sellers require secure payment until they build trust")

    if is_new_user(context.buyer_txn_count, context.buyer_join_date, now):
        blocked = True
        reasons.append("New buyers require secure payment for seller protection")

    if (
        not blocked
        and context.category == Category.CROPS
        and context.total_amount < LOW_VALUE_CROP_THRESHOLD
    ):
        reasons.append("Low value crop orders can use direct payment (optional)")

    return EscrowDecision(
        require_secure_payment=blocked,
        allow_direct_payment=not blocked,
        reasons=tuple(reasons),
    )


def payment_options(decision: EscrowDecision) -> List[PaymentOption]:
    options = [
        PaymentOption(
            id="secure_payment",
            name="Secure Payment",
            description=(
                "Your money is held safely until you confirm delivery. "
                "Full buyer and seller protection."
            ),
            recommended=True,
        )
    ]
    if decision.allow_direct_payment:
        options.append(
            PaymentOption(
                id="direct_payment",
                name="Direct Payment",
                description="Pay the seller directly. No protection - only for trusted sellers.",
                recommended=False,
            )
        )
    return options


def calculate_fees(amount: Decimal) -> FeeBreakdown:
    subtotal = Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    platform_fee = (subtotal * PLATFORM_FEE_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    return FeeBreakdown(
        subtotal=subtotal,
        platform_fee=platform_fee,
        total=subtotal + platform_fee,
        seller_receives=subtotal,
    )
