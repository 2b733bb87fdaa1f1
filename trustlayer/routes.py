from dataclasses import asdict

from fastapi import APIRouter, Depends

from trustlayer.auth import verify_token
from trustlayer.config import Settings, get_settings
from trustlayer.deps import get_dispatcher, get_payment_engine, get_verification_service
from trustlayer.errors import DeliveryError
from trustlayer.escrow import calculate_fees, decide, payment_options
from trustlayer.messaging import MessageDispatcher, render_otp_message
from trustlayer.payments import PaymentLifecycleEngine
from trustlayer.schemas import (
    ConfirmRequest,
    ConfirmResponse,
    CreateIntentRequest,
    CreateIntentResponse,
    EscrowDecisionOut,
    FeesOut,
    IntentStatusResponse,
    IssueRequest,
    IssueResponse,
    OrderContextIn,
    OrderPaymentResponse,
    PaymentOptionOut,
    PolicyResponse,
    RefundRequest,
    RefundResponse,
    ReleaseResponse,
)
from trustlayer.verification import VerificationTokenService, normalize_identifier, utcnow

verify_router = APIRouter(prefix="/verify", tags=["verification"])
payments_router = APIRouter(prefix="/payments", tags=["payments"])


@verify_router.post("/issue", response_model=IssueResponse, response_model_exclude_none=True)
def issue_challenge(
    request: IssueRequest,
    service: VerificationTokenService = Depends(get_verification_service),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
):
    identifier = normalize_identifier(request.identifier)
    challenge = service.issue_challenge(identifier)

    message = render_otp_message(challenge.code, settings.otp_ttl_minutes, request.name)
    if not dispatcher.send(identifier, message):
        raise DeliveryError("Failed to send verification code. Please try again.")

    return IssueResponse(
        token=challenge.token,
        expires_at=challenge.expires_at,
        message=f"Verification code sent to {identifier}",
        code=challenge.code if settings.expose_dev_codes and settings.is_development else None,
    )


@verify_router.post("/confirm", response_model=ConfirmResponse)
def confirm_challenge(
    request: ConfirmRequest,
    service: VerificationTokenService = Depends(get_verification_service),
):
    identifier = service.verify_challenge(request.token, request.code)
    return ConfirmResponse(identifier=identifier)


@payments_router.post("/policy", response_model=PolicyResponse)
def evaluate_policy(request: OrderContextIn):
    decision = decide(request.to_context(), utcnow())
    fees = calculate_fees(request.total_amount)
    return PolicyResponse(
        decision=EscrowDecisionOut.from_decision(decision),
        options=[PaymentOptionOut(**asdict(o)) for o in payment_options(decision)],
        fees=FeesOut(
            subtotal=float(fees.subtotal),
            platform_fee=float(fees.platform_fee),
            total=float(fees.total),
            seller_receives=float(fees.seller_receives),
        ),
    )


@payments_router.post("/intents", response_model=CreateIntentResponse, response_model_exclude_none=True)
def create_intent(
    request: CreateIntentRequest,
    engine: PaymentLifecycleEngine = Depends(get_payment_engine),
):
    created = engine.create_intent(
        amount=request.amount,
        currency=request.currency,
        order_id=request.order_id,
        customer_email=request.customer_email,
        description=request.description,
        order_context=request.order_context.to_context() if request.order_context else None,
    )
    return CreateIntentResponse(
        client_secret=created.client_secret,
        intent_id=created.intent_id,
        escrow=EscrowDecisionOut.from_decision(created.escrow) if created.escrow else None,
    )


@payments_router.get("/intents/{intent_id}", response_model=IntentStatusResponse)
def retrieve_intent(
    intent_id: str,
    engine: PaymentLifecycleEngine = Depends(get_payment_engine),
):
    status = engine.retrieve_status(intent_id)
    return IntentStatusResponse(
        status=status.status,
        order_id=status.order_id,
        amount=float(status.amount),
        currency=status.currency,
    )


@payments_router.get("/orders/{order_id}", response_model=OrderPaymentResponse)
def get_order_payment(
    order_id: str,
    engine: PaymentLifecycleEngine = Depends(get_payment_engine),
):
    order = engine.get_payment_status(order_id)
    return OrderPaymentResponse(
        order_id=order.order_id,
        payment_status=order.payment_status,
        payment_intent_id=order.payment_intent_id,
        release_paused=order.release_paused,
        funds_released=order.funds_released,
    )


@payments_router.post("/orders/{order_id}/release", response_model=ReleaseResponse)
def release_funds(
    order_id: str,
    engine: PaymentLifecycleEngine = Depends(get_payment_engine),
    auth=Depends(verify_token),
):
    result = engine.release_funds(order_id)
    return ReleaseResponse(order_id=result.order_id, released=result.released)


@payments_router.post("/refunds", response_model=RefundResponse)
def create_refund(
    request: RefundRequest,
    engine: PaymentLifecycleEngine = Depends(get_payment_engine),
    auth=Depends(verify_token),
):
    refund = engine.create_refund(request.intent_id, request.amount, request.reason)
    return RefundResponse(
        refund_id=refund.refund_id,
        status=refund.status,
        amount=float(refund.amount),
    )
