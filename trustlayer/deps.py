"""
Dependency providers.

Components are built once in the application lifespan and kept on
`app.state`; handlers receive them through these functions, and tests swap
them with `app.dependency_overrides`.
"""

from datetime import timedelta

from fastapi import Depends, Request

from trustlayer.config import Settings, get_settings
from trustlayer.messaging import (
    LogDispatcher,
    MessageDispatcher,
    PaymentNotifier,
    RoutingDispatcher,
    SendGridDispatcher,
)
from trustlayer.order_store import OrderStore, SqlOrderStore
from trustlayer.payments import PaymentLifecycleEngine
from trustlayer.processor import PaymentProcessor
from trustlayer.stripe_processor import StripeProcessor
from trustlayer.verification import VerificationTokenService


def build_dispatcher(settings: Settings) -> MessageDispatcher:
    dev = LogDispatcher()
    if not settings.sendgrid_api_key:
        return dev
    email = SendGridDispatcher(
        api_key=settings.sendgrid_api_key,
        from_email=settings.mail_from,
        from_name=settings.mail_from_name,
    )
    # No SMS gateway is wired in; phone codes go to the log
    return RoutingDispatcher(email=email, sms=dev)


def build_processor(settings: Settings) -> PaymentProcessor:
    return StripeProcessor(settings.stripe_secret_key)


def build_order_store(session_factory) -> OrderStore:
    return SqlOrderStore(session_factory)


def get_processor(request: Request) -> PaymentProcessor:
    return request.app.state.processor


def get_order_store(request: Request) -> OrderStore:
    return request.app.state.order_store


def get_dispatcher(request: Request) -> MessageDispatcher:
    return request.app.state.dispatcher


def get_verification_service(
    settings: Settings = Depends(get_settings),
) -> VerificationTokenService:
    return VerificationTokenService(
        settings.otp_secret,
        ttl=timedelta(minutes=settings.otp_ttl_minutes),
    )


def get_payment_engine(
    processor: PaymentProcessor = Depends(get_processor),
    store: OrderStore = Depends(get_order_store),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
) -> PaymentLifecycleEngine:
    return PaymentLifecycleEngine(
        processor=processor,
        store=store,
        webhook_secret=settings.webhook_secret,
        notifier=PaymentNotifier(dispatcher),
        strict_refund_reasons=settings.strict_refund_reasons,
    )
