"""
Pytest configuration and fixtures.
"""

import os
import json
import itertools
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

# Settings are read at import time; give the test run its own secrets and an
# in-memory default database before anything from the package is imported.
os.environ.setdefault("OTP_SECRET", "test-otp-secret")
os.environ.setdefault("WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SENDGRID_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import trustlayer.auth
from trustlayer import deps
from trustlayer.config import get_settings
from trustlayer.database import Base
from trustlayer.errors import ProcessorError
from trustlayer.main import app as fastapi_app
from trustlayer.messaging import MessageDispatcher, PaymentNotifier, RenderedMessage
from trustlayer.order_store import SqlOrderStore
from trustlayer.payments import PaymentLifecycleEngine
from trustlayer.processor import PaymentProcessor, ProcessorIntent, ProcessorRefund
from trustlayer.signing import sign_payload
from trustlayer.verification import VerificationTokenService

WEBHOOK_SECRET = get_settings().webhook_secret
OTP_SECRET = get_settings().otp_secret


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeProcessor(PaymentProcessor):
    """In-memory processor; webhook signatures use the shared HMAC scheme."""

    def __init__(self):
        self.intents: Dict[str, ProcessorIntent] = {}
        self.refunds: List[ProcessorRefund] = []
        self.idempotency_keys: List[str] = []
        self.fail_with: Optional[ProcessorError] = None
        self.refund_status = "succeeded"
        self._ids = itertools.count(1)

    def create_intent(self, amount, currency, metadata, idempotency_key,
                      receipt_email=None, description=None):
        if self.fail_with:
            raise self.fail_with
        n = next(self._ids)
        intent = ProcessorIntent(
            id=f"pi_{n}",
            amount=amount,
            currency=currency,
            status="requires_payment_method",
            client_secret=f"pi_{n}_secret",
            metadata=dict(metadata),
        )
        self.intents[intent.id] = intent
        self.idempotency_keys.append(idempotency_key)
        return intent

    def retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise ProcessorError(f"No such payment_intent: '{intent_id}'", code="resource_missing")
        return self.intents[intent_id]

    def set_status(self, intent_id, status):
        intent = self.intents[intent_id]
        self.intents[intent_id] = ProcessorIntent(
            id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            status=status,
            client_secret=intent.client_secret,
            metadata=intent.metadata,
        )

    def create_refund(self, intent_id, reason, amount=None):
        if self.fail_with:
            raise self.fail_with
        intent = self.retrieve_intent(intent_id)
        refund = ProcessorRefund(
            id=f"re_{next(self._ids)}",
            payment_intent_id=intent_id,
            amount=amount if amount is not None else intent.amount,
            currency=intent.currency,
            status=self.refund_status,
            reason=reason,
        )
        self.refunds.append(refund)
        return refund


class RecordingDispatcher(MessageDispatcher):
    def __init__(self):
        self.sent: List[tuple] = []
        self.succeed = True

    def send(self, identifier: str, message: RenderedMessage) -> bool:
        self.sent.append((identifier, message))
        return self.succeed


def build_event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def store(session_factory):
    return SqlOrderStore(session_factory)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def payment_engine(processor, store, dispatcher, clock):
    return PaymentLifecycleEngine(
        processor=processor,
        store=store,
        webhook_secret=WEBHOOK_SECRET,
        notifier=PaymentNotifier(dispatcher),
        clock=clock,
    )


@pytest.fixture
def signed_event():
    """Build a webhook body and its signature header."""

    def _signed(event_id: str, event_type: str, obj: dict):
        body = build_event(event_id, event_type, obj)
        return body, sign_payload(WEBHOOK_SECRET, body)

    return _signed


@pytest.fixture
def client(store, dispatcher, processor, clock):
    fastapi_app.dependency_overrides[deps.get_order_store] = lambda: store
    fastapi_app.dependency_overrides[deps.get_dispatcher] = lambda: dispatcher
    fastapi_app.dependency_overrides[deps.get_processor] = lambda: processor
    fastapi_app.dependency_overrides[deps.get_verification_service] = (
        lambda: VerificationTokenService(OTP_SECRET, clock=clock)
    )
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[trustlayer.auth.verify_token] = lambda: True
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
