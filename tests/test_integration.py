import json

import pytest
import stripe
from fastapi.testclient import TestClient

import trustlayer.auth
from trustlayer import deps
from trustlayer.main import app as fastapi_app
from trustlayer.stripe_processor import StripeProcessor


@pytest.fixture
def stripe_client(store, dispatcher):
    # Real StripeProcessor from the lifespan; only the SDK calls are mocked
    fastapi_app.dependency_overrides[deps.get_order_store] = lambda: store
    fastapi_app.dependency_overrides[deps.get_dispatcher] = lambda: dispatcher
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[trustlayer.auth.verify_token] = lambda: True

    with TestClient(fastapi_app) as c:
        assert isinstance(fastapi_app.state.processor, StripeProcessor)
        yield c

    fastapi_app.dependency_overrides.clear()


def _stripe_intent(mocker, intent_id, order_id, status="requires_payment_method"):
    intent = mocker.Mock()
    intent.id = intent_id
    intent.amount = 2500
    intent.currency = "eur"
    intent.status = status
    intent.client_secret = f"{intent_id}_secret_test"
    intent.metadata = {"orderId": order_id, "platform": "marketplace"}
    return intent


def test_full_payment_lifecycle_integration(stripe_client, store, dispatcher, mocker):
    """
    Test the full lifecycle:
    1. Create intent (API -> Stripe mocked -> order store)
    2. Webhook success (Stripe -> API -> order store)
    3. Refund (API -> Stripe mocked -> order store)
    """

    # --- 1. CREATE INTENT ---
    create = mocker.patch(
        "stripe.PaymentIntent.create",
        return_value=_stripe_intent(mocker, "pi_int_123", "ORDER-INT-001"),
    )

    response = stripe_client.post("/payments/intents", json={
        "orderId": "ORDER-INT-001",
        "amount": "25.00",
        "currency": "eur",
        "customerEmail": "buyer@example.com",
    })

    assert response.status_code == 200
    assert response.json()["clientSecret"] == "pi_int_123_secret_test"

    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 2500
    assert kwargs["currency"] == "eur"
    assert kwargs["metadata"] == {"orderId": "ORDER-INT-001", "platform": "marketplace"}
    assert kwargs["idempotency_key"] == "ORDER-INT-001:1"
    assert kwargs["receipt_email"] == "buyer@example.com"
    assert kwargs["description"] == "Marketplace order #ORDER-INT-001"
    assert kwargs["automatic_payment_methods"] == {"enabled": True}

    assert store.get_order("ORDER-INT-001").payment_status == "awaiting_payment"

    # --- 2. WEBHOOK SUCCESS ---
    body = json.dumps({
        "id": "evt_int_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_int_123",
            "status": "succeeded",
            "metadata": {"orderId": "ORDER-INT-001"},
        }},
    }).encode()
    construct = mocker.patch("stripe.Webhook.construct_event", return_value=mocker.Mock())

    response = stripe_client.post(
        "/payments/webhook",
        content=body,
        headers={"Stripe-Signature": "t=1700000000,v1=fake_sig"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "applied"}
    raw, header, _ = construct.call_args.args
    assert raw == body
    assert header == "t=1700000000,v1=fake_sig"

    assert store.get_order("ORDER-INT-001").payment_status == "paid"
    assert dispatcher.sent[0][0] == "buyer@example.com"

    # --- 3. REFUND ---
    refund = mocker.Mock()
    refund.id = "re_int_1"
    refund.amount = 2500
    refund.currency = "eur"
    refund.status = "succeeded"
    refund.reason = "requested_by_customer"
    refund_create = mocker.patch("stripe.Refund.create", return_value=refund)

    response = stripe_client.post("/payments/refunds", json={"intentId": "pi_int_123"})

    assert response.status_code == 200
    assert response.json() == {"refundId": "re_int_1", "status": "succeeded", "amount": 25.0}
    refund_create.assert_called_once_with(payment_intent="pi_int_123", reason="requested_by_customer")
    assert store.get_order("ORDER-INT-001").payment_status == "refunded"


def test_card_error_is_reported(stripe_client, store, mocker):
    mocker.patch(
        "stripe.PaymentIntent.create",
        side_effect=stripe.CardError("Your card was declined.", "card", "card_declined"),
    )

    response = stripe_client.post("/payments/intents", json={"orderId": "ORDER-INT-002", "amount": "10"})

    assert response.status_code == 502
    assert response.json() == {"detail": "Your card was declined.", "code": "card_declined"}
    assert store.get_order("ORDER-INT-002").payment_intent_id is None


def test_stripe_webhook_invalid_signature(stripe_client, store, mocker):
    mocker.patch(
        "stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("Invalid", "sig"),
    )
    update = mocker.spy(store, "update_payment_status")

    response = stripe_client.post(
        "/payments/webhook",
        content=b'{"id": "evt_1"}',
        headers={"stripe-signature": "invalid_sig"},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    update.assert_not_called()


def test_stripe_webhook_missing_signature(stripe_client, mocker):
    construct = mocker.patch("stripe.Webhook.construct_event")

    response = stripe_client.post("/payments/webhook", content=b"{}")

    assert response.status_code == 400
    construct.assert_not_called()


def test_retrieve_intent_through_stripe(stripe_client, mocker):
    mocker.patch(
        "stripe.PaymentIntent.retrieve",
        return_value=_stripe_intent(mocker, "pi_int_9", "ORDER-INT-009", status="succeeded"),
    )

    response = stripe_client.get("/payments/intents/pi_int_9")

    assert response.status_code == 200
    assert response.json() == {
        "status": "succeeded",
        "orderId": "ORDER-INT-009",
        "amount": 25.0,
        "currency": "EUR",
    }
