import pytest

from trustlayer.errors import OrderNotFound, PolicyViolation
from trustlayer.models import PaymentStatus
from trustlayer.order_store import TransitionResult
from trustlayer.processor import ProcessorRefund

AWAITING = (PaymentStatus.AWAITING_PAYMENT,)


def _order(store, order_id="ORD-1", intent_id="pi_1"):
    attempt = store.begin_attempt(order_id, 4500, "usd", "buyer@example.com")
    store.attach_intent(order_id, intent_id)
    return attempt


def test_begin_attempt_creates_projection(store):
    assert _order(store) == 1

    order = store.get_order("ORD-1")
    assert order.payment_status == "awaiting_payment"
    assert order.amount == 4500
    assert order.customer_email == "buyer@example.com"
    assert store.get_order_by_intent("pi_1") == order


def test_transition_applied_once_per_event(store):
    _order(store)

    assert store.update_payment_status("ORD-1", PaymentStatus.PAID, "evt_1", AWAITING) == TransitionResult.APPLIED
    assert store.update_payment_status("ORD-1", PaymentStatus.PAID, "evt_1", AWAITING) == TransitionResult.DUPLICATE


def test_transition_from_wrong_state_is_rejected(store):
    _order(store)
    result = store.update_payment_status("ORD-1", PaymentStatus.REFUNDED, "evt_1", (PaymentStatus.PAID,))

    assert result == TransitionResult.REJECTED
    assert store.get_order("ORD-1").payment_status == "awaiting_payment"


def test_rejected_event_can_apply_later(store):
    _order(store)
    store.update_payment_status("ORD-1", PaymentStatus.REFUNDED, "evt_r", (PaymentStatus.PAID,))
    store.update_payment_status("ORD-1", PaymentStatus.PAID, "evt_p", AWAITING)

    result = store.update_payment_status("ORD-1", PaymentStatus.REFUNDED, "evt_r", (PaymentStatus.PAID,))
    assert result == TransitionResult.APPLIED


def test_unknown_order(store):
    with pytest.raises(OrderNotFound):
        store.update_payment_status("ORD-404", PaymentStatus.PAID, "evt_1", AWAITING)


def test_settled_order_refuses_new_attempt(store):
    _order(store)
    store.update_payment_status("ORD-1", PaymentStatus.PAID, "evt_1", AWAITING)

    with pytest.raises(PolicyViolation):
        store.begin_attempt("ORD-1", 4500, "usd")


def test_pause_release(store):
    _order(store)
    store.update_payment_status("ORD-1", PaymentStatus.PAID, "evt_1", AWAITING)
    store.update_payment_status(
        "ORD-1", PaymentStatus.DISPUTED, "evt_2", (PaymentStatus.PAID,), pause_release=True
    )

    assert store.get_order("ORD-1").release_paused is True
    with pytest.raises(PolicyViolation):
        store.mark_released("ORD-1")


def test_refund_records(store):
    _order(store)
    refund = ProcessorRefund(
        id="re_1", payment_intent_id="pi_1", amount=1000, currency="usd",
        status="pending", reason="duplicate",
    )
    store.record_refund(refund, "ORD-1")
    # a later status update overwrites the same record
    store.record_refund(ProcessorRefund(**{**refund.__dict__, "status": "succeeded"}), "ORD-1")

    refunds = store.list_refunds("ORD-1")
    assert len(refunds) == 1
    assert refunds[0].status == "succeeded"
    assert refunds[0].amount == 1000


def test_open_order_keeps_its_attempt(store):
    assert _order(store) == 1
    assert store.begin_attempt("ORD-1", 9900, "usd") == 1
    # the attached intent's amount stays on the projection
    assert store.get_order("ORD-1").amount == 4500


def test_failed_order_starts_new_attempt(store):
    _order(store)
    store.update_payment_status("ORD-1", PaymentStatus.PAYMENT_FAILED, "evt_1", AWAITING)

    assert store.begin_attempt("ORD-1", 4500, "usd") == 2
    assert store.get_order("ORD-1").payment_status == "awaiting_payment"
