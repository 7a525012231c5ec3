import threading
from concurrent.futures import ThreadPoolExecutor

from conftest import FakeTransport
from figureshop.models import OrderStatus, PaymentCompleted, ShippingAddress
from figureshop.notifier import FulfillmentNotifier
from figureshop.state_machine import OrderStateMachine, PaymentOutcome


def payment(order_id="order-1", event_id="evt_1", email="buyer@example.com"):
    return PaymentCompleted(
        event_id=event_id,
        order_id=order_id,
        email=email,
        address=ShippingAddress(
            name="Pat Buyer", line1="1 Main St", city="Springfield",
            state="IL", postal_code="62701", country="US",
        ),
    )


def test_payment_marks_order_paid_and_notifies(state_machine, store, transport, make_order):
    make_order()

    outcome = state_machine.handle_payment_completed(payment())

    assert outcome == PaymentOutcome.FULFILLED
    order = store.load("order-1")
    assert order.status == OrderStatus.PAID
    assert order.customer_email == "buyer@example.com"
    assert order.customer_address.city == "Springfield"
    assert order.paid_at is not None
    assert order.notified_at is not None
    assert len(transport.messages) == 1


def test_redelivery_sends_one_notification(state_machine, store, transport, make_order):
    make_order()

    first = state_machine.handle_payment_completed(payment())
    second = state_machine.handle_payment_completed(payment())

    assert first == PaymentOutcome.FULFILLED
    assert second == PaymentOutcome.ALREADY_PROCESSED
    assert len(transport.messages) == 1
    assert store.load("order-1").status == OrderStatus.PAID


def test_redelivery_does_not_overwrite_customer_details(state_machine, store, make_order):
    make_order()

    state_machine.handle_payment_completed(payment(email="first@example.com"))
    state_machine.handle_payment_completed(payment(email="second@example.com"))

    assert store.load("order-1").customer_email == "first@example.com"


def test_concurrent_deliveries_notify_once(settings, store, artifact_store, make_order):
    make_order()
    transport = FakeTransport(delay=0.02)
    machine = OrderStateMachine(store, FulfillmentNotifier(settings, artifact_store, transport))
    barrier = threading.Barrier(8)

    def deliver(_):
        barrier.wait()
        return machine.handle_payment_completed(payment())

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(deliver, range(8)))

    assert outcomes.count(PaymentOutcome.FULFILLED) == 1
    assert outcomes.count(PaymentOutcome.ALREADY_PROCESSED) == 7
    assert len(transport.messages) == 1
    assert store.load("order-1").status == OrderStatus.PAID


def test_unknown_order_is_reported_not_raised(state_machine, store, transport):
    outcome = state_machine.handle_payment_completed(payment(order_id="missing"))

    assert outcome == PaymentOutcome.ORDER_NOT_FOUND
    assert store.list() == []
    assert not (store.root / "missing").exists()
    assert transport.messages == []


def test_missing_order_id_is_reported(state_machine, store):
    outcome = state_machine.handle_payment_completed(payment(order_id=None))

    assert outcome == PaymentOutcome.ORDER_NOT_FOUND
    assert store.list() == []


def test_notifier_failure_records_fulfillment_failed(state_machine, store, transport, make_order):
    make_order()
    transport.fail = True

    outcome = state_machine.handle_payment_completed(payment())

    assert outcome == PaymentOutcome.FULFILLMENT_FAILED
    order = store.load("order-1")
    assert order.status == OrderStatus.FULFILLMENT_FAILED
    assert order.fulfillment_error
    # Payment facts are kept
    assert order.paid_at is not None
    assert order.customer_email == "buyer@example.com"


def test_redelivery_after_fulfillment_failure_does_not_resend(state_machine, store, transport, make_order):
    make_order()
    transport.fail = True
    state_machine.handle_payment_completed(payment())

    transport.fail = False
    outcome = state_machine.handle_payment_completed(payment())

    assert outcome == PaymentOutcome.ALREADY_PROCESSED
    assert transport.messages == []
    assert store.load("order-1").status == OrderStatus.FULFILLMENT_FAILED


def test_artifacts_unchanged_through_lifecycle(state_machine, store, make_order):
    created = make_order(count=3)

    state_machine.handle_payment_completed(payment())
    state_machine.handle_payment_completed(payment())

    assert store.load("order-1").artifacts == created.artifacts


class RaisingNotifier:
    def __init__(self):
        self.calls = 0

    def send_order(self, order):
        self.calls += 1
        raise RuntimeError("mailer crashed")


def test_raising_notifier_records_fulfillment_failed(store, make_order):
    make_order()
    notifier = RaisingNotifier()
    machine = OrderStateMachine(store, notifier)

    outcome = machine.handle_payment_completed(payment())

    assert outcome == PaymentOutcome.FULFILLMENT_FAILED
    order = store.load("order-1")
    assert order.status == OrderStatus.FULFILLMENT_FAILED
    assert "mailer crashed" in order.fulfillment_error
    assert order.notified_at is None

    assert machine.handle_payment_completed(payment()) == PaymentOutcome.ALREADY_PROCESSED
    assert notifier.calls == 1


def test_header_injection_in_email_fails_fulfillment(state_machine, store, transport, make_order):
    make_order()

    outcome = state_machine.handle_payment_completed(
        payment(email="b@example.com\r\nBcc: x@evil.test")
    )

    assert outcome == PaymentOutcome.FULFILLMENT_FAILED
    assert store.load("order-1").status == OrderStatus.FULFILLMENT_FAILED
    assert transport.messages == []
