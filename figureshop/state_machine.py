"""
Order state machine.

    Created ──payment──> Paid ──notifier failed──> FulfillmentFailed

A payment-completion event marks the order paid and triggers exactly one
fulfillment notification, no matter how many times the event is delivered.
The terminal check and the Paid write happen inside a single
OrderStore.update, so two racing deliveries cannot both see Created.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from .errors import InvalidTransitionError, OrderNotFoundError, PersistenceError
from .models import Order, PaymentCompleted
from .order_store import OrderStore

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send_order(self, order: Order) -> bool: ...


class PaymentOutcome(str, Enum):
    """What handling a payment-completion event did."""
    FULFILLED = "fulfilled"
    FULFILLMENT_FAILED = "fulfillment_failed"
    ALREADY_PROCESSED = "already_processed"
    ORDER_NOT_FOUND = "order_not_found"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderStateMachine:
    """Applies verified payment events to stored orders."""

    def __init__(self, store: OrderStore, notifier: Notifier):
        self.store = store
        self.notifier = notifier

    def handle_payment_completed(self, payment: PaymentCompleted) -> PaymentOutcome:
        """
        Mark the referenced order paid and send it for fulfillment.

        Unknown orders and repeated deliveries are reported through the
        outcome, not raised. PersistenceError propagates; nothing is applied
        in that case.
        """
        transitioned = False

        def mark_paid(order: Order) -> Order:
            nonlocal transitioned
            if order.is_terminal:
                return order
            transitioned = True
            return order.mark_paid(payment.email, payment.address, _now())

        try:
            order = self.store.update(payment.order_id or "", mark_paid)
        except OrderNotFoundError:
            logger.error(
                "Payment event %s references unknown order %r; needs manual reconciliation",
                payment.event_id, payment.order_id,
            )
            return PaymentOutcome.ORDER_NOT_FOUND

        if not transitioned:
            logger.info(
                "Order %s already %s; ignoring redelivered event %s",
                order.id, order.status.value, payment.event_id,
            )
            return PaymentOutcome.ALREADY_PROCESSED

        logger.info("Order %s marked paid (event %s)", order.id, payment.event_id)

        reason = "Fulfillment notification failed"
        try:
            sent = self.notifier.send_order(order)
        except Exception as e:
            logger.exception("Notifier raised for order %s", order.id)
            sent = False
            reason = f"{reason}: {e}"

        if sent:
            self._record(order.id, lambda o: o.mark_notified(_now()))
            return PaymentOutcome.FULFILLED

        self._record(order.id, lambda o: o.mark_fulfillment_failed(reason))
        logger.error("Order %s is paid but fulfillment failed; operator follow-up required", order.id)
        return PaymentOutcome.FULFILLMENT_FAILED

    def _record(self, order_id: str, transform) -> None:
        # Paid is already committed here; a redelivery could not repair a failed write
        try:
            self.store.update(order_id, transform)
        except InvalidTransitionError as e:
            logger.warning("Skipped post-payment update for order %s: %s", order_id, e)
        except PersistenceError as e:
            logger.error("Could not record fulfillment result for order %s: %s", order_id, e)
