"""
Stripe webhook verification and decoding.

The signature covers the exact request body bytes, so verification must run
on the raw body before anything parses or re-serializes it.
"""
import json
import logging
from typing import Any, Dict, Optional

import pydantic
import stripe

from .errors import AuthenticationError, ValidationError
from .models import PaymentCompleted, ShippingAddress, WebhookEvent

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"

PAID_STATUSES = ("paid", "no_payment_required")


def _shipping_details(session: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # Newer API versions moved shipping_details under collected_information
    collected = session.get("collected_information") or {}
    return collected.get("shipping_details") or session.get("shipping_details")


def parse_address(session: Dict[str, Any]) -> Optional[ShippingAddress]:
    """Extract the shipping address from a Checkout session object."""
    details = _shipping_details(session)
    if not details:
        return None

    addr = details.get("address") or {}
    customer = session.get("customer_details") or {}
    return ShippingAddress(
        name=details.get("name") or customer.get("name") or "",
        phone=details.get("phone") or customer.get("phone"),
        line1=addr.get("line1") or "",
        line2=addr.get("line2"),
        city=addr.get("city") or "",
        state=addr.get("state") or "",
        postal_code=addr.get("postal_code") or "",
        country=addr.get("country") or "",
    )


def parse_payment(event_id: str, session: Dict[str, Any]) -> PaymentCompleted:
    """Build a PaymentCompleted from a Checkout session object."""
    metadata = session.get("metadata") or {}
    customer = session.get("customer_details") or {}
    return PaymentCompleted(
        event_id=event_id,
        order_id=metadata.get("order_id") or session.get("client_reference_id"),
        email=customer.get("email") or session.get("customer_email"),
        address=parse_address(session),
    )


def is_payment_completion(event_type: str, session: Dict[str, Any]) -> bool:
    if event_type == ASYNC_PAYMENT_SUCCEEDED:
        return True
    if event_type == SESSION_COMPLETED:
        # Delayed payment methods complete the session while still unpaid
        return session.get("payment_status") in PAID_STATUSES
    return False


class WebhookAuthenticator:
    """Verifies that webhook requests were sent by Stripe."""

    def __init__(self, secret: str, tolerance: int = 300):
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify the signature over the raw body and decode the event.

        Args:
            payload: The request body exactly as received
            signature: The Stripe-Signature header value

        Returns:
            WebhookEvent; its payment field is set for payment-completion events

        Raises:
            AuthenticationError: signature missing, malformed, stale or wrong
            ValidationError: signature verified but the body is not a valid event
        """
        if not self.secret:
            raise AuthenticationError("Webhook secret is not configured")
        if not signature:
            raise AuthenticationError("Missing Stripe-Signature header")

        try:
            # Decoding keeps the bytes intact; verify_header signs "<t>.<text>"
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.secret, self.tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise AuthenticationError(f"Invalid webhook signature: {e}") from e

        try:
            body = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON payload: {e}") from e

        return self.decode(body)

    def decode(self, body: Any) -> WebhookEvent:
        """Decode an already-verified event body."""
        if not isinstance(body, dict) or "type" not in body:
            raise ValidationError("Webhook payload is not an event")

        event_id = str(body.get("id") or "")
        event_type = str(body["type"])
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise ValidationError(f"Event {event_id} has a malformed data field")
        session = data.get("object") or {}

        if not isinstance(session, dict) or not is_payment_completion(event_type, session):
            return WebhookEvent(id=event_id, type=event_type)

        try:
            payment = parse_payment(event_id, session)
        except (pydantic.ValidationError, AttributeError) as e:
            raise ValidationError(f"Malformed checkout session in event {event_id}: {e}") from e

        return WebhookEvent(id=event_id, type=event_type, payment=payment)
