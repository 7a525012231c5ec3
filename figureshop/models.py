"""
Pydantic models for orders, webhook events and the HTTP API.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTransitionError


class OrderStatus(str, Enum):
    """Lifecycle states of an order."""
    CREATED = "Created"  # awaiting payment
    PAID = "Paid"
    FULFILLMENT_FAILED = "FulfillmentFailed"


TERMINAL_STATUSES = (OrderStatus.PAID, OrderStatus.FULFILLMENT_FAILED)


class ShippingAddress(BaseModel):
    """Shipping address collected by Stripe Checkout."""
    name: str = ""
    phone: Optional[str] = None
    line1: str = ""
    line2: Optional[str] = None
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""

    def lines(self) -> List[str]:
        """Format the address as printable lines."""
        lines = [self.name, self.line1]
        if self.line2:
            lines.append(self.line2)
        lines.append(f"{self.city}, {self.state} {self.postal_code}".strip(", "))
        lines.append(self.country)
        if self.phone:
            lines.append(f"Phone: {self.phone}")
        return [line for line in lines if line]


class Order(BaseModel):
    """
    A customer's purchase of one or more generated artifacts.

    Instances are immutable; status changes produce a new Order via the
    mark_* methods so they can be used as pure transforms for OrderStore.update.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    status: OrderStatus = OrderStatus.CREATED
    artifacts: List[str]
    created_at: datetime

    # Set exactly once, at Created -> Paid
    customer_email: Optional[str] = None
    customer_address: Optional[ShippingAddress] = None
    paid_at: Optional[datetime] = None

    notified_at: Optional[datetime] = None
    fulfillment_error: Optional[str] = None
    checkout_session_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_paid(
        self,
        email: Optional[str],
        address: Optional[ShippingAddress],
        paid_at: datetime,
    ) -> "Order":
        """Return this order confirmed as paid."""
        if self.status != OrderStatus.CREATED:
            raise InvalidTransitionError(
                f"Order {self.id} cannot be marked paid from {self.status.value}"
            )
        return self.model_copy(update={
            "status": OrderStatus.PAID,
            "customer_email": email,
            "customer_address": address,
            "paid_at": paid_at,
        })

    def mark_notified(self, notified_at: datetime) -> "Order":
        """Return this order with the fulfillment notification recorded."""
        if self.status != OrderStatus.PAID:
            raise InvalidTransitionError(
                f"Order {self.id} cannot be notified from {self.status.value}"
            )
        return self.model_copy(update={"notified_at": notified_at})

    def mark_fulfillment_failed(self, reason: str) -> "Order":
        """
        Return this order with a failed fulfillment recorded.

        Only a paid order can fail fulfillment; paid_at and the customer
        details are kept since the payment itself is final.
        """
        if self.status != OrderStatus.PAID or self.notified_at is not None:
            raise InvalidTransitionError(
                f"Order {self.id} cannot fail fulfillment from {self.status.value}"
            )
        return self.model_copy(update={
            "status": OrderStatus.FULFILLMENT_FAILED,
            "fulfillment_error": reason,
        })

    def with_checkout_session(self, session_id: str) -> "Order":
        return self.model_copy(update={"checkout_session_id": session_id})


# =============================================================================
# Webhook Events
# =============================================================================

class PaymentCompleted(BaseModel):
    """A verified payment-completion notification."""
    event_id: str
    order_id: Optional[str] = None
    email: Optional[str] = None
    address: Optional[ShippingAddress] = None


class WebhookEvent(BaseModel):
    """A verified webhook event. payment is set for payment-completion events."""
    id: str
    type: str
    payment: Optional[PaymentCompleted] = None


# =============================================================================
# API Models
# =============================================================================

class CheckoutRequest(BaseModel):
    """Request to the /create-checkout-session endpoint."""
    artifacts: List[str] = Field(default_factory=list)


class CheckoutResponse(BaseModel):
    """Response from the /create-checkout-session endpoint."""
    order_id: str
    url: str


class GenerateResponse(BaseModel):
    """Response from the /generate-image endpoint."""
    prompt: str
    artifacts: List[str]


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the payment processor."""
    received: bool = True
    outcome: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str


class Customization(BaseModel):
    """Text fields the customer adds to their figure."""
    figure_name: str = Field(default="", max_length=60)
    accessories: str = Field(default="", max_length=200)
    tagline: str = Field(default="", max_length=120)
