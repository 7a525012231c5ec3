"""
Checkout session builder.

Turns a list of generated artifacts into an order record plus a Stripe
Checkout session. The order is created before the session is requested; if
Stripe then fails, the order stays in Created and can be reconciled by hand.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .artifacts import ArtifactStore
from .config import Settings
from .errors import OrderNotFoundError, PersistenceError, UpstreamError, ValidationError
from .models import CheckoutResponse, Order
from .order_store import OrderStore
from .stripe_client import CheckoutSession

logger = logging.getLogger(__name__)


class PaymentClient(Protocol):
    def create_checkout_session(self, params: Dict[str, Any]) -> CheckoutSession: ...

    def test_connection(self) -> bool: ...


def new_order_id() -> str:
    """Timestamp-ordered id with a random suffix so concurrent orders never collide."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    return f"{stamp}-{secrets.token_hex(4)}"


def build_line_items(artifacts: Sequence[str], settings: Settings) -> List[dict]:
    """One fixed-price line item per artifact."""
    return [
        {
            "price_data": {
                "currency": settings.currency,
                "product_data": {"name": f"{settings.product_name} #{i}"},
                "unit_amount": settings.unit_price,
            },
            "quantity": 1,
        }
        for i, _ in enumerate(artifacts, start=1)
    ]


def build_session_params(order: Order, settings: Settings) -> Dict[str, Any]:
    """Build the stripe.checkout.Session.create arguments for an order."""
    base_url = settings.public_base_url.rstrip("/")
    return {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": build_line_items(order.artifacts, settings),
        "client_reference_id": order.id,
        "metadata": {"order_id": order.id},
        "shipping_address_collection": {
            "allowed_countries": list(settings.allowed_countries),
        },
        "success_url": f"{base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base_url}/cancel",
    }


class CheckoutSessionBuilder:
    """Creates orders and the payment sessions that pay for them."""

    def __init__(
        self,
        settings: Settings,
        store: OrderStore,
        payments: PaymentClient,
        artifacts: ArtifactStore,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.settings = settings
        self.store = store
        self.payments = payments
        self.artifacts = artifacts
        self.id_factory = id_factory or new_order_id

    def create_checkout(self, artifact_refs: Sequence[str]) -> CheckoutResponse:
        """
        Create an order for the artifacts and request a checkout session.

        Raises:
            ValidationError: no artifacts, or a reference to an unknown artifact
            PersistenceError: the order could not be created
            UpstreamError: Stripe failed; the order remains Created
        """
        artifact_refs = list(artifact_refs)
        if not artifact_refs:
            raise ValidationError("At least one artifact is required")

        unknown = [ref for ref in artifact_refs if not self.artifacts.exists(ref)]
        if unknown:
            raise ValidationError(f"Unknown artifacts: {', '.join(unknown)}")

        order = Order(
            id=self.id_factory(),
            artifacts=artifact_refs,
            created_at=datetime.now(timezone.utc),
        )
        try:
            self.store.create(order)
        except PersistenceError as e:
            logger.error("Could not create order %s: %s", order.id, e)
            raise PersistenceError(f"Could not create order: {e}") from e

        try:
            session = self.payments.create_checkout_session(
                build_session_params(order, self.settings)
            )
        except UpstreamError:
            logger.error(
                "Checkout session failed for order %s; order left in Created for reconciliation",
                order.id,
            )
            raise

        try:
            self.store.update(order.id, lambda o: o.with_checkout_session(session.id))
        except (PersistenceError, OrderNotFoundError) as e:
            # The session exists and the order is intact; only the cross reference is lost.
            logger.warning("Could not record session %s on order %s: %s", session.id, order.id, e)

        logger.info("Checkout session %s created for order %s", session.id, order.id)
        return CheckoutResponse(order_id=order.id, url=session.url)
