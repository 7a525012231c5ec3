import logging
from dataclasses import dataclass
from typing import Any, Dict

import stripe

from .config import Settings
from .errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    """The parts of a Stripe Checkout session we care about."""
    id: str
    url: str


class StripeClient:
    """Client for interacting with Stripe API."""

    def __init__(self, settings: Settings):
        self.settings = settings
        stripe.api_key = settings.stripe_secret_key

    def create_checkout_session(self, params: Dict[str, Any]) -> CheckoutSession:
        """
        Create a Checkout session.

        Args:
            params: Keyword arguments for stripe.checkout.Session.create

        Returns:
            CheckoutSession with the session id and the redirect URL

        Raises:
            UpstreamError: Stripe rejected the request or could not be reached
        """
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error("Stripe checkout session error: %s", e)
            raise UpstreamError(f"Stripe checkout session failed: {e}") from e

        return CheckoutSession(id=session.id, url=session.url)

    def test_connection(self) -> bool:
        """Test the Stripe API connection."""
        try:
            stripe.Balance.retrieve()
            return True
        except stripe.StripeError:
            return False
