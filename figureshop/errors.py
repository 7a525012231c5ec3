"""
Error types for the order pipeline.

The HTTP layer maps these to status codes; see main.py.
"""


class FigureShopError(Exception):
    """Base class for all figureshop errors."""


class ValidationError(FigureShopError):
    """Malformed or empty input (e.g. a checkout with no artifacts)."""


class AuthenticationError(FigureShopError):
    """Webhook signature did not verify."""


class PersistenceError(FigureShopError):
    """The order store could not complete a read or write."""


class OrderExistsError(PersistenceError):
    """An order with this id already exists."""


class OrderNotFoundError(FigureShopError):
    """No order record exists for the given id."""


class UpstreamError(FigureShopError):
    """An external service (Stripe, OpenAI, SMTP) call failed."""


class InvalidTransitionError(FigureShopError):
    """The requested status change is not allowed from the current state."""
