"""
Figureshop - photo to 80s action figure renders, sold through Stripe Checkout
and fulfilled by email.
"""

__version__ = "1.0.0"
