"""
Route modules for the checkout API.
"""

from .checkout import catalog_router, checkout_router, limiter

__all__ = ["catalog_router", "checkout_router", "limiter"]
