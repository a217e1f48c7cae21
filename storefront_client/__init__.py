from storefront_client.storage import LocalStorage
from storefront_client.cart import Cart, CartLineItem, AppliedCoupon, Notice
from storefront_client.api import (
    StorefrontClient, StorefrontError, StorefrontAPIError, CheckoutValidationError,
)

__all__ = [
    "LocalStorage",
    "Cart",
    "CartLineItem",
    "AppliedCoupon",
    "Notice",
    "StorefrontClient",
    "StorefrontError",
    "StorefrontAPIError",
    "CheckoutValidationError",
]
