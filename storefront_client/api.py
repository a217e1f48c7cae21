import logging
from typing import Any, Dict, List, Optional

import httpx

from shared.pricing import quantize_money
from storefront_client.cart import Cart, AppliedCoupon, Notice

logger = logging.getLogger(__name__)

# field -> (minimum length, message)
SHIPPING_RULES = {
    "shipping_address": (5, "Address must be at least 5 characters"),
    "shipping_city": (2, "City must be at least 2 characters"),
    "shipping_state": (2, "State must be at least 2 characters"),
    "shipping_zip": (5, "ZIP code must be at least 5 characters"),
}


class StorefrontError(Exception):
    pass


class StorefrontAPIError(StorefrontError):
    def __init__(self, status_code: int, message: str, details: Any = None):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.details = details

    @classmethod
    def from_response(cls, response: httpx.Response) -> "StorefrontAPIError":
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = None
        if isinstance(detail, str):
            return cls(response.status_code, detail)
        if detail:
            return cls(response.status_code, "Request validation failed", detail)
        return cls(response.status_code, response.reason_phrase or "Request failed")


class CheckoutValidationError(StorefrontError):
    """Raised before any request is sent; `errors` maps field name to message."""

    def __init__(self, errors: Dict[str, str]):
        super().__init__("; ".join(errors.values()))
        self.errors = errors


def validate_shipping(shipping: Dict[str, str]) -> Dict[str, str]:
    errors = {}
    for field, (min_length, message) in SHIPPING_RULES.items():
        value = (shipping.get(field) or "").strip()
        if len(value) < min_length:
            errors[field] = message
    return errors


class StorefrontClient:
    def __init__(self, base_url: str = "http://localhost:8000", http: Optional[httpx.Client] = None,
                 timeout: float = 10.0):
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.token: Optional[str] = None

    def close(self):
        self.http.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.http.request(method, path, headers=headers, **kwargs)
        except httpx.RequestError as e:
            # Nothing was applied; the caller may resubmit
            logger.error("Storefront request failed: %s %s: %s", method, path, e)
            raise StorefrontAPIError(503, "Storefront service unavailable") from e
        if response.status_code >= 400:
            raise StorefrontAPIError.from_response(response)
        return response.json().get("data")

    # --- Session ---

    def register(self, username: str, email: str, password: str, full_name: str) -> dict:
        data = self._request("POST", "/auth/register", json={
            "username": username, "email": email, "password": password, "full_name": full_name,
        })
        self.token = data["access_token"]
        return data["user"]

    def login(self, username: str, password: str) -> dict:
        data = self._request("POST", "/auth/login", json={"username": username, "password": password})
        self.token = data["access_token"]
        return data["user"]

    def logout(self):
        self._request("POST", "/auth/logout")
        self.token = None
        self.http.cookies.clear()

    def current_user(self) -> dict:
        return self._request("GET", "/auth/user")

    # --- Catalog ---

    def list_products(self, **filters) -> dict:
        params = {k: v for k, v in filters.items() if v is not None}
        return self._request("GET", "/products", params=params)

    def get_product(self, product_id: str) -> dict:
        return self._request("GET", f"/products/{product_id}")

    # --- Coupons ---

    def validate_coupon(self, code: str) -> AppliedCoupon:
        data = self._request("POST", "/coupons/validate", json={"code": code})
        return AppliedCoupon(
            id=data["id"],
            code=data["code"],
            discount_type=data["discount_type"],
            discount_value=data["discount_value"],
            minimum_purchase=data.get("minimum_purchase"),
        )

    def apply_coupon_code(self, cart: Cart, code: str) -> Notice:
        """Validate `code` with the service, then apply it to `cart` (minimum purchase checked locally)."""
        try:
            coupon = self.validate_coupon(code)
        except StorefrontAPIError as e:
            notice = Notice(
                title="Invalid Coupon",
                description=e.message if e.status_code < 500 else "The coupon code could not be validated",
                variant="destructive",
            )
            cart.notify(notice)
            return notice
        return cart.apply_coupon(coupon)

    # --- Orders ---

    def build_order(self, cart: Cart, shipping: Dict[str, str]) -> dict:
        return {
            **{field: shipping[field].strip() for field in SHIPPING_RULES},
            "total": str(quantize_money(cart.total)),
            "items": [
                {"product_id": item.product_id, "quantity": item.quantity, "price": item.unit_price}
                for item in cart.items
            ],
            "coupon_id": cart.applied_coupon.id if cart.applied_coupon else None,
            "coupon_discount": str(quantize_money(cart.discount)),
        }

    def place_order(self, cart: Cart, shipping: Dict[str, str]) -> dict:
        """
        Submit the cart as an order. The cart is cleared only after the
        service confirms the order; on any failure it is left as it was.
        """
        errors = validate_shipping(shipping)
        if not cart.items:
            errors["items"] = "Your cart is empty. Add items to checkout."
        if errors:
            raise CheckoutValidationError(errors)

        order = self._request("POST", "/orders", json=self.build_order(cart, shipping))
        cart.clear_cart()
        logger.info("Order %s placed", order["id"])
        return order

    def list_orders(self, page: int = 1, limit: int = 10) -> List[dict]:
        return self._request("GET", "/orders", params={"page": page, "limit": limit})

    def get_order(self, order_id: str) -> dict:
        return self._request("GET", f"/orders/{order_id}")
