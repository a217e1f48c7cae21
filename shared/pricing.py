"""
Cart pricing and coupon rules.

Shared by the storefront service (authoritative recompute at checkout) and
the client cart (display). Everything here is pure: amounts are Decimals,
accumulated without rounding; `quantize_money` is applied only where an
amount is shown or persisted.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple, Any

PERCENTAGE = "percentage"
FIXED = "fixed"
DISCOUNT_TYPES = (PERCENTAGE, FIXED)

CENT = Decimal("0.01")
ZERO = Decimal("0")


class PricingError(ValueError):
    """Raised for amounts or quantities that cannot be priced."""


class CouponNotApplicable(ValueError):
    """Raised when a coupon's admissibility rules reject the current cart."""


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    discount: Decimal
    total: Decimal


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise PricingError(f"Invalid amount: {value!r}")
    try:
        # str() first so floats keep their printed value, not their binary one
        amount = Decimal(str(value).strip())
    except (InvalidOperation, TypeError):
        raise PricingError(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise PricingError(f"Invalid amount: {value!r}")
    return amount


def quantize_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Any) -> str:
    return f"${quantize_money(value)}"


def calculate_subtotal(lines: Iterable[Tuple[Any, int]]) -> Decimal:
    subtotal = ZERO
    for unit_price, quantity in lines:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise PricingError(f"Invalid quantity: {quantity!r}")
        subtotal += to_decimal(unit_price) * quantity
    return subtotal


def calculate_discount(subtotal: Decimal, discount_type: str, discount_value: Any) -> Decimal:
    value = to_decimal(discount_value)
    if discount_type == PERCENTAGE:
        return subtotal * value / 100
    if discount_type == FIXED:
        # Flat amount, may exceed the subtotal; the total floors at zero
        return value
    raise PricingError(f"Unknown discount type: {discount_type!r}")


def check_minimum_purchase(subtotal: Decimal, minimum_purchase: Optional[Any]) -> None:
    if minimum_purchase is None or minimum_purchase == "":
        return
    minimum = to_decimal(minimum_purchase)
    if minimum > subtotal:
        raise CouponNotApplicable(
            f"A minimum purchase of {format_money(minimum)} is required for this coupon"
        )


def check_coupon_usable(coupon: Any, now: Optional[datetime] = None) -> None:
    """
    Activity, time window and usage limit. Minimum purchase is checked
    separately since it depends on the cart.
    """
    now = now or datetime.utcnow()
    if not getattr(coupon, "is_active", True):
        raise CouponNotApplicable("The coupon code you entered is invalid or expired")
    starts_at = getattr(coupon, "starts_at", None)
    expires_at = getattr(coupon, "expires_at", None)
    if (starts_at and starts_at > now) or (expires_at and expires_at < now):
        raise CouponNotApplicable("The coupon code you entered is invalid or expired")
    usage_limit = getattr(coupon, "usage_limit", None)
    if usage_limit is not None and getattr(coupon, "usage_count", 0) >= usage_limit:
        raise CouponNotApplicable("Coupon usage limit reached")


def price_cart(lines: Iterable[Tuple[Any, int]], coupon: Any = None) -> PriceBreakdown:
    """
    Subtotal, discount and total for `lines` of (unit_price, quantity).

    `coupon` is anything with `discount_type`, `discount_value` and
    `minimum_purchase` attributes. Raises CouponNotApplicable when the
    minimum purchase is not met.
    """
    subtotal = calculate_subtotal(lines)
    discount = ZERO
    if coupon is not None:
        check_minimum_purchase(subtotal, coupon.minimum_purchase)
        discount = calculate_discount(subtotal, coupon.discount_type, coupon.discount_value)
    total = max(subtotal - discount, ZERO)
    return PriceBreakdown(subtotal=subtotal, discount=discount, total=total)
