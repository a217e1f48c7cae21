"""
Shopping cart state.

The cart owns its line items and at most one applied coupon. It is loaded
once from storage (`Cart.load`) and written back after every mutation, so
the stored copy never lags behind what was last shown. Totals are not
stored; they are derived from the items on every read.
"""
import json
import logging
from decimal import Decimal
from typing import Callable, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from shared.pricing import (
    PricingError, CouponNotApplicable, calculate_subtotal, calculate_discount,
    check_minimum_purchase, to_decimal, format_money, ZERO,
)

logger = logging.getLogger(__name__)

CART_KEY = "cart"
COUPON_KEY = "coupon"


class CartLineItem(BaseModel):
    product_id: str
    name: str
    unit_price: str # decimal string, as priced by the catalog
    image: Optional[str] = None
    quantity: int = Field(1, ge=1)

    @field_validator('unit_price', mode='before')
    def check_price(cls, v):
        try:
            to_decimal(v)
        except PricingError as e:
            raise ValueError(str(e))
        return str(v)


class AppliedCoupon(BaseModel):
    id: str
    code: str
    discount_type: str = Field(..., pattern="^(percentage|fixed)$")
    discount_value: str
    minimum_purchase: Optional[str] = None

    @field_validator('discount_value', 'minimum_purchase', mode='before')
    def check_amount(cls, v):
        if v is None:
            return v
        try:
            to_decimal(v)
        except PricingError as e:
            raise ValueError(str(e))
        return str(v)


class Notice(BaseModel):
    title: str
    description: str
    variant: str = "default" # default, destructive


def log_notice(notice: Notice):
    level = logging.WARNING if notice.variant == "destructive" else logging.INFO
    logger.log(level, "%s: %s", notice.title, notice.description)


class Cart:
    def __init__(self, storage, items: Optional[List[CartLineItem]] = None,
                 coupon: Optional[AppliedCoupon] = None,
                 notify: Optional[Callable[[Notice], None]] = None):
        self.storage = storage
        self.items: List[CartLineItem] = list(items or [])
        self.applied_coupon: Optional[AppliedCoupon] = coupon
        self.notify = notify or log_notice

    @classmethod
    def load(cls, storage, notify: Optional[Callable[[Notice], None]] = None) -> "Cart":
        """Restore a cart from storage. Corrupt data yields an empty cart, never an error."""
        items: List[CartLineItem] = []
        raw_items = storage.get_item(CART_KEY)
        if raw_items:
            try:
                items = [CartLineItem(**item) for item in json.loads(raw_items)]
            except (ValueError, TypeError, ValidationError) as e:
                logger.warning("Failed to parse stored cart, starting empty: %s", e)
                items = []

        coupon = None
        raw_coupon = storage.get_item(COUPON_KEY)
        if raw_coupon:
            try:
                coupon = AppliedCoupon(**json.loads(raw_coupon))
            except (ValueError, TypeError, ValidationError) as e:
                logger.warning("Failed to parse stored coupon, dropping it: %s", e)
                coupon = None

        cart = cls(storage, items, coupon, notify)
        # The stored items may not match what the coupon was applied to
        if cart._drop_unmet_coupon():
            cart.save()
        return cart

    # --- Derived values ---

    @property
    def subtotal(self) -> Decimal:
        return calculate_subtotal((item.unit_price, item.quantity) for item in self.items)

    @property
    def discount(self) -> Decimal:
        if self.applied_coupon is None:
            return ZERO
        return calculate_discount(
            self.subtotal, self.applied_coupon.discount_type, self.applied_coupon.discount_value
        )

    @property
    def total(self) -> Decimal:
        return max(self.subtotal - self.discount, ZERO)

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    def find(self, product_id: str) -> Optional[CartLineItem]:
        return next((item for item in self.items if item.product_id == product_id), None)

    # --- Mutations ---

    def add_item(self, item: CartLineItem) -> Notice:
        existing = self.find(item.product_id)
        if existing:
            existing.quantity += item.quantity
            notice = Notice(
                title="Cart updated",
                description=f"{item.name} quantity increased to {existing.quantity}",
            )
        else:
            self.items.append(item.copy())
            notice = Notice(title="Item added to cart", description=f"{item.name} has been added to your cart")
        self._changed()
        return self._emit(notice)

    def update_quantity(self, product_id: str, quantity: int) -> Optional[Notice]:
        if quantity <= 0:
            return self.remove_item(product_id)
        item = self.find(product_id)
        if item is None:
            return None
        item.quantity = quantity
        self._changed()
        return None

    def remove_item(self, product_id: str) -> Optional[Notice]:
        item = self.find(product_id)
        if item is None:
            return None
        self.items.remove(item)
        self._changed()
        return self._emit(Notice(title="Item removed", description=f"{item.name} has been removed from your cart"))

    def clear_cart(self):
        self.items = []
        self.applied_coupon = None
        self.save()

    def apply_coupon(self, coupon: AppliedCoupon) -> Notice:
        if self.applied_coupon is not None and self.applied_coupon.code == coupon.code:
            return self._emit(Notice(title="Coupon applied", description=f"{coupon.code} is already applied to your cart"))
        try:
            check_minimum_purchase(self.subtotal, coupon.minimum_purchase)
        except CouponNotApplicable as e:
            return self._emit(Notice(title="Coupon cannot be applied", description=str(e), variant="destructive"))

        # A new coupon replaces the previous one
        self.applied_coupon = coupon
        self.save()
        return self._emit(Notice(title="Coupon applied", description=f"{coupon.code} has been applied to your cart"))

    def remove_coupon(self) -> Notice:
        self.applied_coupon = None
        self.save()
        return self._emit(Notice(title="Coupon removed", description="The coupon has been removed from your cart"))

    # --- Persistence ---

    def save(self):
        self.storage.set_item(CART_KEY, json.dumps([item.dict() for item in self.items]))
        if self.applied_coupon is not None:
            self.storage.set_item(COUPON_KEY, json.dumps(self.applied_coupon.dict()))
        else:
            self.storage.remove_item(COUPON_KEY)

    def _changed(self):
        # The subtotal moved: a coupon whose minimum is no longer met is dropped
        self._drop_unmet_coupon()
        self.save()

    def _drop_unmet_coupon(self) -> bool:
        coupon = self.applied_coupon
        if coupon is None:
            return False
        try:
            check_minimum_purchase(self.subtotal, coupon.minimum_purchase)
        except CouponNotApplicable:
            self.applied_coupon = None
            self._emit(Notice(
                title="Coupon removed",
                description=f"{coupon.code} requires a minimum purchase of {format_money(coupon.minimum_purchase)}",
                variant="destructive",
            ))
            return True
        return False

    def _emit(self, notice: Notice) -> Notice:
        self.notify(notice)
        return notice
