"""
Order placement and order queries.

`place_order` reprices the submitted cart from live product prices and the
stored coupon, then writes the inventory decrements, the coupon redemption
and the order itself inside one transaction, or undoes the counter updates
by hand when transactions are disabled. Every counter update is a
conditional atomic update, so concurrent checkouts can neither oversell a
product nor redeem a coupon past its usage limit.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from shared.utils import AppException, NotFoundException, ConflictException, start_transaction, str_to_oid
from shared.pricing import (
    price_cart, check_coupon_usable, quantize_money,
    CouponNotApplicable, PricingError,
)

from app.models import OrderDB, OrderItemDB, to_document, from_document
from app.schemas import OrderCreate, CouponResponse

logger = logging.getLogger("storefront-service.checkout")


def coupon_from_document(doc: dict) -> CouponResponse:
    return CouponResponse(**from_document(doc))


async def resolve_coupon(db, coupon_id: str, now: Optional[datetime] = None) -> CouponResponse:
    doc = None
    if ObjectId.is_valid(coupon_id):
        doc = await db.coupons.find_one({"_id": ObjectId(coupon_id)})
    if not doc:
        raise AppException(detail="Invalid coupon code")
    coupon = coupon_from_document(doc)
    try:
        check_coupon_usable(coupon, now)
    except CouponNotApplicable as e:
        raise AppException(detail=str(e))
    return coupon


async def claim_coupon(db, coupon: CouponResponse, session=None):
    """Compare-and-increment: only succeeds while usage_count is under the limit."""
    query = {"_id": ObjectId(coupon.id)}
    if coupon.usage_limit is not None:
        query["usage_limit"] = coupon.usage_limit
        query["usage_count"] = {"$lt": coupon.usage_limit}
    result = await db.coupons.update_one(query, {"$inc": {"usage_count": 1}}, session=session)
    if result.matched_count == 0:
        logger.warning("Coupon usage limit reached", extra={"coupon_id": coupon.id, "coupon_code": coupon.code})
        raise AppException(detail="Coupon usage limit reached")


async def reserve_inventory(db, product: dict, quantity: int, session=None):
    updated = await db.products.find_one_and_update(
        {"_id": product["_id"], "inventory": {"$gte": quantity}},
        {"$inc": {"inventory": -quantity}},
        session=session,
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        logger.warning("Insufficient stock", extra={"product_id": str(product["_id"])})
        raise AppException(detail=f"Insufficient stock for {product['name']}")
    return updated


async def release_reservations(db, reserved: List[tuple], coupon: Optional[CouponResponse] = None):
    """Undo inventory decrements and a coupon claim made outside a transaction."""
    for product_oid, quantity in reserved:
        await db.products.update_one({"_id": product_oid}, {"$inc": {"inventory": quantity}})
    if coupon is not None:
        await db.coupons.update_one({"_id": ObjectId(coupon.id)}, {"$inc": {"usage_count": -1}})
    logger.warning(
        "Order writes released",
        extra={"coupon_id": coupon.id if coupon else None},
    )


async def place_order(db, client, user_id: str, order: OrderCreate) -> dict:
    # Repeated lines for the same product become one line
    quantities: Dict[str, int] = {}
    for item in order.items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity

    # Every product must resolve before anything is written
    products: Dict[str, dict] = {}
    for product_id, quantity in quantities.items():
        product = None
        if ObjectId.is_valid(product_id):
            product = await db.products.find_one({"_id": ObjectId(product_id), "is_active": True})
        if not product:
            logger.warning("Order rejected, product unavailable", extra={"user_id": user_id, "product_id": product_id})
            raise AppException(detail=f"Product {product_id} is no longer available")
        if not product.get("is_dropshipped") and product.get("inventory", 0) < quantity:
            raise AppException(detail=f"Insufficient stock for {product['name']}")
        products[product_id] = from_document(product)

    coupon = await resolve_coupon(db, order.coupon_id) if order.coupon_id else None

    try:
        breakdown = price_cart(
            [(products[pid]["price"], qty) for pid, qty in quantities.items()],
            coupon,
        )
        total = quantize_money(breakdown.total)
        discount = quantize_money(breakdown.discount)
        if order.total is not None and quantize_money(order.total) != total:
            raise ConflictException("Order total does not match current prices")
        if order.coupon_discount is not None and quantize_money(order.coupon_discount) != discount:
            raise ConflictException("Coupon discount does not match current prices")
    except CouponNotApplicable as e:
        raise AppException(detail=str(e))
    except PricingError as e:
        raise AppException(detail=str(e))

    order_items: List[OrderItemDB] = [
        OrderItemDB(
            product_id=pid,
            name=products[pid]["name"],
            quantity=qty,
            price=products[pid]["price"],
            is_dropshipped=products[pid].get("is_dropshipped", False),
            supplier_id=products[pid].get("supplier_id"),
        )
        for pid, qty in quantities.items()
    ]
    order_db = OrderDB(
        user_id=user_id,
        shipping_address=order.shipping_address,
        shipping_city=order.shipping_city,
        shipping_state=order.shipping_state,
        shipping_zip=order.shipping_zip,
        items=order_items,
        subtotal=quantize_money(breakdown.subtotal),
        total=total,
        coupon_id=coupon.id if coupon else None,
        coupon_discount=discount,
    )

    reserved: List[tuple] = []
    claimed = False
    async with start_transaction(client) as session:
        try:
            for pid, qty in quantities.items():
                if not products[pid].get("is_dropshipped"):
                    await reserve_inventory(db, products[pid], qty, session=session)
                    reserved.append((products[pid]["_id"], qty))
            if coupon:
                await claim_coupon(db, coupon, session=session)
                claimed = True
            result = await db.orders.insert_one(to_document(order_db), session=session)
        except Exception:
            # Without a transaction the counters are put back by hand
            if session is None:
                await release_reservations(db, reserved, coupon if claimed else None)
            raise

    created = await db.orders.find_one({"_id": result.inserted_id})
    logger.info(
        "Order placed",
        extra={"order_id": str(result.inserted_id), "user_id": user_id, "total": str(total), "coupon_id": order_db.coupon_id},
    )
    return from_document(created)


async def list_orders(db, user_id: str, page: int = 1, limit: int = 10) -> List[dict]:
    skip = (page - 1) * limit
    cursor = db.orders.find({"user_id": user_id}).sort("created_at", -1).skip(skip).limit(limit)
    return [from_document(doc) async for doc in cursor]


async def get_order(db, user_id: str, order_id: str) -> dict:
    # Another user's order is reported exactly like a missing one
    order = await db.orders.find_one({"_id": str_to_oid(order_id), "user_id": user_id})
    if not order:
        raise NotFoundException("Order not found")
    return from_document(order)


async def update_order_status(db, order_id: str, status: str) -> dict:
    updated = await db.orders.find_one_and_update(
        {"_id": str_to_oid(order_id)},
        {"$set": {"status": status, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundException("Order not found")
    logger.info("Order status updated", extra={"order_id": order_id})
    return from_document(updated)


async def update_order_item_status(db, order_id: str, product_id: str, status: str) -> dict:
    updated = await db.orders.find_one_and_update(
        {"_id": str_to_oid(order_id), "items.product_id": product_id},
        {"$set": {"items.$.status": status, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundException("Order item not found")
    return from_document(updated)


async def list_supplier_order_items(db, supplier_id: str) -> List[dict]:
    """Dropshipped lines routed to `supplier_id`, newest order first."""
    cursor = db.orders.find(
        {"items": {"$elemMatch": {"supplier_id": supplier_id, "is_dropshipped": True}}}
    ).sort("created_at", -1)
    items = []
    async for doc in cursor:
        order = from_document(doc)
        for item in order["items"]:
            if item.get("supplier_id") == supplier_id and item.get("is_dropshipped"):
                items.append({
                    **item,
                    "order_id": order["id"],
                    "order_status": order["status"],
                    "created_at": order["created_at"],
                })
    return items
