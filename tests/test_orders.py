"""Tests for order placement, inventory, coupon redemption and fulfilment."""

from decimal import Decimal

import pytest
from bson import ObjectId

from conftest import register, auth, shipping
from app import checkout
from app.schemas import CouponResponse, OrderCreate
from shared.utils import AppException


def place(api, headers, items, **extra):
    payload = {**shipping(), "items": items, **extra}
    return api.post("/orders", headers=headers, json=payload)


def line(product, quantity=1):
    return {"product_id": product["id"], "quantity": quantity}


def inventory(api, product):
    return api.get(f"/products/{product['id']}").json()["data"]["inventory"]


class TestPlaceOrder:
    def test_decrements_inventory(self, api, catalog, customer_headers):
        response = place(api, customer_headers, [line(catalog["widget"], 2)])
        assert response.status_code == 200, response.text
        order = response.json()["data"]
        assert order["status"] == "pending"
        assert Decimal(order["subtotal"]) == Decimal("20")
        assert Decimal(order["total"]) == Decimal("20")
        assert inventory(api, catalog["widget"]) == 3

    def test_repeated_lines_are_merged(self, api, catalog, customer_headers):
        order = place(api, customer_headers, [line(catalog["widget"], 1), line(catalog["widget"], 2)]).json()["data"]
        assert [(i["name"], i["quantity"]) for i in order["items"]] == [("Widget", 3)]
        assert inventory(api, catalog["widget"]) == 2

    def test_price_snapshot_survives_price_change(self, api, catalog, customer_headers, admin_headers):
        order = place(api, customer_headers, [line(catalog["widget"], 1)]).json()["data"]
        api.put(f"/products/{catalog['widget']['id']}", headers=admin_headers, json={"price": "12.00"})

        stored = api.get(f"/orders/{order['id']}", headers=customer_headers).json()["data"]
        assert Decimal(stored["items"][0]["price"]) == Decimal("10")
        assert Decimal(stored["total"]) == Decimal("10")

    def test_submitted_total_must_match(self, api, catalog, customer_headers):
        response = place(api, customer_headers, [line(catalog["widget"], 2)], total="1.00")
        assert response.status_code == 409
        assert inventory(api, catalog["widget"]) == 5

        accepted = place(api, customer_headers, [line(catalog["widget"], 2)], total="20.00")
        assert accepted.status_code == 200

    def test_submitted_discount_must_match(self, api, catalog, customer_headers, make_coupon):
        coupon = make_coupon("SAVE10")
        response = place(api, customer_headers, [line(catalog["widget"], 2)], coupon_id=coupon["id"], coupon_discount="5.00")
        assert response.status_code == 409
        assert response.json()["detail"] == "Coupon discount does not match current prices"
        assert inventory(api, catalog["widget"]) == 5

    def test_requires_authentication(self, api, catalog):
        api.cookies.clear()
        response = place(api, {}, [line(catalog["widget"], 1)])
        assert response.status_code == 401

    def test_invalid_shipping(self, api, catalog, customer_headers):
        payload = {**shipping(), "shipping_zip": "123", "items": [line(catalog["widget"])]}
        assert api.post("/orders", headers=customer_headers, json=payload).status_code == 422

    @pytest.mark.parametrize("field,value", [
        ("shipping_address", "    A"),
        ("shipping_zip", "  1  "),
        ("shipping_city", " X "),
    ])
    def test_padded_shipping_is_measured_stripped(self, api, db, run, catalog, customer_headers, field, value):
        payload = {**shipping(), field: value, "items": [line(catalog["widget"])]}
        assert api.post("/orders", headers=customer_headers, json=payload).status_code == 422
        assert run(db.orders.count_documents({})) == 0

    def test_shipping_is_stored_stripped(self, api, catalog, customer_headers):
        payload = {**shipping(), "shipping_city": "  Springfield ", "items": [line(catalog["widget"])]}
        order = api.post("/orders", headers=customer_headers, json=payload).json()["data"]
        assert order["shipping_city"] == "Springfield"

    def test_empty_order(self, api, catalog, customer_headers):
        assert place(api, customer_headers, []).status_code == 422


class TestAbortedOrders:
    def test_missing_product_writes_nothing(self, api, db, run, catalog, customer_headers):
        missing = {"product_id": str(ObjectId()), "quantity": 1}
        response = place(api, customer_headers, [line(catalog["widget"], 2), missing])
        assert response.status_code == 400
        assert "no longer available" in response.json()["detail"]
        assert run(db.orders.count_documents({})) == 0
        assert inventory(api, catalog["widget"]) == 5

    def test_inactive_product_is_unavailable(self, api, catalog, customer_headers, admin_headers):
        api.put(f"/products/{catalog['widget']['id']}", headers=admin_headers, json={"is_active": False})
        response = place(api, customer_headers, [line(catalog["widget"], 1)])
        assert response.status_code == 400

    def test_insufficient_stock(self, api, db, run, catalog, customer_headers):
        response = place(api, customer_headers, [line(catalog["widget"], 6)])
        assert response.status_code == 400
        assert response.json()["detail"] == "Insufficient stock for Widget"
        assert run(db.orders.count_documents({})) == 0
        assert inventory(api, catalog["widget"]) == 5

    def test_lost_coupon_claim_restores_inventory(self, api, db, run, monkeypatch, catalog, customer_headers, make_coupon):
        coupon = make_coupon("LIMITED", usage_limit=1)

        async def exhausted(db, coupon, session=None):
            raise AppException(detail="Coupon usage limit reached")

        monkeypatch.setattr(checkout, "claim_coupon", exhausted)
        response = place(api, customer_headers, [line(catalog["widget"], 2)], coupon_id=coupon["id"])
        assert response.status_code == 400
        assert run(db.orders.count_documents({})) == 0
        assert inventory(api, catalog["widget"]) == 5
        assert run(db.coupons.find_one({"code": "LIMITED"}))["usage_count"] == 0

    def test_failed_insert_releases_stock_and_coupon(self, db, mongo_client, run, monkeypatch, catalog, customer, make_coupon):
        coupon = make_coupon("LIMITED", usage_limit=5)

        def broken(model):
            raise RuntimeError("write failed")

        monkeypatch.setattr(checkout, "to_document", broken)
        order = OrderCreate(**shipping(), items=[line(catalog["widget"], 2)], coupon_id=coupon["id"])
        with pytest.raises(RuntimeError):
            run(checkout.place_order(db, mongo_client, customer["user"]["id"], order))

        widget = run(db.products.find_one({"_id": ObjectId(catalog["widget"]["id"])}))
        assert widget["inventory"] == 5
        assert run(db.coupons.find_one({"code": "LIMITED"}))["usage_count"] == 0
        assert run(db.orders.count_documents({})) == 0

    def test_reserve_inventory_is_conditional(self, db, run, catalog):
        product = run(db.products.find_one({"_id": ObjectId(catalog["widget"]["id"])}))
        run(checkout.reserve_inventory(db, product, 5))
        with pytest.raises(AppException):
            run(checkout.reserve_inventory(db, product, 1))
        assert run(db.products.find_one({"_id": product["_id"]}))["inventory"] == 0


class TestCouponRedemption:
    def test_percentage_coupon(self, api, db, run, catalog, customer_headers, make_coupon):
        coupon = make_coupon("SAVE10")
        response = place(api, customer_headers, [line(catalog["widget"], 2)], coupon_id=coupon["id"], total="18.00")
        assert response.status_code == 200, response.text
        order = response.json()["data"]
        assert Decimal(order["coupon_discount"]) == Decimal("2")
        assert Decimal(order["total"]) == Decimal("18")
        assert order["coupon_id"] == coupon["id"]
        assert run(db.coupons.find_one({"code": "SAVE10"}))["usage_count"] == 1

    def test_minimum_purchase_not_met(self, api, db, run, catalog, customer_headers, make_coupon):
        coupon = make_coupon("BIG", minimum_purchase="25.00")
        response = place(api, customer_headers, [line(catalog["widget"], 2)], coupon_id=coupon["id"])
        assert response.status_code == 400
        assert "$25.00" in response.json()["detail"]
        assert run(db.coupons.find_one({"code": "BIG"}))["usage_count"] == 0
        assert inventory(api, catalog["widget"]) == 5

    def test_unknown_coupon(self, api, catalog, customer_headers):
        response = place(api, customer_headers, [line(catalog["widget"])], coupon_id=str(ObjectId()))
        assert response.status_code == 400

    def test_last_redemption_then_limit(self, api, db, run, catalog, customer_headers, make_coupon):
        coupon = make_coupon("LIMITED", usage_limit=10)
        run(db.coupons.update_one({"code": "LIMITED"}, {"$set": {"usage_count": 9}}))

        first = place(api, customer_headers, [line(catalog["widget"], 1)], coupon_id=coupon["id"])
        assert first.status_code == 200, first.text
        assert run(db.coupons.find_one({"code": "LIMITED"}))["usage_count"] == 10

        second = place(api, customer_headers, [line(catalog["widget"], 1)], coupon_id=coupon["id"])
        assert second.status_code == 400
        assert second.json()["detail"] == "Coupon usage limit reached"
        assert run(db.coupons.find_one({"code": "LIMITED"}))["usage_count"] == 10
        assert inventory(api, catalog["widget"]) == 4

    def test_claim_with_stale_view_fails(self, db, run, make_coupon):
        stale = CouponResponse(**make_coupon("LIMITED", usage_limit=1))
        run(db.coupons.update_one({"code": "LIMITED"}, {"$set": {"usage_count": 1}}))
        with pytest.raises(AppException) as excinfo:
            run(checkout.claim_coupon(db, stale))
        assert excinfo.value.detail == "Coupon usage limit reached"
        assert run(db.coupons.find_one({"code": "LIMITED"}))["usage_count"] == 1

    def test_unlimited_coupon_always_claims(self, db, run, make_coupon):
        coupon = CouponResponse(**make_coupon("FOREVER"))
        for _ in range(3):
            run(checkout.claim_coupon(db, coupon))
        assert run(db.coupons.find_one({"code": "FOREVER"}))["usage_count"] == 3


class TestOrderAccess:
    def test_list_own_orders(self, api, catalog, customer_headers):
        place(api, customer_headers, [line(catalog["widget"], 1)])
        place(api, customer_headers, [line(catalog["gadget"], 1)])
        orders = api.get("/orders", headers=customer_headers).json()["data"]
        assert len(orders) == 2

        other = auth(register(api, "bob")["access_token"])
        assert api.get("/orders", headers=other).json()["data"] == []

    def test_other_users_order_is_not_found(self, api, catalog, customer_headers):
        order = place(api, customer_headers, [line(catalog["widget"], 1)]).json()["data"]
        other = auth(register(api, "bob")["access_token"])
        assert api.get(f"/orders/{order['id']}", headers=other).status_code == 404
        assert api.get("/orders/not-an-id", headers=customer_headers).status_code == 404


class TestFulfilment:
    def test_dropshipped_items_skip_inventory(self, api, catalog, customer_headers):
        response = place(api, customer_headers, [line(catalog["gadget"], 3)])
        assert response.status_code == 200, response.text
        [item] = response.json()["data"]["items"]
        assert item["is_dropshipped"] is True
        assert item["supplier_id"] == catalog["supplier"]["id"]
        assert inventory(api, catalog["gadget"]) == 0

    def test_supplier_order_items(self, api, catalog, customer_headers, admin_headers):
        order = place(api, customer_headers, [line(catalog["widget"], 1), line(catalog["gadget"], 2)]).json()["data"]
        supplier_id = catalog["supplier"]["id"]

        items = api.get(f"/suppliers/{supplier_id}/order-items", headers=admin_headers).json()["data"]
        assert [(i["name"], i["quantity"], i["order_id"]) for i in items] == [("Gadget", 2, order["id"])]

        assert api.get(f"/suppliers/{supplier_id}/order-items", headers=customer_headers).status_code == 404

    def test_update_item_status(self, api, catalog, customer_headers, admin_headers):
        order = place(api, customer_headers, [line(catalog["widget"], 1), line(catalog["gadget"], 1)]).json()["data"]
        gadget_id = catalog["gadget"]["id"]

        response = api.put(f"/orders/{order['id']}/items/{gadget_id}/status", headers=admin_headers, json={"status": "ordered"})
        assert response.status_code == 200
        statuses = {i["name"]: i["status"] for i in response.json()["data"]["items"]}
        assert statuses == {"Widget": "pending", "Gadget": "ordered"}

        missing = api.put(f"/orders/{order['id']}/items/{ObjectId()}/status", headers=admin_headers, json={"status": "ordered"})
        assert missing.status_code == 404

    def test_update_order_status(self, api, catalog, customer_headers, admin_headers):
        order = place(api, customer_headers, [line(catalog["widget"], 1)]).json()["data"]
        url = f"/orders/{order['id']}/status"

        assert api.put(url, headers=customer_headers, json={"status": "shipped"}).status_code == 404
        assert api.put(url, headers=admin_headers, json={"status": "lost"}).status_code == 422

        response = api.put(url, headers=admin_headers, json={"status": "shipped"})
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "shipped"
