"""Tests for order creation, stock settlement and admin order handling."""

import base64
import json
from decimal import Decimal

import pytest
from bson import ObjectId

import orders
from coupons import claim_coupon
from errors import InsufficientStock
from inventory import reserve_stock


def _fill_cart(client, headers, product_id, quantity):
    response = client.post("/api/user/cart", json={"product_id": product_id, "quantity": quantity}, headers=headers)
    assert response.status_code == 200


def _product(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})


class TestCashOnDelivery:
    def test_discount_and_delivery_totals(self, client, db, user, auth, make_product, make_coupon, shipping):
        pid = make_product(price=500.0, quantity=10, sold=3)
        coupon_id = make_coupon(name="SAVE10", discount=10)
        _fill_cart(client, auth(user), pid, 2)

        response = client.post(
            "/api/user/cart/create-order",
            json={"cod": True, "coupon_applied": True, "coupon_code": "save10", "shipping_info": shipping},
            headers=auth(user),
        )
        assert response.status_code == 201
        order = response.json()["order"]
        assert order["total_after_discount"] == 900.0
        assert order["delivery_charge"] == 150.0
        assert order["total_with_delivery"] == 1050.0
        assert order["order_status"] == "Processing"
        assert order["payment_intent"]["status"] == "Cash on Delivery"
        assert order["payment_intent"]["method"] == "COD"
        assert order["payment_intent"]["amount"] == 1050.0
        assert order["coupon_id"] == coupon_id

        product = _product(db, pid)
        assert product["quantity"] == 8
        assert product["sold"] == 5
        assert db["cart"].count_documents({"user_id": str(user["_id"])}) == 0
        assert db["coupon"].count_documents({}) == 0

    def test_without_coupon(self, client, db, user, auth, make_product, shipping):
        a = make_product(title="Tee", price=19.99, quantity=5)
        b = make_product(title="Hat", price=5.25, quantity=5)
        _fill_cart(client, auth(user), a, 3)
        _fill_cart(client, auth(user), b, 1)

        response = client.post(
            "/api/user/cart/create-order", json={"cod": True, "shipping_info": shipping}, headers=auth(user)
        )
        order = response.json()["order"]
        line_sum = sum(Decimal(str(l["price"])) * l["count"] for l in order["products"])
        assert line_sum == Decimal("65.22")
        assert Decimal(str(order["total_after_discount"])) == line_sum
        assert Decimal(str(order["total_with_delivery"])) == line_sum + Decimal("150")

    def test_invalid_coupon_is_ignored(self, client, db, user, auth, make_product, make_coupon, shipping):
        pid = make_product(price=100.0)
        make_coupon(name="OLD", days=-2)
        _fill_cart(client, auth(user), pid, 1)
        response = client.post(
            "/api/user/cart/create-order",
            json={"cod": True, "coupon_applied": True, "coupon_code": "OLD", "shipping_info": shipping},
            headers=auth(user),
        )
        order = response.json()["order"]
        assert order["total_after_discount"] == 100.0
        assert order["coupon_id"] is None
        assert db["coupon"].count_documents({}) == 1

    def test_missing_shipping_field(self, client, db, user, auth, make_product, shipping):
        pid = make_product()
        _fill_cart(client, auth(user), pid, 1)
        del shipping["city"]
        response = client.post(
            "/api/user/cart/create-order", json={"cod": True, "shipping_info": shipping}, headers=auth(user)
        )
        assert response.status_code == 400
        assert "city" in response.json()["message"]
        assert db["order"].count_documents({}) == 0

    def test_empty_cart(self, client, user, auth, shipping):
        response = client.post(
            "/api/user/cart/create-order", json={"cod": True, "shipping_info": shipping}, headers=auth(user)
        )
        assert response.status_code == 400
        assert response.json()["error_type"] == "EmptyCart"

    def test_no_payment_method(self, client, user, auth, make_product, shipping):
        pid = make_product()
        _fill_cart(client, auth(user), pid, 1)
        response = client.post("/api/user/cart/create-order", json={"shipping_info": shipping}, headers=auth(user))
        assert response.status_code == 400

    def test_stock_checked_before_anything_is_written(self, client, db, user, auth, make_product, shipping):
        pid = make_product(title="Scarce", quantity=5)
        _fill_cart(client, auth(user), pid, 4)
        db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"quantity": 2}})

        response = client.post(
            "/api/user/cart/create-order", json={"cod": True, "shipping_info": shipping}, headers=auth(user)
        )
        assert response.status_code == 400
        assert "Scarce" in response.json()["message"]
        assert db["order"].count_documents({}) == 0
        assert _product(db, pid)["quantity"] == 2
        assert db["cart"].count_documents({}) == 1

    def test_last_unit_goes_to_one_buyer(self, client, db, user, other_user, auth, make_product, shipping):
        pid = make_product(title="Last One", quantity=1)
        _fill_cart(client, auth(user), pid, 1)
        _fill_cart(client, auth(other_user), pid, 1)

        first = client.post(
            "/api/user/cart/create-order", json={"cod": True, "shipping_info": shipping}, headers=auth(user)
        )
        second = client.post(
            "/api/user/cart/create-order", json={"cod": True, "shipping_info": shipping}, headers=auth(other_user)
        )
        assert first.status_code == 201
        assert second.status_code == 400
        assert second.json()["error_type"] == "InsufficientStock"
        assert _product(db, pid)["quantity"] == 0
        assert db["order"].count_documents({}) == 1


class TestStockReservation:
    def test_decrement_never_goes_negative(self, db, make_product):
        pid = make_product(quantity=1)
        reserve_stock(db, [{"product_id": pid, "count": 1}])
        # a second checkout that passed its read-time check before the first one landed
        with pytest.raises(InsufficientStock):
            reserve_stock(db, [{"product_id": pid, "count": 1}])
        product = _product(db, pid)
        assert product["quantity"] == 0
        assert product["sold"] == 1

    def test_failed_line_rolls_back_earlier_lines(self, db, make_product):
        plenty = make_product(title="Plenty", quantity=10)
        scarce = make_product(title="Scarce", quantity=1)
        with pytest.raises(InsufficientStock):
            reserve_stock(db, [{"product_id": plenty, "count": 4}, {"product_id": scarce, "count": 2}])
        assert _product(db, plenty)["quantity"] == 10
        assert _product(db, plenty)["sold"] == 0
        assert _product(db, scarce)["quantity"] == 1


class TestGatewayOrder:
    def test_pending_order_has_no_side_effects(self, client, db, user, auth, make_product, make_coupon,
                                               shipping, gateway):
        pid = make_product(price=500.0, quantity=10)
        make_coupon(name="SAVE10", discount=10)
        _fill_cart(client, auth(user), pid, 2)

        response = client.post(
            "/api/user/cart/create-order",
            json={"payment_method": "eSewa", "coupon_applied": True, "coupon_code": "SAVE10",
                  "shipping_info": shipping},
            headers=auth(user),
        )
        assert response.status_code == 201
        data = response.json()
        assert data["transaction_id"].startswith("ESW-")
        assert data["payment_url"].endswith("/api/epay/main/v2/form")

        form = data["form_data"]
        assert form["amount"] == "900.00"
        assert form["product_delivery_charge"] == "150.00"
        assert form["total_amount"] == "1050.00"
        assert form["transaction_uuid"] == data["transaction_id"]
        assert form["signed_field_names"] == "total_amount,transaction_uuid,product_code"
        expected = gateway.sign(
            f"total_amount=1050.00,transaction_uuid={data['transaction_id']},product_code=EPAYTEST"
        )
        assert form["signature"] == expected

        order = db["order"].find_one({"_id": ObjectId(data["order_id"])})
        assert order["order_status"] == "Pending"
        assert order["payment_intent"]["status"] == "Pending"
        assert order["payment_intent"]["method"] == "eSewa"
        assert _product(db, pid)["quantity"] == 10
        assert db["cart"].count_documents({}) == 1
        assert db["coupon"].count_documents({}) == 1


class TestOneCheckoutPerCart:
    def _esewa(self, client, headers, shipping, coupon_code=None):
        body = {"payment_method": "eSewa", "shipping_info": shipping}
        if coupon_code:
            body.update({"coupon_applied": True, "coupon_code": coupon_code})
        return client.post("/api/user/cart/create-order", json=body, headers=headers)

    def test_cod_after_pending_gateway_order_pays_once(self, client, db, user, auth, make_product, make_coupon,
                                                       shipping, sign_callback):
        pid = make_product(price=500.0, quantity=10)
        make_coupon(name="SAVE10", discount=10)
        _fill_cart(client, auth(user), pid, 2)
        gateway_order = self._esewa(client, auth(user), shipping, "SAVE10").json()

        cod = client.post(
            "/api/user/cart/create-order",
            json={"cod": True, "coupon_applied": True, "coupon_code": "SAVE10", "shipping_info": shipping},
            headers=auth(user),
        )
        assert cod.status_code == 201
        assert cod.json()["order"]["total_after_discount"] == 900.0

        data = base64.b64encode(json.dumps(sign_callback(gateway_order["transaction_id"], "1050.00")).encode())
        client.get("/api/esewa/payment-success", params={"data": data.decode()}, follow_redirects=False)

        first = db["order"].find_one({"_id": ObjectId(gateway_order["order_id"])})
        assert first["order_status"] == "Cancelled"
        assert first["needs_reconciliation"] is True
        assert db["order"].count_documents({"order_status": "Processing"}) == 1
        assert _product(db, pid)["quantity"] == 8
        assert db["coupon"].count_documents({}) == 0

    def test_new_gateway_checkout_replaces_pending_one(self, client, db, user, auth, make_product, shipping):
        pid = make_product()
        _fill_cart(client, auth(user), pid, 1)
        first = self._esewa(client, auth(user), shipping).json()
        second = self._esewa(client, auth(user), shipping).json()

        assert db["order"].find_one({"_id": ObjectId(first["order_id"])})["order_status"] == "Cancelled"
        assert db["order"].find_one({"_id": ObjectId(second["order_id"])})["order_status"] == "Pending"

    def test_claimed_coupon_returned_when_stock_runs_out(self, client, db, user, auth, make_product,
                                                         make_coupon, shipping, monkeypatch):
        pid = make_product(price=100.0, quantity=3)
        make_coupon(name="SAVE10", discount=10)
        _fill_cart(client, auth(user), pid, 2)
        # another buyer takes the stock between the read-time check and the reservation
        monkeypatch.setattr(orders, "check_stock", lambda db, lines: None)
        db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"quantity": 1}})

        response = client.post(
            "/api/user/cart/create-order",
            json={"cod": True, "coupon_applied": True, "coupon_code": "SAVE10", "shipping_info": shipping},
            headers=auth(user),
        )
        assert response.status_code == 400
        assert response.json()["error_type"] == "InsufficientStock"
        assert db["coupon"].count_documents({"name": "SAVE10"}) == 1
        assert db["order"].count_documents({}) == 0

    def test_coupon_claimed_only_once(self, db, user, make_coupon):
        make_coupon(name="ONCE", discount=15)
        uid = str(user["_id"])
        assert claim_coupon(db, "once", uid)["discount"] == 15
        assert claim_coupon(db, "ONCE", uid) is None

    def test_owned_coupon_not_claimable_by_others(self, db, user, other_user, make_coupon):
        make_coupon(name="VIP", user_id=str(user["_id"]))
        assert claim_coupon(db, "VIP", str(other_user["_id"])) is None
        assert claim_coupon(db, "VIP", str(user["_id"])) is not None


class TestAdminOrders:
    def _place(self, client, user, auth, make_product, shipping):
        pid = make_product()
        _fill_cart(client, auth(user), pid, 1)
        response = client.post(
            "/api/user/cart/create-order", json={"cod": True, "shipping_info": shipping}, headers=auth(user)
        )
        return response.json()["order"]["id"]

    def test_user_sees_own_orders(self, client, user, other_user, auth, make_product, shipping):
        self._place(client, user, auth, make_product, shipping)
        assert len(client.get("/api/user/orders", headers=auth(user)).json()["items"]) == 1
        assert client.get("/api/user/orders", headers=auth(other_user)).json()["items"] == []

    def test_update_status(self, client, user, admin, auth, make_product, shipping):
        order_id = self._place(client, user, auth, make_product, shipping)
        response = client.put(f"/api/user/orders/{order_id}/status", json={"status": "Dispatched"},
                              headers=auth(admin))
        assert response.status_code == 200
        assert response.json()["order_status"] == "Dispatched"

    def test_unknown_status_rejected(self, client, user, admin, auth, make_product, shipping):
        order_id = self._place(client, user, auth, make_product, shipping)
        response = client.put(f"/api/user/orders/{order_id}/status", json={"status": "Lost"},
                              headers=auth(admin))
        assert response.status_code == 400

    def test_status_update_is_admin_only(self, client, user, auth, make_product, shipping):
        order_id = self._place(client, user, auth, make_product, shipping)
        response = client.put(f"/api/user/orders/{order_id}/status", json={"status": "Delivered"},
                              headers=auth(user))
        assert response.status_code == 403

    def test_revenue_counts_delivered_orders(self, client, db, user, admin, auth, make_product, shipping):
        order_id = self._place(client, user, auth, make_product, shipping)
        client.put(f"/api/user/orders/{order_id}/status", json={"status": "Delivered"}, headers=auth(admin))
        response = client.get("/api/revenue", headers=auth(admin))
        assert response.json() == {"total": 650.0, "esewa": 0.0, "cod": 650.0}

    def test_order_lookup_limited_to_owner_and_admin(self, client, user, other_user, admin, auth, make_product,
                                                     shipping):
        order_id = self._place(client, user, auth, make_product, shipping)
        response = client.get(f"/api/user/orders/{order_id}", headers=auth(user))
        assert response.status_code == 200
        assert response.json()["order_status"] == "Processing"
        assert client.get(f"/api/user/orders/{order_id}", headers=auth(admin)).status_code == 200
        assert client.get(f"/api/user/orders/{order_id}", headers=auth(other_user)).status_code == 404
        assert client.get(f"/api/user/orders/{order_id}").status_code == 401

    def test_esewa_revenue(self, client, db, user, admin, auth, make_product, shipping):
        order_id = self._place(client, user, auth, make_product, shipping)
        db["order"].update_one({"_id": ObjectId(order_id)},
                               {"$set": {"order_status": "Delivered", "payment_intent.method": "eSewa"}})
        assert client.get("/api/revenue/esewa", headers=auth(admin)).json() == {"total": 650.0}
        assert client.get("/api/revenue/all", headers=auth(admin)).json()["esewa"] == 650.0

    def test_delete_order(self, client, db, user, admin, auth, make_product, shipping):
        order_id = self._place(client, user, auth, make_product, shipping)
        assert client.delete(f"/api/user/orders/{order_id}", headers=auth(admin)).status_code == 200
        assert db["order"].count_documents({}) == 0
        assert client.delete(f"/api/user/orders/{order_id}", headers=auth(admin)).status_code == 404


def test_compute_totals_invariant():
    totals = orders.compute_totals(1000, 10, 150)
    assert totals.total_after_discount == Decimal("900.00")
    assert totals.total_with_delivery == Decimal("1050.00")
    assert totals.total_after_discount + totals.delivery_charge == totals.total_with_delivery
