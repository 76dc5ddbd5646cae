from datetime import timedelta


def _order_body(pid, quantity=2, **extra):
    body = {
        "orderItems": [{"product": str(pid), "quantity": quantity}],
        "shippingAddress": {
            "name": "Ash Ketchum",
            "street": "1 Route Road",
            "city": "Pallet Town",
            "state": "Kanto",
            "zipCode": "100001",
            "country": "India",
            "phone": "9876543210",
        },
    }
    body.update(extra)
    return body


def test_root_and_health(api_client):
    assert api_client.get("/").json()["status"] == "ok"
    health = api_client.get("/api/health").json()
    assert health["backend"] == "✅ Running"


def test_requires_identity(api_client):
    response = api_client.get("/api/orders")
    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Not authenticated"}


def test_request_validation_uses_envelope(api_client, headers, make_product):
    body = _order_body(make_product())
    body["shippingAddress"]["street"] = ""
    response = api_client.post("/api/orders", json=body, headers=headers())
    assert response.status_code == 400
    payload = response.json()
    assert payload["success"] is False
    assert any(e["field"].endswith("street") for e in payload["errors"])


def test_checkout_end_to_end(api_client, headers, make_product, gateway, signer, db):
    pid = make_product(price=40, stock=10)
    response = api_client.post("/api/orders", json=_order_body(pid), headers=headers())
    assert response.status_code == 201
    order = response.json()["order"]
    assert order["totalPrice"] == 86
    assert order["user"] == "user-1"

    opened = api_client.post("/api/payments/create-order", json={"orderId": order["id"]}, headers=headers()).json()
    assert opened["success"] is True
    assert opened["key"] == "rzp_test_key"
    remote_id = opened["order"]["id"]
    assert opened["order"]["amount"] == 8600

    payment_id = gateway.add_payment(remote_id)
    verified = api_client.post(
        "/api/payments/verify",
        json={
            "orderId": order["id"],
            "razorpay_order_id": remote_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signer(remote_id, payment_id),
        },
        headers=headers(),
    )
    assert verified.status_code == 200
    assert verified.json()["message"] == "Payment verified successfully"
    assert verified.json()["order"]["orderStatus"] == "delivered"
    assert db["product"].find_one({"_id": pid})["stock"] == 8

    listed = api_client.get("/api/orders", headers=headers()).json()
    assert [o["id"] for o in listed["orders"]] == [order["id"]]

    status = api_client.get(f"/api/payments/check-status/{order['id']}", headers=headers()).json()
    assert status["status"] == "completed"


def test_bad_signature_is_rejected(api_client, headers, make_product, gateway):
    pid = make_product()
    order = api_client.post("/api/orders", json=_order_body(pid), headers=headers()).json()["order"]
    remote_id = api_client.post("/api/payments/create-order", json={"orderId": order["id"]}, headers=headers()).json()["order"]["id"]
    payment_id = gateway.add_payment(remote_id)

    response = api_client.post(
        "/api/payments/verify",
        json={"orderId": order["id"], "razorpay_order_id": remote_id, "razorpay_payment_id": payment_id, "razorpay_signature": "deadbeef"},
        headers=headers(),
    )
    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Payment verification failed: Invalid signature"}


def test_other_users_cannot_read_orders(api_client, headers, make_product):
    order = api_client.post("/api/orders", json=_order_body(make_product()), headers=headers()).json()["order"]

    assert api_client.get(f"/api/orders/{order['id']}", headers=headers("user-2")).status_code == 403
    assert api_client.get(f"/api/orders/{order['id']}", headers=headers("admin-1", "admin")).status_code == 200
    missing = api_client.get("/api/orders/5f1d7f5b9c1e4b3a2c8d9e0f", headers=headers())
    assert missing.status_code == 404
    assert missing.json()["message"] == "Order not found"


def test_insufficient_stock_message(api_client, headers, make_product):
    pid = make_product(name="Mewtwo", stock=1)
    response = api_client.post("/api/orders", json=_order_body(pid, quantity=3), headers=headers())
    assert response.status_code == 400
    assert response.json()["message"] == "Insufficient stock for Mewtwo. Available: 1, Requested: 3"


def test_coupon_validate_and_strict_policy(api_client, headers, make_product, make_coupon, db):
    make_coupon("SAVE10")
    quote = api_client.post("/api/coupons/validate", json={"code": "save10", "totalAmount": 86}).json()
    assert quote["coupon"]["discountAmount"] == 8.6

    missing = api_client.post("/api/coupons/validate", json={"code": "NOPE", "totalAmount": 86})
    assert missing.status_code == 404
    assert missing.json()["message"] == "Invalid or expired coupon code"

    make_coupon("DONE", usageLimit=1, usedCount=1)
    pid = make_product()
    strict = api_client.post("/api/orders", json=_order_body(pid, couponCode="DONE", couponPolicy="strict"), headers=headers())
    assert strict.status_code == 400
    assert strict.json()["message"] == "Coupon usage limit reached"

    lenient = api_client.post("/api/orders", json=_order_body(pid, couponCode="DONE"), headers=headers())
    assert lenient.status_code == 201
    assert lenient.json()["order"]["couponCode"] is None


def test_coupon_admin_endpoints(api_client, headers, now):
    body = {
        "code": "newtrainer",
        "discountType": "percentage",
        "discountValue": 15,
        "maxDiscountAmount": 100,
        "validUntil": (now + timedelta(days=10)).isoformat(),
    }
    assert api_client.post("/api/coupons", json=body, headers=headers()).status_code == 403

    created = api_client.post("/api/coupons", json=body, headers=headers("admin-1", "admin"))
    assert created.status_code == 201
    coupon = created.json()["coupon"]
    assert coupon["code"] == "NEWTRAINER"

    duplicate = api_client.post("/api/coupons", json=body, headers=headers("admin-1", "admin"))
    assert duplicate.status_code == 409

    updated = api_client.put(f"/api/coupons/{coupon['id']}", json={"isActive": False}, headers=headers("admin-1", "admin"))
    assert updated.json()["coupon"]["isActive"] is False

    listed = api_client.get("/api/coupons", headers=headers("admin-1", "admin")).json()
    assert listed["count"] == 1

    deleted = api_client.delete(f"/api/coupons/{coupon['id']}", headers=headers("admin-1", "admin"))
    assert deleted.json()["message"] == "Coupon deleted successfully"


def test_status_update_requires_staff(api_client, headers, make_product):
    order = api_client.post("/api/orders", json=_order_body(make_product()), headers=headers()).json()["order"]
    url = f"/api/orders/{order['id']}/status"

    assert api_client.put(url, json={"orderStatus": "processing"}, headers=headers()).status_code == 403
    moved = api_client.put(url, json={"orderStatus": "processing"}, headers=headers("seller-1", "seller"))
    assert moved.json()["order"]["orderStatus"] == "processing"

    bad = api_client.put(url, json={"orderStatus": "pending"}, headers=headers("admin-1", "admin"))
    assert bad.status_code == 400


def test_payments_unavailable_without_keys(api_client, headers, make_product):
    from main import app, get_gateway

    app.dependency_overrides[get_gateway] = lambda: None
    order = api_client.post("/api/orders", json=_order_body(make_product()), headers=headers()).json()["order"]
    response = api_client.post("/api/payments/create-order", json={"orderId": order["id"]}, headers=headers())
    assert response.status_code == 503
    assert response.json()["success"] is False


def test_payment_link_endpoints(api_client, headers, make_product, gateway):
    order = api_client.post("/api/orders", json=_order_body(make_product()), headers=headers()).json()["order"]
    link = api_client.post(
        "/api/payments/create-payment-link",
        json={"orderId": order["id"], "customerEmail": "ash@pokestash.in"},
        headers=headers(),
    ).json()["paymentLink"]
    assert link["url"].startswith("https://rzp.io/i/")

    unpaid = api_client.post(
        "/api/payments/verify-payment-link",
        json={"payment_link_id": link["id"], "payment_id": gateway.pay_link(link["id"], status="created")},
    ).json()
    assert unpaid == {"success": False, "message": "Payment not completed"}

    stray = api_client.post(
        "/api/payments/verify-payment-link",
        json={"payment_link_id": link["id"], "payment_id": gateway.add_payment("order_elsewhere", amount=8600)},
    )
    assert stray.status_code == 400
    assert stray.json()["message"] == "Payment does not belong to this payment link"

    paid = api_client.post(
        "/api/payments/verify-payment-link",
        json={"payment_link_id": link["id"], "payment_id": gateway.pay_link(link["id"])},
    ).json()
    assert paid["success"] is True
    assert paid["order"]["paymentInfo"]["status"] == "completed"


def test_refund_endpoint(api_client, headers, make_product, gateway, signer, db):
    pid = make_product(stock=5)
    order = api_client.post("/api/orders", json=_order_body(pid), headers=headers()).json()["order"]
    remote_id = api_client.post("/api/payments/create-order", json={"orderId": order["id"]}, headers=headers()).json()["order"]["id"]
    payment_id = gateway.add_payment(remote_id)
    api_client.post(
        "/api/payments/verify",
        json={"orderId": order["id"], "razorpay_order_id": remote_id, "razorpay_payment_id": payment_id, "razorpay_signature": signer(remote_id, payment_id)},
        headers=headers(),
    )
    assert db["product"].find_one({"_id": pid})["stock"] == 3

    assert api_client.post("/api/payments/refund", json={"orderId": order["id"]}, headers=headers()).status_code == 403
    refunded = api_client.post("/api/payments/refund", json={"orderId": order["id"]}, headers=headers("admin-1", "admin")).json()

    assert refunded["refund"]["payment_id"] == payment_id
    assert refunded["order"]["paymentInfo"]["status"] == "refunded"
    assert db["product"].find_one({"_id": pid})["stock"] == 5


def test_cart_endpoints(api_client, headers, make_product):
    pid = str(make_product(stock=4))
    added = api_client.post("/api/cart", json={"productId": pid, "quantity": 2}, headers=headers()).json()
    assert added["cart"]["items"][0]["quantity"] == 2

    updated = api_client.put(f"/api/cart/{pid}", json={"quantity": 3}, headers=headers()).json()
    assert updated["cart"]["items"][0]["quantity"] == 3

    too_many = api_client.post("/api/cart", json={"productId": pid, "quantity": 2}, headers=headers())
    assert too_many.status_code == 400

    removed = api_client.delete(f"/api/cart/{pid}", headers=headers()).json()
    assert removed["cart"]["items"] == []
    assert api_client.get("/api/cart", headers=headers()).json()["cart"]["items"] == []


def test_products(api_client, headers, make_product):
    make_product(name="Psyduck Sticker")
    make_product(name="Hidden", status="inactive")
    listed = api_client.get("/api/products", params={"q": "psy"}).json()
    assert [p["name"] for p in listed["products"]] == ["Psyduck Sticker"]

    created = api_client.post(
        "/api/products",
        json={"name": "Jigglypuff Sticker", "price": 30, "stock": 12},
        headers=headers("seller-2", "seller"),
    )
    assert created.status_code == 201
    product = created.json()["product"]
    assert product["seller"] == "seller-2"

    forbidden = api_client.put(f"/api/products/{product['id']}", json={"price": 35}, headers=headers("seller-3", "seller"))
    assert forbidden.status_code == 403
    updated = api_client.put(f"/api/products/{product['id']}", json={"price": 35}, headers=headers("seller-2", "seller"))
    assert updated.json()["product"]["price"] == 35
    assert api_client.get(f"/api/products/{product['id']}").json()["product"]["stock"] == 12
