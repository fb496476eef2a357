import rewards


def _add(client, csrf, product_id, quantity=1):
    return client.post("/cart/add", json={"product_id": product_id, "quantity": quantity}, headers=csrf())


def _checkout_body(**overrides):
    body = {
        "customer_name": "Karim Uddin",
        "customer_phone": "01712345678",
        "district": "Dhaka",
        "address": "House 12, Road 5, Dhanmondi",
    }
    body.update(overrides)
    return body


def test_cart_writes_need_csrf_token(client, catalog_ids):
    resp = client.post("/cart/add", json={"product_id": catalog_ids["laptop"]})
    assert resp.status_code == 400
    assert "CSRF" in resp.get_json()["error"]


def test_add_to_cart(client, csrf, catalog_ids):
    resp = _add(client, csrf, catalog_ids["laptop"], 2)
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["message"] == "Added to cart."
    assert body["cart_count"] == 2
    assert body["subtotal"] == 2000

    body = _add(client, csrf, catalog_ids["headphones"]).get_json()
    assert body["cart_count"] == 3
    assert body["subtotal"] == 3500


def test_add_clamps_to_stock(client, csrf, catalog_ids):
    body = _add(client, csrf, catalog_ids["mouse"], 5).get_json()
    assert body["level"] == "warning"
    assert body["message"] == "Only 3 left in stock. Cart updated."
    assert body["items"][0]["quantity"] == 3


def test_add_unavailable_products(client, csrf, catalog_ids):
    resp = _add(client, csrf, catalog_ids["cable"])
    assert resp.status_code == 409
    assert resp.get_json() == {"error": "This item is currently out of stock."}

    assert _add(client, csrf, 9999).status_code == 404
    assert client.post("/cart/add", json={}, headers=csrf()).status_code == 404


def test_update_cart_actions(client, csrf, catalog_ids):
    pid = catalog_ids["mouse"]
    _add(client, csrf, pid)

    def update(**data):
        return client.post("/cart/update", json=dict(data, product_id=pid), headers=csrf())

    assert update(action="increase").get_json()["cart_count"] == 2
    assert update(action="decrease").get_json()["cart_count"] == 1
    body = update(quantity=10).get_json()
    assert body["cart_count"] == 3
    assert body["message"] == "Only 3 left in stock."
    assert update(quantity=-1).status_code == 400
    assert update(action="shake").status_code == 400

    body = update(action="remove").get_json()
    assert body["items"] == []
    assert body["message"] == "Item removed from cart."


def test_update_drops_missing_products(client, csrf, catalog_ids):
    resp = client.post("/cart/update", json={"product_id": 9999, "action": "increase"}, headers=csrf())
    assert resp.status_code == 404


def test_remove_and_clear(client, csrf, catalog_ids):
    _add(client, csrf, catalog_ids["laptop"])
    _add(client, csrf, catalog_ids["mouse"])

    body = client.post("/cart/remove", json={"product_id": catalog_ids["laptop"]}, headers=csrf()).get_json()
    assert [line["product_id"] for line in body["items"]] == [catalog_ids["mouse"]]

    body = client.post("/cart/clear", headers=csrf()).get_json()
    assert body["cart_count"] == 0
    assert client.get("/cart").get_json()["items"] == []


def test_checkout_summary(client, csrf, catalog_ids):
    _add(client, csrf, catalog_ids["headphones"], 2)
    body = client.get("/checkout/summary?district=khulna").get_json()
    assert body["subtotal"] == 3000
    assert body["delivery_charge"] == 120
    assert body["total"] == 3120

    body = client.get("/checkout/summary").get_json()
    assert body["district"] is None
    assert body["total"] == 3000


def test_checkout_empty_cart(client, csrf, catalog_ids):
    resp = client.post("/checkout", json=_checkout_body(), headers=csrf())
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Your cart is empty"}


def test_checkout_places_order(client, csrf, query, catalog_ids):
    _add(client, csrf, catalog_ids["laptop"], 2)
    _add(client, csrf, catalog_ids["headphones"])

    resp = client.post("/checkout", json=_checkout_body(), headers=csrf())
    assert resp.status_code == 200
    order = resp.get_json()["order"]
    assert order["subtotal"] == 3500
    assert order["total_amount"] == 3560
    assert order["user_id"] is None

    assert client.get("/cart").get_json()["items"] == []
    stock = dict(query("SELECT slug, stock FROM products"))
    assert stock["walton-laptop"] == 8
    assert stock["studio-headphones"] == 4


def test_checkout_validation_keeps_cart(client, csrf, catalog_ids):
    _add(client, csrf, catalog_ids["laptop"])
    resp = client.post("/checkout", json=_checkout_body(customer_phone="555"), headers=csrf())
    assert resp.status_code == 400
    assert resp.get_json() == {"success": False, "error": "Invalid phone number"}
    assert client.get("/cart").get_json()["cart_count"] == 1


def test_checkout_coupon_needs_sign_in(client, csrf, catalog_ids):
    _add(client, csrf, catalog_ids["laptop"])
    resp = client.post("/checkout", json=_checkout_body(coupon_code="SAVE10"), headers=csrf())
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Sign in to use coupons"}


def test_checkout_with_coupon(user_client, conn, csrf, query, catalog_ids):
    rewards.create_coupon(conn, user_client.user_id, "save10", "percentage", 10)
    _add(user_client, csrf, catalog_ids["laptop"], 2)

    resp = user_client.post("/checkout", json=_checkout_body(coupon_code="SAVE10"), headers=csrf())
    assert resp.status_code == 200
    order = resp.get_json()["order"]
    assert order["discount"] == 200
    assert order["total_amount"] == 1860
    assert order["user_id"] == user_client.user_id
    assert query("SELECT is_used, used_order_id FROM coupons WHERE code = 'SAVE10'") == [(1, order["id"])]

    types = [row[0] for row in query("SELECT type FROM user_notifications")]
    assert types == ["order_placed"]

    _add(user_client, csrf, catalog_ids["laptop"])
    resp = user_client.post("/checkout", json=_checkout_body(coupon_code="SAVE10"), headers=csrf())
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "This coupon has already been used"
