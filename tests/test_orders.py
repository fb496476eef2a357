import random
import re
import threading

import pytest

import orders
from orders import OrderError, OrderStatus


@pytest.mark.parametrize("phone", ["01712345678", "+8801712345678", " 01912345678 ", "01312345678"])
def test_valid_bangladeshi_phones(phone):
    assert orders.is_valid_bd_phone(phone)


@pytest.mark.parametrize("phone", ["01212345678", "0171234567", "017123456789", "8801712345678", "", None, 1712345678])
def test_invalid_phones(phone):
    assert not orders.is_valid_bd_phone(phone)


@pytest.mark.parametrize(
    "district, code",
    [("Dhaka", "DH"), ("khulna", "KH"), ("Cox's Bazar", "CO"), ("D", "XX"), ("", "XX"), ("ঢাকা", "XX")],
)
def test_district_code(district, code):
    assert orders.district_code(district) == code


def test_order_number_format():
    rng = random.Random(7)
    for _ in range(50):
        assert re.match(r"^TN-[A-Z]{2}-\d{6}$", orders.generate_order_number("Sylhet", rng))


def test_order_number_retries_on_collision(conn, monkeypatch):
    taken = iter(["TN-DH-111111", "TN-DH-111111", "TN-DH-222222"])
    monkeypatch.setattr(orders, "generate_order_number", lambda district, rng=None: next(taken))
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO orders (order_number, customer_name, customer_phone, district, address, total_amount, status)
            VALUES ('TN-DH-111111', 'A', '01712345678', 'Dhaka', 'x', 10, 'pending')
            """
        )
        conn.commit()
        assert orders._unique_order_number(cur, "Dhaka") == "TN-DH-222222"


def test_order_number_gives_up_after_bounded_attempts(conn, monkeypatch):
    monkeypatch.setattr(orders, "generate_order_number", lambda district, rng=None: "TN-DH-111111")
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO orders (order_number, customer_name, customer_phone, district, address, total_amount, status)
            VALUES ('TN-DH-111111', 'A', '01712345678', 'Dhaka', 'x', 10, 'pending')
            """
        )
        conn.commit()
        with pytest.raises(OrderError) as err:
            orders._unique_order_number(cur, "Dhaka")
    assert err.value.status == 503


class TestValidation:
    def test_missing_fields(self, order_payload):
        for field in orders.REQUIRED_ORDER_FIELDS:
            payload = order_payload()
            payload.pop(field)
            with pytest.raises(OrderError, match="Missing required fields"):
                orders.validate_order_payload(payload)

    def test_blank_name_is_missing(self, order_payload):
        with pytest.raises(OrderError, match="Missing required fields"):
            orders.validate_order_payload(order_payload(customer_name="   "))

    def test_invalid_phone(self, order_payload):
        with pytest.raises(OrderError, match="Invalid phone number"):
            orders.validate_order_payload(order_payload(customer_phone="01212345678"))

    def test_empty_items(self, order_payload):
        payload = order_payload()
        payload["items"] = []
        with pytest.raises(OrderError, match="No items in order"):
            orders.validate_order_payload(payload)

    @pytest.mark.parametrize(
        "item, message",
        [
            ("abc", "Invalid item at position 1"),
            ({"product_id": "x", "quantity": 1, "price": 10}, "Invalid product id at position 1"),
            ({"product_id": 1, "quantity": 0, "price": 10}, "Invalid quantity at position 1"),
            ({"product_id": 1, "quantity": 1.5, "price": 10}, "Invalid quantity at position 1"),
            ({"product_id": 1, "quantity": 1, "price": -5}, "Invalid price at position 1"),
        ],
    )
    def test_bad_items(self, order_payload, item, message):
        payload = order_payload()
        payload["items"] = [item]
        with pytest.raises(OrderError, match=re.escape(message)):
            orders.validate_order_payload(payload)

    def test_normalises_values(self, order_payload):
        data = orders.validate_order_payload(
            order_payload(customer_phone=" +8801712345678 ", customer_name="  Karim  ")
        )
        assert data["customer_phone"] == "+8801712345678"
        assert data["customer_name"] == "Karim"
        assert data["payment_method"] == "cash_on_delivery"


def _count(query, table):
    return query(f"SELECT COUNT(*) FROM {table}")[0][0]


def _stock(query, product_id):
    return query("SELECT stock FROM products WHERE id = %s", (product_id,))[0][0]


class TestPlaceOrder:
    def test_creates_order_and_decrements_stock(self, conn, query, catalog_ids, order_payload):
        order = orders.place_order(conn, order_payload())

        assert re.match(r"^TN-DH-\d{6}$", order["order_number"])
        assert order["status"] == "pending"
        assert float(order["subtotal"]) == 2000
        assert float(order["delivery_charge"]) == 60
        assert float(order["total_amount"]) == 2060
        assert [(it["product_id"], it["quantity"]) for it in order["items"]] == [(catalog_ids["laptop"], 2)]
        assert order["items"][0]["product_name"] == "Walton Laptop"
        assert [n["note"] for n in order["tracking_notes"]] == ["Order placed successfully"]
        assert _stock(query, catalog_ids["laptop"]) == 8

    def test_unknown_district_has_no_delivery_charge(self, conn, order_payload):
        order = orders.place_order(conn, order_payload(district="Atlantis"))
        assert float(order["delivery_charge"]) == 0
        assert order["order_number"].startswith("TN-AT-")

    def test_district_match_is_case_insensitive(self, conn, order_payload):
        payload = order_payload()
        payload["district"] = "dhaka"
        assert float(orders.place_order(conn, payload)["delivery_charge"]) == 60

    def test_total_mismatch_rejected(self, conn, query, order_payload):
        with pytest.raises(OrderError, match=r"Total amount mismatch. Expected 2060.00"):
            orders.place_order(conn, order_payload(total_amount=2000))
        assert _count(query, "orders") == 0

    def test_unknown_product_named_in_error(self, conn, query, catalog_ids, order_payload):
        items = [
            {"product_id": catalog_ids["laptop"], "quantity": 1, "price": 1000},
            {"product_id": 9999, "quantity": 1, "price": 10},
        ]
        with pytest.raises(OrderError, match="Product\\(s\\) not found: 9999"):
            orders.place_order(conn, order_payload(items=items))
        assert _count(query, "orders") == 0
        assert _stock(query, catalog_ids["laptop"]) == 10

    def test_insufficient_stock_reports_available(self, conn, catalog_ids, order_payload):
        items = [{"product_id": catalog_ids["mouse"], "quantity": 4, "price": 150}]
        with pytest.raises(OrderError, match="Insufficient stock for Wireless Mouse. Available: 3"):
            orders.place_order(conn, order_payload(items=items))

    def test_repeated_lines_are_checked_together(self, conn, catalog_ids, order_payload):
        items = [
            {"product_id": catalog_ids["mouse"], "quantity": 2, "price": 150},
            {"product_id": catalog_ids["mouse"], "quantity": 2, "price": 150},
        ]
        with pytest.raises(OrderError, match="Available: 3"):
            orders.place_order(conn, order_payload(items=items))

    def test_last_unit_sells_once(self, conn, query, catalog_ids, order_payload):
        with conn.cursor() as cur:
            cur.execute("UPDATE products SET stock = 1 WHERE id = %s", (catalog_ids["laptop"],))
        conn.commit()
        payload = order_payload(items=[{"product_id": catalog_ids["laptop"], "quantity": 1, "price": 1000}])

        orders.place_order(conn, payload)
        with pytest.raises(OrderError, match="Insufficient stock"):
            orders.place_order(conn, payload)

        assert _stock(query, catalog_ids["laptop"]) == 0
        assert _count(query, "orders") == 1

    @pytest.mark.parametrize("stock, buyers", [(1, 2), (3, 6)])
    def test_concurrent_orders_never_oversell(self, connect, conn, query, catalog_ids, order_payload, stock, buyers):
        with conn.cursor() as cur:
            cur.execute("UPDATE products SET stock = %s WHERE id = %s", (stock, catalog_ids["laptop"]))
        conn.commit()
        payload = order_payload(items=[{"product_id": catalog_ids["laptop"], "quantity": 1, "price": 1000}])

        barrier = threading.Barrier(buyers)
        lock = threading.Lock()
        placed, refused = [], []

        def buy():
            worker = connect(immediate=True)
            try:
                barrier.wait()
                order = orders.place_order(worker, dict(payload))
                with lock:
                    placed.append(order["order_number"])
            except OrderError as exc:
                with lock:
                    refused.append(exc.message)
            finally:
                worker.close()

        threads = [threading.Thread(target=buy) for _ in range(buyers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(placed) == stock
        assert len(refused) == buyers - stock
        assert all(msg.startswith("Insufficient stock for Walton Laptop") for msg in refused)
        assert _stock(query, catalog_ids["laptop"]) == 0
        assert _count(query, "orders") == stock

    def test_stale_stock_read_cannot_oversell(self, conn, query, catalog_ids, order_payload, monkeypatch):
        # another checkout drained stock between the advisory check and the commit
        monkeypatch.setattr(
            orders,
            "check_stock",
            lambda cur, items: orders._load_products(cur, [it["product_id"] for it in items]),
        )
        items = [
            {"product_id": catalog_ids["laptop"], "quantity": 1, "price": 1000},
            {"product_id": catalog_ids["mouse"], "quantity": 5, "price": 150},
        ]
        with pytest.raises(OrderError, match="Insufficient stock for Wireless Mouse"):
            orders.place_order(conn, order_payload(items=items))

        assert _stock(query, catalog_ids["laptop"]) == 10
        assert _stock(query, catalog_ids["mouse"]) == 3
        assert _count(query, "orders") == 0
        assert _count(query, "order_items") == 0
        assert _count(query, "order_tracking") == 0

    def test_database_failure_rolls_back(self, conn, query, catalog_ids, order_payload, monkeypatch):
        def broken(cur, district):
            raise RuntimeError("lost connection")

        monkeypatch.setattr(orders, "_unique_order_number", broken)
        with pytest.raises(OrderError) as err:
            orders.place_order(conn, order_payload())
        assert err.value.status == 500
        assert err.value.message == "Failed to create order"
        assert _stock(query, catalog_ids["laptop"]) == 10

    def test_coupon_is_consumed_once(self, conn, query, catalog_ids, order_payload, make_user):
        user_id = make_user()
        with conn.cursor() as cur:
            cur.execute(
                "INSERT INTO coupons (user_id, code, discount_type, discount_value, is_used) VALUES (%s, 'SAVE100', 'fixed', 100, 0)",
                (user_id,),
            )
            coupon_id = cur.lastrowid
        conn.commit()
        coupon = {"id": coupon_id, "discount_amount": 100}

        order = orders.place_order(conn, order_payload(total_amount=1960), user_id=user_id, coupon=coupon)
        assert float(order["discount"]) == 100
        assert query("SELECT is_used, used_order_id FROM coupons WHERE id = %s", (coupon_id,))[0] == (1, order["id"])

        with pytest.raises(OrderError, match="already been used"):
            orders.place_order(conn, order_payload(total_amount=1960), user_id=user_id, coupon=coupon)
        assert _count(query, "orders") == 1
        assert _stock(query, catalog_ids["laptop"]) == 8

    def test_notify_receives_low_stock(self, conn, catalog_ids, order_payload):
        calls = []
        items = [{"product_id": catalog_ids["mouse"], "quantity": 2, "price": 150}]
        orders.place_order(
            conn,
            order_payload(items=items),
            low_stock_threshold=5,
            notify=lambda c, order, low: calls.append((order["order_number"], low)),
        )
        assert len(calls) == 1
        assert [(p["name"], p["stock"]) for p in calls[0][1]] == [("Wireless Mouse", 1)]

    def test_notify_failure_does_not_fail_order(self, conn, query, order_payload):
        def explode(c, order, low):
            raise RuntimeError("smtp down")

        order = orders.place_order(conn, order_payload(), notify=explode)
        assert order["id"]
        assert _count(query, "orders") == 1


class TestStatus:
    @pytest.mark.parametrize(
        "current, new, allowed",
        [
            ("pending", "confirmed", True),
            ("pending", "shipped", False),
            ("confirmed", "processing", True),
            ("processing", "shipped", True),
            ("shipped", "delivered", True),
            ("shipped", "cancelled", True),
            ("delivered", "cancelled", False),
            ("cancelled", "pending", False),
            ("confirmed", "pending", False),
            ("pending", "refunded", False),
        ],
    )
    def test_transition_table(self, current, new, allowed):
        assert orders.can_transition(current, new) is allowed

    def test_parse_status(self):
        assert orders.parse_status(" Shipped ") is OrderStatus.SHIPPED
        with pytest.raises(OrderError) as err:
            orders.parse_status("lost")
        assert err.value.status == 400

    def test_update_appends_note(self, conn, order_payload):
        order = orders.place_order(conn, order_payload())
        result = orders.update_order_status(conn, order["id"], "confirmed")
        assert result["previous_status"] == "pending"
        assert result["note"] == "Status changed from Pending to Confirmed"

        stored = orders.get_order(conn, order_id=order["id"])
        assert stored["status"] == "confirmed"
        assert [n["status"] for n in stored["tracking_notes"]] == ["pending", "confirmed"]

    def test_custom_note(self, conn, order_payload):
        order = orders.place_order(conn, order_payload())
        result = orders.update_order_status(conn, order["id"], "confirmed", note="Called customer")
        assert result["note"] == "Called customer"

    def test_disallowed_transition_is_conflict(self, conn, order_payload):
        order = orders.place_order(conn, order_payload())
        with pytest.raises(OrderError) as err:
            orders.update_order_status(conn, order["id"], "delivered")
        assert err.value.status == 409
        assert orders.get_order(conn, order_id=order["id"])["status"] == "pending"

    def test_unknown_order(self, conn, catalog_ids):
        with pytest.raises(OrderError) as err:
            orders.update_order_status(conn, 12345, "confirmed")
        assert err.value.status == 404

    def test_cancel_restores_stock(self, conn, query, catalog_ids, order_payload):
        order = orders.place_order(conn, order_payload())
        assert _stock(query, catalog_ids["laptop"]) == 8
        orders.update_order_status(conn, order["id"], "cancelled")
        assert _stock(query, catalog_ids["laptop"]) == 10

    def test_delivery_credits_reward_points(self, conn, query, order_payload, make_user):
        user_id = make_user()
        order = orders.place_order(conn, order_payload(), user_id=user_id)
        for status in ("confirmed", "processing", "shipped"):
            orders.update_order_status(conn, order["id"], status, points_per_taka=0.01)
        result = orders.update_order_status(conn, order["id"], "delivered", points_per_taka=0.01)

        assert result["reward_points"] == 20
        assert query("SELECT user_id, points FROM reward_transactions") == [(user_id, 20)]


class TestListing:
    def _seed(self, conn, order_payload, catalog_ids):
        mouse = [{"product_id": catalog_ids["mouse"], "quantity": 1, "price": 150}]
        a = orders.place_order(conn, order_payload(customer_name="Karim", customer_phone="01711111111"))
        b = orders.place_order(conn, order_payload(items=mouse, customer_name="Salma", customer_phone="01822222222"))
        c = orders.place_order(conn, order_payload(items=mouse, customer_name="Jamal", customer_phone="01733333333"))
        orders.update_order_status(conn, c["id"], "confirmed")
        return a, b, c

    def test_filters_and_pagination(self, conn, order_payload, catalog_ids):
        a, b, c = self._seed(conn, order_payload, catalog_ids)

        rows, total = orders.list_orders(conn, status="pending", search="017")
        assert total == 1
        assert [r["order_number"] for r in rows] == [a["order_number"]]

        rows, total = orders.list_orders(conn, page=1, limit=2)
        assert total == 3
        assert [r["id"] for r in rows] == [c["id"], b["id"]]
        rows, _ = orders.list_orders(conn, page=2, limit=2)
        assert [r["id"] for r in rows] == [a["id"]]

        rows, total = orders.list_orders(conn, status="all", search="salma")
        assert total == 1 and rows[0]["items"][0]["product_name"] == "Wireless Mouse"

    def test_delete_order(self, conn, query, order_payload, catalog_ids):
        order = orders.place_order(conn, order_payload())
        assert _stock(query, catalog_ids["laptop"]) == 8
        assert orders.delete_order(conn, order["id"]) is True
        assert _count(query, "orders") == 0
        assert _count(query, "order_items") == 0
        assert _count(query, "order_tracking") == 0
        assert _stock(query, catalog_ids["laptop"]) == 10
        assert orders.delete_order(conn, order["id"]) is False

    @pytest.mark.parametrize(
        "path, stock_after",
        [
            (["cancelled"], 10),
            (["confirmed", "processing", "shipped", "delivered"], 8),
            (["confirmed", "processing", "shipped"], 10),
        ],
    )
    def test_delete_restores_stock_once(self, conn, query, order_payload, catalog_ids, path, stock_after):
        order = orders.place_order(conn, order_payload())
        for status in path:
            orders.update_order_status(conn, order["id"], status)
        assert orders.delete_order(conn, order["id"]) is True
        assert _stock(query, catalog_ids["laptop"]) == stock_after
