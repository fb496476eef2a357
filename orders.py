import logging
import random
import re
from datetime import datetime
from enum import Enum

from pricing import _to_float

logger = logging.getLogger(__name__)


# Accepts 01712345678 or +8801712345678
BD_PHONE_REGEX = re.compile(r"^(\+8801|01)[3-9]\d{8}$")
ORDER_NUMBER_PREFIX = "TN"
ORDER_NUMBER_ATTEMPTS = 10
REQUIRED_ORDER_FIELDS = (
    "customer_name",
    "customer_phone",
    "district",
    "address",
    "items",
    "total_amount",
)
DEFAULT_PAYMENT_METHOD = "cash_on_delivery"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ORDER_STATUS_LABELS = {
    OrderStatus.PENDING: "Pending",
    OrderStatus.CONFIRMED: "Confirmed",
    OrderStatus.PROCESSING: "Processing",
    OrderStatus.SHIPPED: "Shipped",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


class OrderError(Exception):
    """Order request that cannot be fulfilled; ``status`` is the HTTP code to answer with."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def _now():
    return datetime.now().replace(microsecond=0)


def fetch_dicts(cur):
    rows = cur.fetchall() or []
    columns = [col[0] for col in cur.description or []]
    return [dict(zip(columns, row)) for row in rows]


def fetch_dict(cur):
    row = cur.fetchone()
    if row is None:
        return None
    columns = [col[0] for col in cur.description or []]
    return dict(zip(columns, row))


def is_valid_bd_phone(phone) -> bool:
    if not phone or not isinstance(phone, str):
        return False
    return bool(BD_PHONE_REGEX.match(phone.strip()))


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(str(value or "").strip().lower())
    except ValueError:
        raise OrderError("Invalid status", 400)


def can_transition(current, new) -> bool:
    try:
        current = OrderStatus(current)
        new = OrderStatus(new)
    except ValueError:
        return False
    return new in ORDER_TRANSITIONS.get(current, set())


def district_code(district: str) -> str:
    letters = re.sub(r"[^A-Za-z]", "", str(district or ""))
    if len(letters) < 2:
        return "XX"
    return letters[:2].upper()


def generate_order_number(district: str, rng=None) -> str:
    rng = rng or random
    return f"{ORDER_NUMBER_PREFIX}-{district_code(district)}-{rng.randint(100000, 999999)}"


def _unique_order_number(cur, district: str) -> str:
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = generate_order_number(district)
        cur.execute("SELECT 1 FROM orders WHERE order_number = %s", (candidate,))
        if not cur.fetchone():
            return candidate
    raise OrderError("Could not allocate an order number. Please retry.", 503)


def _parse_quantity(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    try:
        qty = int(value)
    except (TypeError, ValueError):
        return None
    return qty if qty > 0 else None


def _parse_product_id(value):
    if isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def validate_order_payload(payload) -> dict:
    """Check an order request body and return it normalised.

    Pure validation: no database access, raises ``OrderError`` with the
    message the storefront shows next to the form.
    """
    if not isinstance(payload, dict):
        raise OrderError("Missing required fields")
    for field in REQUIRED_ORDER_FIELDS:
        value = payload.get(field)
        if value is None or value == "" or value == 0 or value is False:
            raise OrderError("Missing required fields")
        if isinstance(value, str) and not value.strip():
            raise OrderError("Missing required fields")

    phone = payload.get("customer_phone")
    if not is_valid_bd_phone(phone):
        raise OrderError("Invalid phone number")

    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise OrderError("No items in order")

    clean_items = []
    for idx, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise OrderError(f"Invalid item at position {idx}")
        product_id = _parse_product_id(item.get("product_id"))
        if product_id is None:
            raise OrderError(f"Invalid product id at position {idx}")
        quantity = _parse_quantity(item.get("quantity"))
        if quantity is None:
            raise OrderError(f"Invalid quantity at position {idx}")
        price = _to_float(item.get("price"), -1)
        if price < 0:
            raise OrderError(f"Invalid price at position {idx}")
        clean_items.append({"product_id": product_id, "quantity": quantity, "price": round(price, 2)})

    total_amount = _to_float(payload.get("total_amount"), -1)
    if total_amount <= 0:
        raise OrderError("Invalid total amount")

    return {
        "customer_name": str(payload["customer_name"]).strip()[:120],
        "customer_phone": phone.strip(),
        "district": str(payload["district"]).strip()[:80],
        "address": str(payload["address"]).strip(),
        "payment_method": str(payload.get("payment_method") or DEFAULT_PAYMENT_METHOD).strip()[:40],
        "items": clean_items,
        "total_amount": round(total_amount, 2),
    }


def items_subtotal(items) -> float:
    return round(sum(float(it["price"]) * int(it["quantity"]) for it in items), 2)


def get_delivery_charge(cur, district: str) -> int:
    cur.execute(
        "SELECT delivery_charge FROM districts WHERE LOWER(name) = LOWER(%s) LIMIT 1",
        (district,),
    )
    row = cur.fetchone()
    if not row or row[0] is None:
        return 0
    return int(row[0])


def _load_products(cur, product_ids):
    placeholders = ", ".join(["%s"] * len(product_ids))
    cur.execute(
        f"SELECT id, name, stock FROM products WHERE id IN ({placeholders})",
        tuple(product_ids),
    )
    return {int(row["id"]): row for row in fetch_dicts(cur)}


def check_stock(cur, items) -> dict:
    """Advisory stock check, answers with the first shortfall.

    The authoritative check is the conditional decrement in ``place_order``.
    """
    product_ids = []
    for it in items:
        if it["product_id"] not in product_ids:
            product_ids.append(it["product_id"])
    products = _load_products(cur, product_ids)

    missing = [str(pid) for pid in product_ids if pid not in products]
    if missing:
        raise OrderError(f"Product(s) not found: {', '.join(missing)}")

    wanted = {}
    for it in items:
        wanted[it["product_id"]] = wanted.get(it["product_id"], 0) + it["quantity"]
    for pid in product_ids:
        product = products[pid]
        stock = int(product.get("stock") or 0)
        if stock < wanted[pid]:
            raise OrderError(f"Insufficient stock for {product['name']}. Available: {stock}")
    return products


def place_order(
    conn,
    payload,
    user_id=None,
    coupon=None,
    low_stock_threshold: int = 0,
    notify=None,
) -> dict:
    """Validate, persist and return an order with its items.

    Order row, items, stock decrements, coupon use and the first tracking
    note commit together or not at all. ``notify(conn, order, low_stock)``
    runs after the commit and must not raise.
    """
    data = validate_order_payload(payload)
    items = data["items"]

    with conn.cursor() as cur:
        products = check_stock(cur, items)
        delivery_charge = get_delivery_charge(cur, data["district"])
    conn.commit()

    subtotal = items_subtotal(items)
    discount = 0.0
    coupon_id = None
    if coupon:
        discount = round(min(float(coupon.get("discount_amount") or 0), subtotal), 2)
        coupon_id = coupon.get("id")
    expected_total = round(subtotal + delivery_charge - discount, 2)
    if abs(expected_total - data["total_amount"]) > 0.009:
        raise OrderError(f"Total amount mismatch. Expected {expected_total:.2f}")

    now = _now()
    try:
        conn.begin()
        with conn.cursor() as cur:
            order_number = _unique_order_number(cur, data["district"])
            cur.execute(
                """
                INSERT INTO orders
                (order_number, user_id, customer_name, customer_phone, district, address,
                 payment_method, subtotal, delivery_charge, discount, total_amount, coupon_id,
                 status, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    order_number,
                    user_id,
                    data["customer_name"],
                    data["customer_phone"],
                    data["district"],
                    data["address"],
                    data["payment_method"],
                    subtotal,
                    delivery_charge,
                    discount,
                    data["total_amount"],
                    coupon_id,
                    OrderStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            order_id = cur.lastrowid

            for it in items:
                cur.execute(
                    "INSERT INTO order_items (order_id, product_id, quantity, price) VALUES (%s, %s, %s, %s)",
                    (order_id, it["product_id"], it["quantity"], it["price"]),
                )
                cur.execute(
                    "UPDATE products SET stock = stock - %s WHERE id = %s AND stock >= %s",
                    (it["quantity"], it["product_id"], it["quantity"]),
                )
                if cur.rowcount != 1:
                    name = products[it["product_id"]]["name"]
                    raise OrderError(f"Insufficient stock for {name}")

            if coupon_id:
                cur.execute(
                    "UPDATE coupons SET is_used = 1, used_order_id = %s WHERE id = %s AND is_used = 0",
                    (order_id, coupon_id),
                )
                if cur.rowcount != 1:
                    raise OrderError("This coupon has already been used")

            cur.execute(
                "INSERT INTO order_tracking (order_id, status, note, created_at) VALUES (%s, %s, %s, %s)",
                (order_id, OrderStatus.PENDING.value, "Order placed successfully", now),
            )
        conn.commit()
    except OrderError as exc:
        conn.rollback()
        logger.warning("Order rolled back for %s: %s", data["customer_phone"], exc.message)
        raise
    except Exception as exc:
        conn.rollback()
        logger.exception("Order creation failed for %s", data["customer_phone"])
        raise OrderError("Failed to create order", 500) from exc

    logger.info("Order %s created (%s items, total %.2f)", order_number, len(items), data["total_amount"])
    order = get_order(conn, order_id=order_id)

    if notify is not None:
        low_stock = []
        if low_stock_threshold > 0:
            try:
                with conn.cursor() as cur:
                    ids = sorted({it["product_id"] for it in items})
                    placeholders = ", ".join(["%s"] * len(ids))
                    cur.execute(
                        f"SELECT id, name, stock FROM products WHERE id IN ({placeholders}) AND stock <= %s",
                        tuple(ids) + (low_stock_threshold,),
                    )
                    low_stock = fetch_dicts(cur)
            except Exception:
                logger.exception("Low stock lookup failed for order %s", order_number)
        try:
            notify(conn, order, low_stock)
        except Exception:
            logger.exception("Notification fan-out failed for order %s", order_number)
    return order


def _attach_details(cur, orders):
    if not orders:
        return orders
    ids = [o["id"] for o in orders]
    placeholders = ", ".join(["%s"] * len(ids))
    cur.execute(
        f"""
        SELECT oi.id, oi.order_id, oi.product_id, oi.quantity, oi.price,
               p.name AS product_name, p.slug AS product_slug, p.image_url AS product_image
        FROM order_items oi
        LEFT JOIN products p ON p.id = oi.product_id
        WHERE oi.order_id IN ({placeholders})
        ORDER BY oi.id ASC
        """,
        tuple(ids),
    )
    items = fetch_dicts(cur)
    cur.execute(
        f"""
        SELECT id, order_id, status, note, created_at
        FROM order_tracking
        WHERE order_id IN ({placeholders})
        ORDER BY created_at ASC, id ASC
        """,
        tuple(ids),
    )
    notes = fetch_dicts(cur)
    by_id = {o["id"]: o for o in orders}
    for o in orders:
        o["items"] = []
        o["tracking_notes"] = []
    for it in items:
        by_id[it["order_id"]]["items"].append(it)
    for note in notes:
        by_id[note["order_id"]]["tracking_notes"].append(note)
    return orders


ORDER_COLUMNS = """
    id, order_number, user_id, customer_name, customer_phone, district, address,
    payment_method, subtotal, delivery_charge, discount, total_amount, status,
    created_at, updated_at
"""


def get_order(conn, order_id=None, order_number=None):
    with conn.cursor() as cur:
        if order_id is not None:
            cur.execute(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s", (order_id,))
        else:
            cur.execute(f"SELECT {ORDER_COLUMNS} FROM orders WHERE order_number = %s", (order_number,))
        order = fetch_dict(cur)
        if not order:
            return None
        _attach_details(cur, [order])
    return order


def list_orders(conn, page: int = 1, limit: int = 20, status=None, search=None, user_id=None):
    where = []
    params = []
    if status and status != "all":
        where.append("status = %s")
        params.append(status)
    if search:
        where.append("(customer_name LIKE %s OR customer_phone LIKE %s)")
        like = f"%{search}%"
        params.extend([like, like])
    if user_id is not None:
        where.append("user_id = %s")
        params.append(user_id)
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    page = max(1, int(page or 1))
    limit = max(1, int(limit or 20))
    with conn.cursor() as cur:
        cur.execute(f"SELECT COUNT(*) FROM orders {where_sql}", tuple(params))
        row = cur.fetchone()
        total = int(row[0] or 0) if row else 0
        cur.execute(
            f"""
            SELECT {ORDER_COLUMNS} FROM orders {where_sql}
            ORDER BY created_at DESC, id DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params) + (limit, (page - 1) * limit),
        )
        orders = fetch_dicts(cur)
        _attach_details(cur, orders)
    return orders, total


def update_order_status(conn, order_id, new_status, note=None, points_per_taka: float = 0.0) -> dict:
    status = parse_status(new_status)
    now = _now()
    try:
        conn.begin()
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, order_number, status, user_id, customer_phone, customer_name, total_amount "
                "FROM orders WHERE id = %s",
                (order_id,),
            )
            order = fetch_dict(cur)
            if not order:
                raise OrderError("Order not found", 404)
            previous = order["status"]
            if not can_transition(previous, status):
                raise OrderError(f"Cannot change status from {previous} to {status.value}", 409)

            cur.execute(
                "UPDATE orders SET status = %s, updated_at = %s WHERE id = %s AND status = %s",
                (status.value, now, order_id, previous),
            )
            if cur.rowcount != 1:
                raise OrderError("Order was updated by someone else. Reload and try again.", 409)

            if status == OrderStatus.CANCELLED:
                cur.execute("SELECT product_id, quantity FROM order_items WHERE order_id = %s", (order_id,))
                for product_id, quantity in cur.fetchall() or []:
                    cur.execute(
                        "UPDATE products SET stock = stock + %s WHERE id = %s",
                        (quantity, product_id),
                    )

            points = 0
            if status == OrderStatus.DELIVERED and order.get("user_id") and points_per_taka > 0:
                points = int(float(order["total_amount"] or 0) * points_per_taka)
                if points > 0:
                    cur.execute(
                        """
                        INSERT INTO reward_transactions (user_id, order_id, points, reason, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (order["user_id"], order_id, points, f"Order {order['order_number']} delivered", now),
                    )

            text = (note or "").strip() or (
                f"Status changed from {ORDER_STATUS_LABELS[OrderStatus(previous)]} "
                f"to {ORDER_STATUS_LABELS[status]}"
            )
            cur.execute(
                "INSERT INTO order_tracking (order_id, status, note, created_at) VALUES (%s, %s, %s, %s)",
                (order_id, status.value, text[:500], now),
            )
        conn.commit()
    except OrderError:
        conn.rollback()
        raise
    except Exception as exc:
        conn.rollback()
        logger.exception("Status update failed for order %s", order_id)
        raise OrderError("Failed to update order", 500) from exc

    logger.info("Order %s status %s -> %s", order["order_number"], previous, status.value)
    order["previous_status"] = previous
    order["status"] = status.value
    order["note"] = text
    order["reward_points"] = points
    return order


def delete_order(conn, order_id) -> bool:
    """Remove an order with its items and notes.

    An order that could still be cancelled gives its stock back first, the same
    way cancelling does; delivered and cancelled orders leave stock alone.
    """
    try:
        conn.begin()
        with conn.cursor() as cur:
            cur.execute("SELECT status FROM orders WHERE id = %s", (order_id,))
            row = cur.fetchone()
            if row and ORDER_TRANSITIONS.get(OrderStatus(row[0])):
                cur.execute("SELECT product_id, quantity FROM order_items WHERE order_id = %s", (order_id,))
                for product_id, quantity in cur.fetchall() or []:
                    cur.execute(
                        "UPDATE products SET stock = stock + %s WHERE id = %s",
                        (quantity, product_id),
                    )
            cur.execute("DELETE FROM order_tracking WHERE order_id = %s", (order_id,))
            cur.execute("DELETE FROM order_items WHERE order_id = %s", (order_id,))
            cur.execute("DELETE FROM orders WHERE id = %s", (order_id,))
            deleted = cur.rowcount > 0
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return deleted
