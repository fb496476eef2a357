import logging
from datetime import datetime

from orders import OrderError, OrderStatus, fetch_dict, fetch_dicts
from pricing import _parse_dt, _to_float

logger = logging.getLogger(__name__)

DISCOUNT_TYPES = ("percentage", "fixed")


def list_user_coupons(conn, user_id):
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, code, discount_type, discount_value, minimum_order_amount,
                   expires_at, is_used, used_order_id, created_at
            FROM coupons
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            """,
            (user_id,),
        )
        return fetch_dicts(cur)


def coupon_discount(coupon: dict, order_total: float) -> float:
    value = _to_float(coupon.get("discount_value"))
    if coupon.get("discount_type") == "percentage":
        discount = order_total * value / 100
    else:
        discount = value
    return round(max(0.0, min(discount, order_total)), 2)


def evaluate_coupon(conn, user_id, code, order_total, currency: str = "৳", now=None) -> dict:
    """Look up ``code`` for ``user_id`` and price it against ``order_total``.

    Raises ``OrderError`` with the message shown under the coupon field.
    """
    order_total = _to_float(order_total)
    code = str(code or "").strip().upper()
    if not code or order_total <= 0:
        raise OrderError("Coupon code and order total are required")

    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, user_id, code, discount_type, discount_value, minimum_order_amount,
                   expires_at, is_used
            FROM coupons
            WHERE code = %s AND user_id = %s
            """,
            (code, user_id),
        )
        coupon = fetch_dict(cur)

    if not coupon:
        raise OrderError("Invalid coupon code")
    if coupon.get("is_used"):
        raise OrderError("This coupon has already been used")
    expires_at = _parse_dt(coupon.get("expires_at"))
    if expires_at is not None and expires_at < (now or datetime.now()):
        raise OrderError("This coupon has expired")
    minimum = _to_float(coupon.get("minimum_order_amount"))
    if order_total < minimum:
        raise OrderError(f"Minimum order amount is {currency}{minimum:g}")

    discount = coupon_discount(coupon, order_total)
    coupon["discount_amount"] = discount
    coupon["final_total"] = round(order_total - discount, 2)
    return coupon


def create_coupon(conn, user_id, code, discount_type, discount_value, minimum_order_amount=0, expires_at=None):
    if discount_type not in DISCOUNT_TYPES:
        raise OrderError("Invalid discount type")
    value = _to_float(discount_value, -1)
    if value <= 0 or (discount_type == "percentage" and value > 100):
        raise OrderError("Invalid discount value")
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO coupons
            (user_id, code, discount_type, discount_value, minimum_order_amount, expires_at, is_used, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, 0, %s)
            """,
            (
                user_id,
                str(code).strip().upper(),
                discount_type,
                value,
                _to_float(minimum_order_amount),
                expires_at,
                datetime.now().replace(microsecond=0),
            ),
        )
        coupon_id = cur.lastrowid
    conn.commit()
    return coupon_id


def reward_points(cur, user_id) -> int:
    cur.execute("SELECT COALESCE(SUM(points), 0) FROM reward_transactions WHERE user_id = %s", (user_id,))
    row = cur.fetchone()
    return int(row[0] or 0) if row else 0


def tiers_for(cur, points: int):
    """Current and next reward tier for a points balance."""
    cur.execute("SELECT id, name, min_points, benefits FROM reward_tiers ORDER BY min_points ASC")
    tiers = fetch_dicts(cur)
    current = None
    upcoming = None
    for tier in tiers:
        if int(tier["min_points"]) <= points:
            current = tier
        elif upcoming is None:
            upcoming = tier
    return current, upcoming


def user_dashboard(conn, user_id) -> dict:
    with conn.cursor() as cur:
        cur.execute("SELECT id, name, email, phone, created_at FROM users WHERE id = %s", (user_id,))
        user = fetch_dict(cur)
        if not user:
            raise OrderError("User not found", 404)

        cur.execute(
            """
            SELECT COUNT(*),
                   COALESCE(SUM(CASE WHEN status <> %s THEN total_amount ELSE 0 END), 0),
                   SUM(CASE WHEN status = %s THEN 1 ELSE 0 END),
                   MAX(created_at)
            FROM orders WHERE user_id = %s
            """,
            (OrderStatus.CANCELLED.value, OrderStatus.DELIVERED.value, user_id),
        )
        total_orders, total_spent, delivered, last_order = cur.fetchone()

        cur.execute(
            """
            SELECT id, order_number, status, total_amount, created_at
            FROM orders WHERE user_id = %s
            ORDER BY created_at DESC, id DESC LIMIT 5
            """,
            (user_id,),
        )
        recent_orders = fetch_dicts(cur)

        cur.execute(
            """
            SELECT id, order_id, points, reason, created_at
            FROM reward_transactions WHERE user_id = %s
            ORDER BY created_at DESC, id DESC LIMIT 10
            """,
            (user_id,),
        )
        transactions = fetch_dicts(cur)

        points = reward_points(cur, user_id)
        current, upcoming = tiers_for(cur, points)

        cur.execute(
            "SELECT COUNT(*) FROM coupons WHERE user_id = %s AND is_used = 0",
            (user_id,),
        )
        row = cur.fetchone()
        available_coupons = int(row[0] or 0) if row else 0

    progress = 100
    if upcoming:
        floor = int(current["min_points"]) if current else 0
        span = max(1, int(upcoming["min_points"]) - floor)
        progress = min(100, int((points - floor) * 100 / span))

    return {
        "user": user,
        "order_stats": {
            "total_orders": int(total_orders or 0),
            "delivered_orders": int(delivered or 0),
            "total_spent": round(float(total_spent or 0), 2),
            "last_order_date": last_order,
        },
        "rewards": {
            "total_points": points,
            "current_tier": current,
            "next_tier": upcoming,
            "points_to_next_tier": max(0, int(upcoming["min_points"]) - points) if upcoming else 0,
            "tier_progress": progress,
        },
        "available_coupons": available_coupons,
        "recent_orders": recent_orders,
        "recent_transactions": transactions,
    }
