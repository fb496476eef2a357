import logging
from datetime import datetime

from orders import fetch_dicts

logger = logging.getLogger(__name__)


def _now():
    return datetime.now().replace(microsecond=0)


def create_admin_notification(conn, type_: str, title: str, message: str, order_id=None) -> bool:
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO admin_notifications (type, title, message, order_id, is_read, created_at)
                VALUES (%s, %s, %s, %s, 0, %s)
                """,
                (type_, title[:160], message[:500], order_id, _now()),
            )
        conn.commit()
        return True
    except Exception:
        logger.exception("Admin notification insert failed (%s)", type_)
        try:
            conn.rollback()
        except Exception:
            pass
        return False


def notify_new_order(conn, order, currency: str = "৳") -> bool:
    total = float(order.get("total_amount") or 0)
    return create_admin_notification(
        conn,
        "new_order",
        f"New order {order.get('order_number')}",
        f"{order.get('customer_name')} placed an order of {currency}{total:,.2f}",
        order.get("id"),
    )


def notify_low_stock(conn, products) -> int:
    sent = 0
    for product in products or []:
        ok = create_admin_notification(
            conn,
            "low_stock",
            f"Low stock: {product.get('name')}",
            f"{product.get('name')} has {int(product.get('stock') or 0)} left in stock",
        )
        if ok:
            sent += 1
    return sent


def notify_user(conn, user_id, type_: str, title: str, message: str, order_id=None) -> bool:
    if not user_id:
        return False
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO user_notifications (user_id, type, title, message, order_id, is_read, created_at)
                VALUES (%s, %s, %s, %s, %s, 0, %s)
                """,
                (user_id, type_, title[:160], message[:500], order_id, _now()),
            )
        conn.commit()
        return True
    except Exception:
        logger.exception("User notification insert failed for user %s", user_id)
        try:
            conn.rollback()
        except Exception:
            pass
        return False


def list_admin_notifications(conn, limit: int = 50):
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, type, title, message, order_id, is_read, created_at
            FROM admin_notifications
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (limit,),
        )
        return fetch_dicts(cur)


def admin_unread_count(conn) -> int:
    with conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM admin_notifications WHERE is_read = 0")
        row = cur.fetchone()
    return int(row[0] or 0) if row else 0


def mark_admin_notification_read(conn, notification_id) -> bool:
    with conn.cursor() as cur:
        cur.execute("UPDATE admin_notifications SET is_read = 1 WHERE id = %s", (notification_id,))
        changed = cur.rowcount > 0
    conn.commit()
    return changed


def mark_all_admin_notifications_read(conn) -> int:
    with conn.cursor() as cur:
        cur.execute("UPDATE admin_notifications SET is_read = 1 WHERE is_read = 0")
        changed = cur.rowcount
    conn.commit()
    return changed


def list_user_notifications(conn, user_id, page: int = 1, limit: int = 20, unread_only: bool = False):
    where = "WHERE user_id = %s"
    params = [user_id]
    if unread_only:
        where += " AND is_read = 0"
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT id, type, title, message, order_id, is_read, created_at
            FROM user_notifications
            {where}
            ORDER BY created_at DESC, id DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params) + (limit, (page - 1) * limit),
        )
        rows = fetch_dicts(cur)
        cur.execute("SELECT COUNT(*) FROM user_notifications WHERE user_id = %s AND is_read = 0", (user_id,))
        row = cur.fetchone()
    return rows, int(row[0] or 0) if row else 0


def mark_user_notification_read(conn, user_id, notification_id) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE user_notifications SET is_read = 1 WHERE id = %s AND user_id = %s",
            (notification_id, user_id),
        )
        changed = cur.rowcount > 0
    conn.commit()
    return changed


def mark_all_user_notifications_read(conn, user_id) -> int:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE user_notifications SET is_read = 1 WHERE user_id = %s AND is_read = 0",
            (user_id,),
        )
        changed = cur.rowcount
    conn.commit()
    return changed
