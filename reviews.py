import json
import logging
import os
from datetime import datetime
from urllib.parse import urlparse

from orders import OrderError, fetch_dict, fetch_dicts

logger = logging.getLogger(__name__)

MAX_REVIEW_IMAGES = 5
MAX_REVIEW_LENGTH = 2000
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}


def _phone_digits(phone) -> str:
    digits = "".join(ch for ch in str(phone or "") if ch.isdigit())
    if digits.startswith("880"):
        digits = digits[2:]
    return digits


def _clean_rating(value) -> int:
    if isinstance(value, bool):
        raise OrderError("Rating must be between 1 and 5")
    try:
        rating = int(str(value).strip())
    except (TypeError, ValueError):
        raise OrderError("Rating must be between 1 and 5")
    if rating < 1 or rating > 5:
        raise OrderError("Rating must be between 1 and 5")
    return rating


def _clean_images(images):
    if images in (None, ""):
        return []
    if not isinstance(images, list):
        raise OrderError("Images must be a list of URLs")
    if len(images) > MAX_REVIEW_IMAGES:
        raise OrderError(f"At most {MAX_REVIEW_IMAGES} images per review")
    cleaned = []
    for url in images:
        url = str(url or "").strip()
        extension = os.path.splitext(urlparse(url).path)[1].lower()
        if not url or extension not in IMAGE_EXTENSIONS:
            raise OrderError("Images must be JPG, PNG or WebP")
        cleaned.append(url)
    return cleaned


def _decode(review: dict) -> dict:
    raw = review.get("review_images")
    try:
        review["review_images"] = json.loads(raw) if raw else []
    except ValueError:
        review["review_images"] = []
    return review


def list_reviews(conn, product_id, limit: int = 10, offset: int = 0):
    """Newest reviews for a product plus ``(total, average_rating)``."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT r.id, r.product_id, r.user_id, u.name AS user_name, r.rating,
                   r.review_text, r.review_images, r.created_at
            FROM product_reviews r
            JOIN users u ON u.id = r.user_id
            WHERE r.product_id = %s
            ORDER BY r.created_at DESC, r.id DESC
            LIMIT %s OFFSET %s
            """,
            (product_id, limit, offset),
        )
        rows = [_decode(row) for row in fetch_dicts(cur)]
        cur.execute(
            "SELECT COUNT(*), AVG(rating) FROM product_reviews WHERE product_id = %s",
            (product_id,),
        )
        total, average = cur.fetchone()
    average = round(float(average), 1) if average is not None else None
    return rows, int(total or 0), average


def create_review(conn, user: dict, product_id, order_number, rating, review_text, images=None) -> dict:
    """Store a review from a customer who bought the product.

    The order has to belong to ``user`` by account or by phone, and has to
    contain the product. Each customer reviews a product once.
    """
    order_number = str(order_number or "").strip().upper()
    review_text = str(review_text or "").strip()
    if not product_id or not order_number or not review_text or rating in (None, ""):
        raise OrderError("Missing required fields.")
    rating = _clean_rating(rating)
    if len(review_text) > MAX_REVIEW_LENGTH:
        raise OrderError(f"Review must be at most {MAX_REVIEW_LENGTH} characters")
    images = _clean_images(images)

    with conn.cursor() as cur:
        cur.execute(
            "SELECT id, user_id, customer_phone FROM orders WHERE order_number = %s",
            (order_number,),
        )
        order = fetch_dict(cur)
        owns = order is not None and (
            order.get("user_id") == user["id"]
            or (user.get("phone") and _phone_digits(order.get("customer_phone")) == _phone_digits(user.get("phone")))
        )
        if not owns:
            raise OrderError("Order not found for this account", 403)

        cur.execute(
            "SELECT 1 FROM order_items WHERE order_id = %s AND product_id = %s",
            (order["id"], product_id),
        )
        if not cur.fetchone():
            raise OrderError("This product is not part of the order", 403)

        cur.execute(
            "SELECT id FROM product_reviews WHERE user_id = %s AND product_id = %s",
            (user["id"], product_id),
        )
        if cur.fetchone():
            raise OrderError("You have already reviewed this product", 409)

        now = datetime.now().replace(microsecond=0)
        cur.execute(
            """
            INSERT INTO product_reviews
            (product_id, user_id, order_number, rating, review_text, review_images, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (product_id, user["id"], order_number, rating, review_text, json.dumps(images) if images else None, now),
        )
        review_id = cur.lastrowid
    conn.commit()
    logger.info("Review %s added for product %s by user %s", review_id, product_id, user["id"])
    return {
        "id": review_id,
        "product_id": product_id,
        "user_id": user["id"],
        "user_name": user.get("name"),
        "rating": rating,
        "review_text": review_text,
        "review_images": images,
        "created_at": now,
    }


def delete_review(conn, review_id, user_id, admin: bool = False) -> None:
    with conn.cursor() as cur:
        cur.execute("SELECT id, user_id FROM product_reviews WHERE id = %s", (review_id,))
        review = fetch_dict(cur)
        if not review or (not admin and review["user_id"] != user_id):
            raise OrderError("Review not found", 404)
        cur.execute("DELETE FROM product_reviews WHERE id = %s", (review_id,))
    conn.commit()
