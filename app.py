from flask import *
from werkzeug.exceptions import HTTPException
from urllib.parse import urlparse, parse_qs
import re
import os
import math
import secrets
import hmac
import time
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from functools import wraps
from logging.handlers import RotatingFileHandler
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.middleware.proxy_fix import ProxyFix
import pymysql
from dotenv import load_dotenv

load_dotenv()
import accounts
import assistant
import catalog
import messaging
import notifications
import orders
import reviews
import rewards
import sms
from orders import OrderError, OrderStatus, ORDER_STATUS_LABELS
from pricing import _parse_dt, _to_float, decorate_product, effective_price


app = Flask(__name__)


app.secret_key = os.getenv("FLASK_SECRET_KEY")
if not app.secret_key:
    raise RuntimeError("FLASK_SECRET_KEY is required.")
ADMIN_USERS = {
    name.strip().lower()
    for name in os.getenv("ADMIN_USERS", "").split(",")
    if name.strip()
}

BUSINESS_NAME = os.getenv("BUSINESS_NAME", "Tech Nirvor")
BUSINESS_ADDRESS = os.getenv("BUSINESS_ADDRESS", "Dhaka, Bangladesh")
SUPPORT_PHONE = os.getenv("SUPPORT_PHONE", "01700000000")
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@technirvor.com")
CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "৳")
API_KEY = os.getenv("API_KEY", "").strip()
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
SMS_STATUS_UPDATES_ENABLED = os.getenv("SMS_STATUS_UPDATES_ENABLED", "0") == "1"


def _safe_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


def _safe_int_env(name: str, default: int) -> int:
    return int(_safe_float_env(name, default))


DB_CONNECT_TIMEOUT = _safe_float_env("DB_CONNECT_TIMEOUT", 4.0)
DB_READ_TIMEOUT = _safe_float_env("DB_READ_TIMEOUT", 8.0)
DB_WRITE_TIMEOUT = _safe_float_env("DB_WRITE_TIMEOUT", 8.0)
DB_FAILURE_BACKOFF_SECONDS = _safe_float_env("DB_FAILURE_BACKOFF_SECONDS", 20.0)
ORDER_RATE_LIMIT = _safe_int_env("ORDER_RATE_LIMIT", 100)
ORDER_RATE_WINDOW = _safe_int_env("ORDER_RATE_WINDOW", 60)
ORDER_LIST_MAX_LIMIT = _safe_int_env("ORDER_LIST_MAX_LIMIT", 100)
ADMIN_MAX_LOGIN_ATTEMPTS = _safe_int_env("ADMIN_MAX_LOGIN_ATTEMPTS", 5)
ADMIN_LOCKOUT_MINUTES = _safe_float_env("ADMIN_LOCKOUT_MINUTES", 30)
LOW_STOCK_THRESHOLD = _safe_int_env("LOW_STOCK_THRESHOLD", 5)
REWARD_POINTS_PER_TAKA = _safe_float_env("REWARD_POINTS_PER_TAKA", 0.01)
ASSISTANT_MAX_RETRIES = _safe_int_env("ASSISTANT_MAX_RETRIES", 2)
ASSISTANT_RETRY_DELAY_SECONDS = _safe_float_env("ASSISTANT_RETRY_DELAY_SECONDS", 1.0)
ASSISTANT_TIMEOUT = _safe_float_env("ASSISTANT_TIMEOUT", 20.0)
PASSWORD_RESET_MINUTES = _safe_float_env("PASSWORD_RESET_MINUTES", 60)
CHAT_PRODUCT_LIMIT = 6

app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

os.makedirs(LOG_DIR, exist_ok=True)
log_path = os.path.join(LOG_DIR, "app.log")
handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3)
handler.setLevel(LOG_LEVEL)
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
app.logger.addHandler(handler)
app.logger.setLevel(LOG_LEVEL)
for module_name in ("orders", "notifications", "rewards", "assistant", "sms", "messaging", "reviews", "accounts"):
    logging.getLogger(module_name).addHandler(handler)
    logging.getLogger(module_name).setLevel(LOG_LEVEL)

# (limit, window seconds) per session-facing action; the order API uses ORDER_RATE_*
RATE_LIMITS = {
    "auth_login": (8, 60),
    "auth_register": (6, 60),
    "auth_reset": (5, 300),
    "cart_add": (25, 60),
    "checkout": (5, 60),
    "chat": (20, 60),
    "message": (30, 60),
    "review": (10, 60),
}
_rate_store = {}
_login_attempts = {}

app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["SESSION_COOKIE_SECURE"] = os.getenv("FLASK_SESSION_SECURE", "0") == "1"
remember_days_env = os.getenv("REMEMBER_ME_DAYS", "30")
try:
    remember_days = int(remember_days_env)
except ValueError:
    remember_days = 30
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=remember_days)


def generate_csrf_token():
    token = session.get("_csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["_csrf_token"] = token
    return token


app.jinja_env.globals["csrf_token"] = generate_csrf_token


def _client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def _wants_json():
    return (
        request.path.startswith("/api/")
        or request.path.startswith("/admin/api/")
        or request.is_json
        or request.headers.get("X-Requested-With") == "XMLHttpRequest"
        or "application/json" in request.headers.get("Accept", "")
    )


def _hit_rate_limit(identifier: str, limit: int, window: float) -> bool:
    """Fixed-window counter; True once ``identifier`` exceeds ``limit`` in the window.

    Counts live in this process only, so each gunicorn worker limits on its own.
    """
    now = time.time()
    if len(_rate_store) > 10_000:
        for key in [k for k, v in _rate_store.items() if now - v[0] >= v[2]]:
            _rate_store.pop(key, None)
    started, count, _ = _rate_store.get(identifier, (now, 0, window))
    if now - started >= window:
        started, count = now, 0
    count += 1
    _rate_store[identifier] = (started, count, window)
    return count > limit


def rate_limit(key: str):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
                return view(*args, **kwargs)
            limit, window = RATE_LIMITS.get(key, (10, 60))
            if _hit_rate_limit(f"{key}:{_client_ip()}", limit, window):
                app.logger.warning("Rate limit hit: %s from %s", key, _client_ip())
                return jsonify(error="Too many requests. Please slow down."), 429
            return view(*args, **kwargs)
        return wrapped
    return decorator


def api_key_required(view):
    """x-api-key gate plus the per-caller order API rate limit."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        provided = request.headers.get("x-api-key", "")
        if not API_KEY or not hmac.compare_digest(str(provided), API_KEY):
            app.logger.warning("Invalid API key: %s %s from %s", request.method, request.path, _client_ip())
            return jsonify(error="Invalid API key"), 401
        if _hit_rate_limit(f"{_client_ip()}:{request.path}", ORDER_RATE_LIMIT, ORDER_RATE_WINDOW):
            app.logger.warning("Rate limit exceeded: %s from %s", request.path, _client_ip())
            return jsonify(error="Rate limit exceeded"), 429
        return view(*args, **kwargs)
    return wrapped


@app.before_request
def csrf_protect():
    if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
        return
    if request.path.startswith("/api/"):
        return
    token = (
        request.form.get("csrf_token")
        or request.headers.get("X-CSRF-Token")
        or request.headers.get("X-CSRFToken")
    )
    session_token = session.get("_csrf_token", "")
    if not token or not session_token or not hmac.compare_digest(str(token), str(session_token)):
        app.logger.warning("CSRF blocked: %s %s from %s", request.method, request.path, _client_ip())
        return jsonify(error="Invalid CSRF token. Please refresh the page and try again."), 400


@app.errorhandler(OrderError)
def handle_order_error(exc):
    return jsonify(success=False, error=exc.message), exc.status


@app.errorhandler(Exception)
def handle_exception(exc):
    wants_json = _wants_json()
    if isinstance(exc, HTTPException):
        app.logger.warning("HTTP error %s: %s", exc.code, exc)
        if wants_json:
            return jsonify(
                error=exc.name,
                message=exc.description or "We couldn't complete your request.",
                status=exc.code,
            ), exc.code
        try:
            return (
                render_template(
                    "error.html",
                    title="Something went wrong",
                    message=exc.description or "We couldn't complete your request.",
                    status_code=exc.code,
                ),
                exc.code,
            )
        except Exception:
            return (
                "<h1>Something went wrong</h1><p>Please try again.</p>",
                exc.code,
            )
    app.logger.exception("Unhandled error: %s", exc)
    if wants_json:
        return (
            jsonify(
                error="Internal Server Error",
                message="Service temporarily unavailable. Please try again later.",
                status=500,
            ),
            500,
        )
    try:
        return (
            render_template(
                "error.html",
                title="Failed",
                message="Service temporarily unavailable. Please try again later.",
                status_code=500,
            ),
            500,
        )
    except Exception:
        return "Something went wrong. Please try again.", 500


def _parse_db_url(db_url: str) -> dict:
    parsed = urlparse(db_url)
    if parsed.scheme not in {"mysql", "mariadb"}:
        raise ValueError("Unsupported database URL scheme")
    database = parsed.path.lstrip("/")
    query = parse_qs(parsed.query)
    return {
        "host": parsed.hostname,
        "user": parsed.username,
        "password": parsed.password,
        "database": database,
        "port": parsed.port or 3306,
        "query": query,
    }


_db_connect_block_until = 0.0


def _db_connect_block_remaining_seconds() -> float:
    if DB_FAILURE_BACKOFF_SECONDS <= 0:
        return 0.0
    return max(0.0, _db_connect_block_until - time.monotonic())


def _mark_db_connect_failure() -> None:
    global _db_connect_block_until
    if DB_FAILURE_BACKOFF_SECONDS <= 0:
        return
    _db_connect_block_until = time.monotonic() + DB_FAILURE_BACKOFF_SECONDS


def _clear_db_connect_failure() -> None:
    global _db_connect_block_until
    _db_connect_block_until = 0.0


def db_connect_kwargs() -> dict:
    db_url = os.getenv("DATABASE_URL") or os.getenv("MYSQL_URL") or os.getenv("DB_URL")
    if db_url:
        try:
            cfg = _parse_db_url(db_url)
        except Exception as exc:
            raise RuntimeError(f"Invalid DATABASE_URL/MYSQL_URL: {exc}") from exc
        host = cfg["host"]
        user = cfg["user"]
        password = cfg["password"]
        database = cfg["database"]
        port = int(cfg["port"])
        query = cfg["query"]
    else:
        host = os.getenv("DB_HOST")
        user = os.getenv("DB_USER")
        password = os.getenv("DB_PASSWORD")
        database = os.getenv("DB_NAME")
        port = int(os.getenv("DB_PORT", "3306"))
        query = {}

    if not host:
        raise RuntimeError("Database host is not set (DB_HOST or DATABASE_URL).")

    ssl_disabled = os.getenv("DB_SSL_DISABLED", "0") == "1"
    sslmode = (query.get("sslmode") or [""])[0].lower()
    ssl_query = (query.get("ssl") or [""])[0].lower()
    if sslmode == "disable" or ssl_query in {"0", "false", "no"}:
        ssl_disabled = True

    connect_kwargs = dict(
        host=host,
        user=user,
        password=password,
        database=database,
        port=port,
        charset="utf8mb4",
        connect_timeout=max(1, int(DB_CONNECT_TIMEOUT)),
        read_timeout=max(1, int(DB_READ_TIMEOUT)),
        write_timeout=max(1, int(DB_WRITE_TIMEOUT)),
    )
    if not ssl_disabled:
        connect_kwargs["ssl"] = {"ssl": {}}
    return connect_kwargs


def get_db_connection():
    blocked_for = _db_connect_block_remaining_seconds()
    if blocked_for > 0:
        wait_seconds = int(blocked_for) + 1
        raise RuntimeError(
            f"Database temporarily unavailable. Retry in about {wait_seconds}s."
        )

    connect_kwargs = db_connect_kwargs()
    try:
        conn = pymysql.connect(**connect_kwargs)
        _clear_db_connect_failure()
        return conn
    except pymysql.err.OperationalError:
        _mark_db_connect_failure()
        raise
    except OSError as exc:
        _mark_db_connect_failure()
        raise RuntimeError(
            f"Database connection failed to {connect_kwargs['host']}:{connect_kwargs['port']} ({exc})."
        ) from exc


def _serialize(value):
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return value


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _flag(name: str) -> bool:
    return str(request.args.get(name, "")).strip().lower() in {"1", "true", "yes", "on"}


def _to_bool(value) -> int:
    return 1 if value in (True, 1, "1", "true", "True", "on", "yes") else 0


def _to_int(value, default=None):
    if isinstance(value, bool):
        return default
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _page_args(default_limit: int = 20, max_limit: int = None):
    max_limit = max_limit or ORDER_LIST_MAX_LIMIT
    page = max(1, _to_int(request.args.get("page"), 1) or 1)
    limit = _to_int(request.args.get("limit"), default_limit) or default_limit
    limit = min(max_limit, max(1, limit))
    return page, limit


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get("user_id"):
            return jsonify(error="Authentication required"), 401
        return view(*args, **kwargs)
    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get("is_admin"):
            return jsonify(error="Admin access required"), 401
        return view(*args, **kwargs)
    return wrapped


EMAIL_REGEX = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")


def validate_email_format(email: str) -> bool:
    return bool(email) and bool(EMAIL_REGEX.match(email))


def _normalize_user_name(value) -> str:
    return str(value or "").strip().lower()


def _phone_digits(phone) -> str:
    digits = re.sub(r"\D", "", str(phone or ""))
    if digits.startswith("880"):
        digits = digits[2:]
    return digits


def is_admin_identity(user: dict) -> bool:
    if not user:
        return False
    if user.get("is_admin"):
        return True
    return _normalize_user_name(user.get("email")) in ADMIN_USERS


def _start_user_session(user: dict, admin: bool = None):
    csrf = session.get("_csrf_token")
    cart = session.get("cart")
    session.clear()
    if csrf:
        session["_csrf_token"] = csrf
    if cart:
        session["cart"] = cart
    session.permanent = True
    session["user_id"] = user["id"]
    session["user_name"] = user.get("name") or ""
    session["is_admin"] = is_admin_identity(user) if admin is None else admin


def _public_user(user: dict) -> dict:
    return {
        "id": user["id"],
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "is_admin": bool(session.get("is_admin")),
    }


def _find_user(cur, identifier: str):
    identifier = str(identifier or "").strip()
    if "@" in identifier:
        cur.execute(
            "SELECT id, name, email, phone, password, is_admin FROM users WHERE LOWER(email) = %s",
            (identifier.lower(),),
        )
    else:
        cur.execute(
            "SELECT id, name, email, phone, password, is_admin FROM users WHERE phone = %s",
            (identifier,),
        )
    return orders.fetch_dict(cur)


def verify_password(stored_password, provided_password) -> bool:
    if not stored_password or provided_password is None:
        return False
    try:
        return check_password_hash(stored_password, provided_password)
    except (ValueError, TypeError):
        return False


def _notify_new_order(conn, order, low_stock):
    notifications.notify_new_order(conn, order, CURRENCY_SYMBOL)
    notifications.notify_low_stock(conn, low_stock)
    if order.get("user_id"):
        notifications.notify_user(
            conn,
            order["user_id"],
            "order_placed",
            f"Order {order['order_number']} placed",
            f"We received your order of {CURRENCY_SYMBOL}{float(order['total_amount']):,.2f}.",
            order["id"],
        )


def _after_status_change(conn, result: dict):
    label = ORDER_STATUS_LABELS[OrderStatus(result["status"])]
    if result.get("user_id"):
        notifications.notify_user(
            conn,
            result["user_id"],
            "order_status",
            f"Order {result['order_number']} {label.lower()}",
            result["note"],
            result["id"],
        )
        if result.get("reward_points"):
            notifications.notify_user(
                conn,
                result["user_id"],
                "reward",
                "Reward points earned",
                f"You earned {result['reward_points']} points for order {result['order_number']}.",
                result["id"],
            )
    if SMS_STATUS_UPDATES_ENABLED and result.get("customer_phone"):
        message = sms.build_status_message(
            result["status"],
            result["order_number"],
            result.get("customer_name"),
            BUSINESS_NAME,
            SUPPORT_PHONE,
        )
        sms.send_sms(result["customer_phone"], message)


@app.route("/")
def home():
    return jsonify(name=BUSINESS_NAME, status="ok")


@app.route("/csrf-token")
def csrf_token_view():
    return jsonify(csrf_token=generate_csrf_token())


@app.route("/whoami")
def whoami():
    return jsonify(
        user_id=session.get("user_id"),
        user_name=session.get("user_name"),
        is_admin=bool(session.get("is_admin")),
    )


# Catalog


@app.route("/api/products")
def api_products():
    page, limit = _page_args(20, catalog.MAX_PAGE_SIZE)
    conn = get_db_connection()
    try:
        products, total = catalog.list_products(
            conn,
            category=(request.args.get("category") or "").strip() or None,
            flash_sale=_flag("flash_sale"),
            featured=_flag("featured"),
            search=(request.args.get("search") or "").strip() or None,
            in_stock=_flag("in_stock"),
            page=page,
            limit=limit,
        )
    finally:
        conn.close()
    return jsonify(_serialize({"products": products, "pagination": _pagination(page, limit, total)}))


@app.route("/api/products/<slug>")
def api_product_detail(slug):
    conn = get_db_connection()
    try:
        product = catalog.get_product(conn, slug=slug)
    finally:
        conn.close()
    if not product:
        return jsonify(error="Product not found"), 404
    return jsonify(_serialize({"product": product}))


@app.route("/api/products/validate", methods=["POST"])
def api_validate_products():
    data = _json_body()
    items = data.get("items")
    if not isinstance(items, list) or not items:
        return jsonify(error="No items to validate"), 400
    conn = get_db_connection()
    try:
        report = catalog.validate_cart_items(conn, items)
    finally:
        conn.close()
    return jsonify(_serialize({"valid": all(r["ok"] for r in report), "items": report}))


@app.route("/api/categories")
def api_categories():
    conn = get_db_connection()
    try:
        categories = catalog.list_categories(conn)
    finally:
        conn.close()
    return jsonify(_serialize({"categories": categories}))


@app.route("/api/flash-sale")
def api_flash_sale():
    conn = get_db_connection()
    try:
        products = catalog.flash_sale_products(conn)
    finally:
        conn.close()
    ends = [p["flash_sale_end"] for p in products if p.get("flash_sale_end")]
    return jsonify(_serialize({"products": products, "ends_at": min(ends) if ends else None}))


@app.route("/api/combos")
def api_combos():
    conn = get_db_connection()
    try:
        combos = catalog.list_combos(conn)
    finally:
        conn.close()
    return jsonify(_serialize({"combos": combos}))


@app.route("/api/combos/<slug>")
def api_combo_detail(slug):
    conn = get_db_connection()
    try:
        combo = catalog.get_combo(conn, slug=slug)
    finally:
        conn.close()
    if not combo:
        return jsonify(error="Combo not found"), 404
    return jsonify(_serialize({"combo": combo}))


@app.route("/api/districts")
def api_districts():
    conn = get_db_connection()
    try:
        districts = catalog.list_districts(conn)
    finally:
        conn.close()
    return jsonify(_serialize({"districts": districts}))


# Cart


def _cart_lines(conn, cart: dict):
    products = catalog.get_products_by_ids(conn, [int(pid) for pid in cart])
    lines = []
    subtotal = 0.0
    for pid, qty in cart.items():
        product = products.get(int(pid))
        if not product:
            continue
        unit_price = effective_price(product)
        line_total = round(unit_price * int(qty), 2)
        subtotal += line_total
        lines.append(
            {
                "product_id": int(pid),
                "name": product["name"],
                "slug": product["slug"],
                "image_url": product.get("image_url"),
                "unit_price": unit_price,
                "quantity": int(qty),
                "stock": int(product.get("stock") or 0),
                "line_total": line_total,
            }
        )
    return lines, round(subtotal, 2)


def _cart_response(conn, message=None, level="success"):
    cart = session.get("cart", {})
    lines, subtotal = _cart_lines(conn, cart)
    payload = {
        "ok": True,
        "items": lines,
        "subtotal": subtotal,
        "cart_count": sum(line["quantity"] for line in lines),
    }
    if message:
        payload["message"] = message
        payload["level"] = level
    return jsonify(_serialize(payload))


@app.route("/cart")
def cart():
    conn = get_db_connection()
    try:
        return _cart_response(conn)
    finally:
        conn.close()


@app.route("/cart/add", methods=["POST"])
@rate_limit("cart_add")
def add_to_cart():
    data = _json_body()
    product_id = _to_int(data.get("product_id"))
    qty = _to_int(data.get("quantity"), 1) or 1
    if qty <= 0:
        qty = 1
    if product_id is None:
        return jsonify(error="Product not found."), 404

    conn = get_db_connection()
    try:
        product = catalog.get_product(conn, product_id=product_id)
        if not product:
            return jsonify(error="Product not found."), 404
        stock = int(product.get("stock") or 0)
        if stock <= 0:
            return jsonify(error="This item is currently out of stock."), 409

        cart = session.get("cart", {})  # {"12": 2, "15": 1}
        pid = str(product_id)
        desired = int(cart.get(pid, 0)) + qty
        if desired > stock:
            cart[pid] = stock
            message = f"Only {stock} left in stock. Cart updated."
            level = "warning"
        else:
            cart[pid] = desired
            message = "Added to cart."
            level = "success"
        session["cart"] = cart
        return _cart_response(conn, message, level)
    finally:
        conn.close()


@app.route("/cart/update", methods=["POST"])
def update_cart():
    data = _json_body()
    product_id = _to_int(data.get("product_id"))
    cart = session.get("cart", {})
    pid = str(product_id)
    action = str(data.get("action") or "").strip().lower()

    conn = get_db_connection()
    try:
        product = catalog.get_product(conn, product_id=product_id) if product_id is not None else None
        if not product:
            cart.pop(pid, None)
            session["cart"] = cart
            return jsonify(error="Product not found."), 404
        stock = int(product.get("stock") or 0)
        current = int(cart.get(pid, 0))

        if action == "remove":
            desired = 0
        elif action == "increase":
            desired = current + 1
        elif action == "decrease":
            desired = current - 1
        elif "quantity" in data:
            desired = _to_int(data.get("quantity"))
            if desired is None or desired < 0:
                return jsonify(error="Invalid quantity"), 400
        else:
            return jsonify(error="Invalid cart action"), 400

        message, level = "Cart updated.", "success"
        if desired <= 0:
            cart.pop(pid, None)
            message = "Item removed from cart."
        elif desired > stock:
            if stock <= 0:
                cart.pop(pid, None)
                message, level = "This item is now out of stock.", "warning"
            else:
                cart[pid] = stock
                message, level = f"Only {stock} left in stock.", "warning"
        else:
            cart[pid] = desired
        session["cart"] = cart
        return _cart_response(conn, message, level)
    finally:
        conn.close()


@app.route("/cart/remove", methods=["POST"])
def remove_from_cart():
    data = _json_body()
    cart = session.get("cart", {})
    cart.pop(str(_to_int(data.get("product_id"))), None)
    session["cart"] = cart
    conn = get_db_connection()
    try:
        return _cart_response(conn, "Item removed from cart.")
    finally:
        conn.close()


@app.route("/cart/clear", methods=["POST"])
def clear_cart():
    session.pop("cart", None)
    return jsonify(ok=True, items=[], subtotal=0, cart_count=0, message="Cart cleared.")


@app.route("/checkout/summary")
def checkout_summary():
    district = (request.args.get("district") or "").strip()
    conn = get_db_connection()
    try:
        lines, subtotal = _cart_lines(conn, session.get("cart", {}))
        delivery_charge = 0
        if district:
            with conn.cursor() as cur:
                delivery_charge = orders.get_delivery_charge(cur, district)
    finally:
        conn.close()
    return jsonify(
        _serialize(
            {
                "items": lines,
                "subtotal": subtotal,
                "district": district or None,
                "delivery_charge": delivery_charge,
                "total": round(subtotal + delivery_charge, 2),
            }
        )
    )


@app.route("/checkout", methods=["POST"])
@rate_limit("checkout")
def checkout():
    data = _json_body()
    cart = session.get("cart", {})
    if not cart:
        return jsonify(error="Your cart is empty"), 400

    user_id = session.get("user_id")
    coupon_code = str(data.get("coupon_code") or "").strip()
    if coupon_code and not user_id:
        return jsonify(error="Sign in to use coupons"), 401

    conn = get_db_connection()
    try:
        lines, _ = _cart_lines(conn, cart)
        if not lines:
            session.pop("cart", None)
            return jsonify(error="No items in order"), 400
        items = [
            {"product_id": line["product_id"], "quantity": line["quantity"], "price": line["unit_price"]}
            for line in lines
        ]
        subtotal = orders.items_subtotal(items)
        district = str(data.get("district") or "").strip()
        with conn.cursor() as cur:
            delivery_charge = orders.get_delivery_charge(cur, district) if district else 0

        coupon = None
        if coupon_code:
            coupon = rewards.evaluate_coupon(conn, user_id, coupon_code, subtotal, CURRENCY_SYMBOL)

        discount = coupon["discount_amount"] if coupon else 0
        payload = {
            "customer_name": data.get("customer_name"),
            "customer_phone": data.get("customer_phone"),
            "district": district,
            "address": data.get("address"),
            "payment_method": data.get("payment_method"),
            "items": items,
            "total_amount": round(subtotal + delivery_charge - discount, 2),
        }
        order = orders.place_order(
            conn,
            payload,
            user_id=user_id,
            coupon=coupon,
            low_stock_threshold=LOW_STOCK_THRESHOLD,
            notify=_notify_new_order,
        )
    finally:
        conn.close()

    session.pop("cart", None)
    return jsonify(_serialize({"success": True, "order": order}))


# Orders API


@app.route("/api/orders", methods=["POST"])
@api_key_required
def api_create_order():
    data = request.get_json(silent=True)
    conn = get_db_connection()
    try:
        order = orders.place_order(
            conn,
            data,
            low_stock_threshold=LOW_STOCK_THRESHOLD,
            notify=_notify_new_order,
        )
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "order": order}))


def _order_listing(user_id=None):
    page, limit = _page_args()
    status = (request.args.get("status") or "").strip().lower() or None
    search = (request.args.get("search") or "").strip() or None
    conn = get_db_connection()
    try:
        rows, total = orders.list_orders(conn, page, limit, status, search, user_id)
    finally:
        conn.close()
    return jsonify(_serialize({"orders": rows, "pagination": _pagination(page, limit, total)}))


@app.route("/api/orders", methods=["GET"])
@api_key_required
def api_list_orders():
    return _order_listing()


@app.route("/api/orders/<order_number>")
@api_key_required
def api_order_detail(order_number):
    conn = get_db_connection()
    try:
        order = orders.get_order(conn, order_number=order_number.strip().upper())
    finally:
        conn.close()
    if not order:
        return jsonify(error="Order not found"), 404
    return jsonify(_serialize({"order": order}))


@app.route("/track-order")
def track_order():
    order_number = (request.args.get("order_number") or "").strip().upper()
    phone = (request.args.get("phone") or "").strip()
    if not order_number or not phone:
        return jsonify(error="Order number and phone are required"), 400
    conn = get_db_connection()
    try:
        order = orders.get_order(conn, order_number=order_number)
    finally:
        conn.close()
    if not order or _phone_digits(order["customer_phone"]) != _phone_digits(phone):
        return jsonify(error="Order not found"), 404
    return jsonify(
        _serialize(
            {
                "order": {
                    "order_number": order["order_number"],
                    "status": order["status"],
                    "status_label": ORDER_STATUS_LABELS[OrderStatus(order["status"])],
                    "customer_name": order["customer_name"],
                    "district": order["district"],
                    "total_amount": order["total_amount"],
                    "created_at": order["created_at"],
                    "items": order["items"],
                    "tracking_notes": order["tracking_notes"],
                }
            }
        )
    )


@app.route("/my-orders")
@login_required
def my_orders():
    return _order_listing(user_id=session["user_id"])


# Chat assistant


def _chat_product(product: dict) -> dict:
    return {
        "id": product["id"],
        "name": product["name"],
        "slug": product["slug"],
        "price": product["price"],
        "effective_price": product.get("effective_price"),
        "discount_percent": product.get("discount_percent", 0),
        "image_url": product.get("image_url"),
        "stock": product.get("stock"),
    }


def _dispatch_chat(conn, reply: dict) -> dict:
    kind = reply["type"]
    if kind == "text":
        return {"type": "text", "message": reply["message"]}

    if kind == "order_tracking":
        number = str(reply.get("order_number") or "").strip().upper()
        if not number:
            return {
                "type": "order_tracking",
                "message": "Please share your order number (for example TN-DH-123456) and I'll check it for you.",
            }
        order = orders.get_order(conn, order_number=number)
        if not order:
            return {"type": "order_tracking", "message": f"I couldn't find an order with number {number}."}
        label = ORDER_STATUS_LABELS[OrderStatus(order["status"])]
        return {
            "type": "order_tracking",
            "message": f"Order {number} is currently {label}.",
            "order": {
                "order_number": order["order_number"],
                "status": order["status"],
                "status_label": label,
                "total_amount": order["total_amount"],
                "created_at": order["created_at"],
            },
        }

    if kind == "product_search":
        query = str(reply["query"]).strip()
        products = catalog.search_products(conn, query, CHAT_PRODUCT_LIMIT)
        found = f'Here is what I found for "{query}".'
        missing = f'Sorry, I could not find any products for "{query}".'
        payload = {"type": kind, "query": query}
    elif kind == "category_search":
        category = str(reply["category"]).strip()
        products = catalog.products_by_category(conn, category, CHAT_PRODUCT_LIMIT)
        found = f"Here are some products from {category}."
        missing = f"Sorry, there are no products in {category} right now."
        payload = {"type": kind, "category": category}
    elif kind == "recommendations":
        products = catalog.featured_products(conn, CHAT_PRODUCT_LIMIT)
        found = "Here are some products our customers love."
        missing = "I don't have any recommendations right now. Please check back soon."
        payload = {"type": kind}
    else:
        products = catalog.flash_sale_products(conn, limit=CHAT_PRODUCT_LIMIT)
        found = "These flash-sale deals are live right now."
        missing = "There is no flash sale running right now."
        payload = {"type": kind}

    payload["products"] = [_chat_product(p) for p in products]
    payload["message"] = found if products else missing
    return payload


@app.route("/api/chat", methods=["POST"])
@rate_limit("chat")
def api_chat():
    data = _json_body()
    message = str(data.get("message") or "").strip()
    if not message:
        return jsonify(error="Message is required"), 400

    if not GEMINI_API_KEY:
        app.logger.warning("Chat requested but GEMINI_API_KEY is not set")
        return jsonify(type="text", message=assistant.FALLBACK_MESSAGE, fallback=True)

    try:
        text = assistant.generate_reply(
            data.get("history") or [],
            message,
            GEMINI_API_KEY,
            model=GEMINI_MODEL,
            max_retries=ASSISTANT_MAX_RETRIES,
            retry_delay=ASSISTANT_RETRY_DELAY_SECONDS,
            timeout=ASSISTANT_TIMEOUT,
        )
    except assistant.AssistantUnavailable:
        return jsonify(type="text", message=assistant.FALLBACK_MESSAGE, fallback=True)
    except assistant.AssistantError:
        return jsonify(error="Failed to generate content"), 502

    reply = assistant.parse_reply(text)
    if reply is None:
        return jsonify(type="text", message=assistant.UNREADABLE_MESSAGE)

    conn = get_db_connection()
    try:
        payload = _dispatch_chat(conn, reply)
    finally:
        conn.close()
    return jsonify(_serialize(payload))


# Accounts


@app.route("/auth/register", methods=["POST"])
@rate_limit("auth_register")
def register():
    data = _json_body()
    name = str(data.get("name") or "").strip()
    phone = str(data.get("phone") or "").strip()
    email = str(data.get("email") or "").strip().lower() or None
    password = str(data.get("password") or "")

    if not name or not phone or not password:
        return jsonify(error="Name, phone and password are required"), 400
    if not orders.is_valid_bd_phone(phone):
        return jsonify(error="Invalid phone number"), 400
    if email and not validate_email_format(email):
        return jsonify(error="Invalid email address"), 400
    if len(password) < 8:
        return jsonify(error="Password must be at least 8 characters"), 400

    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM users WHERE phone = %s", (phone,))
            if cur.fetchone():
                return jsonify(error="An account with this phone already exists"), 409
            if email:
                cur.execute("SELECT id FROM users WHERE LOWER(email) = %s", (email,))
                if cur.fetchone():
                    return jsonify(error="An account with this email already exists"), 409
            cur.execute(
                """
                INSERT INTO users (name, email, phone, password, is_admin, created_at)
                VALUES (%s, %s, %s, %s, 0, %s)
                """,
                (name[:120], email, phone, generate_password_hash(password), datetime.now().replace(microsecond=0)),
            )
            user = {"id": cur.lastrowid, "name": name, "email": email, "phone": phone, "is_admin": 0}
        conn.commit()
    finally:
        conn.close()

    _start_user_session(user)
    app.logger.info("User %s registered", user["id"])
    return jsonify(success=True, user=_public_user(user)), 201


@app.route("/auth/login", methods=["POST"])
@rate_limit("auth_login")
def login():
    data = _json_body()
    identifier = str(data.get("identifier") or data.get("phone") or data.get("email") or "").strip()
    password = str(data.get("password") or "")
    if not identifier or not password:
        return jsonify(error="Phone or email and password are required"), 400

    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            user = _find_user(cur, identifier)
    finally:
        conn.close()

    if not user or not verify_password(user.get("password"), password):
        app.logger.warning("Failed login for %s from %s", identifier, _client_ip())
        return jsonify(error="Invalid credentials"), 401
    _start_user_session(user)
    return jsonify(success=True, user=_public_user(user))


@app.route("/auth/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify(success=True)


@app.route("/auth/forgot-password", methods=["POST"])
@rate_limit("auth_reset")
def forgot_password():
    data = _json_body()
    identifier = str(data.get("identifier") or data.get("phone") or data.get("email") or "").strip()
    if not identifier:
        return jsonify(error="Phone or email is required"), 400

    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            user = _find_user(cur, identifier)
        if user and user.get("phone"):
            token = accounts.create_reset_token(conn, user["id"], PASSWORD_RESET_MINUTES)
            sms.send_sms(
                user["phone"],
                f"{BUSINESS_NAME}: your password reset code is {token}. "
                f"It expires in {int(PASSWORD_RESET_MINUTES)} minutes.",
            )
            app.logger.info("Password reset requested for user %s", user["id"])
    finally:
        conn.close()
    # same answer whether or not the account exists
    return jsonify(success=True, message="If the account exists, a reset code has been sent by SMS.")


@app.route("/auth/reset-password", methods=["POST"])
@rate_limit("auth_reset")
def reset_password():
    data = _json_body()
    conn = get_db_connection()
    try:
        accounts.reset_password(conn, data.get("token"), data.get("password"))
    finally:
        conn.close()
    return jsonify(success=True, message="Password updated. Please sign in.")


@app.route("/api/user/profile")
@login_required
def user_profile():
    conn = get_db_connection()
    try:
        profile = accounts.get_profile(conn, session["user_id"])
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "user": profile}))


@app.route("/api/user/profile", methods=["PUT", "PATCH"])
@login_required
def update_user_profile():
    conn = get_db_connection()
    try:
        profile = accounts.update_profile(conn, session["user_id"], _json_body())
    finally:
        conn.close()
    session["user_name"] = profile.get("name") or ""
    return jsonify(_serialize({"success": True, "user": profile}))


@app.route("/api/user/addresses")
@login_required
def user_addresses():
    conn = get_db_connection()
    try:
        addresses = accounts.list_addresses(conn, session["user_id"])
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "addresses": addresses}))


@app.route("/api/user/addresses", methods=["POST"])
@login_required
def create_user_address():
    conn = get_db_connection()
    try:
        address = accounts.create_address(conn, session["user_id"], _json_body())
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "address": address})), 201


@app.route("/api/user/addresses/<int:address_id>", methods=["PUT", "PATCH"])
@login_required
def update_user_address(address_id):
    conn = get_db_connection()
    try:
        address = accounts.update_address(conn, session["user_id"], address_id, _json_body())
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "address": address}))


@app.route("/api/user/addresses/<int:address_id>", methods=["DELETE"])
@login_required
def delete_user_address(address_id):
    conn = get_db_connection()
    try:
        accounts.delete_address(conn, session["user_id"], address_id)
    finally:
        conn.close()
    return jsonify(success=True)


@app.route("/api/user/dashboard")
@login_required
def user_dashboard():
    conn = get_db_connection()
    try:
        dashboard = rewards.user_dashboard(conn, session["user_id"])
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "data": dashboard}))


@app.route("/api/notifications")
@login_required
def user_notifications():
    page, limit = _page_args(20, 50)
    conn = get_db_connection()
    try:
        rows, unread = notifications.list_user_notifications(
            conn, session["user_id"], page, limit, _flag("unread_only")
        )
    finally:
        conn.close()
    return jsonify(_serialize({"notifications": rows, "unread_count": unread}))


@app.route("/api/notifications/<int:notification_id>/read", methods=["POST"])
@login_required
def user_notification_read(notification_id):
    conn = get_db_connection()
    try:
        changed = notifications.mark_user_notification_read(conn, session["user_id"], notification_id)
    finally:
        conn.close()
    if not changed:
        return jsonify(error="Notification not found"), 404
    return jsonify(success=True)


@app.route("/api/notifications/read-all", methods=["POST"])
@login_required
def user_notifications_read_all():
    conn = get_db_connection()
    try:
        changed = notifications.mark_all_user_notifications_read(conn, session["user_id"])
    finally:
        conn.close()
    return jsonify(success=True, updated=changed)


@app.route("/api/coupons")
@login_required
def user_coupons():
    conn = get_db_connection()
    try:
        coupons = rewards.list_user_coupons(conn, session["user_id"])
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "coupons": coupons}))


@app.route("/api/coupons/apply", methods=["POST"])
@login_required
def apply_coupon():
    data = _json_body()
    conn = get_db_connection()
    try:
        coupon = rewards.evaluate_coupon(
            conn,
            session["user_id"],
            data.get("coupon_code"),
            data.get("order_total"),
            CURRENCY_SYMBOL,
        )
    finally:
        conn.close()
    return jsonify(
        _serialize(
            {
                "success": True,
                "data": {
                    "discount_amount": coupon["discount_amount"],
                    "final_total": coupon["final_total"],
                    "coupon": {
                        "id": coupon["id"],
                        "code": coupon["code"],
                        "discount_type": coupon["discount_type"],
                        "discount_value": coupon["discount_value"],
                    },
                },
            }
        )
    )


# Reviews


@app.route("/api/reviews")
def api_reviews():
    product_id = _to_int(request.args.get("product_id") or request.args.get("productId"))
    if not product_id:
        return jsonify(error="product_id is required"), 400
    limit = min(50, max(1, _to_int(request.args.get("limit"), 10) or 10))
    offset = max(0, _to_int(request.args.get("offset"), 0) or 0)
    conn = get_db_connection()
    try:
        rows, total, average = reviews.list_reviews(conn, product_id, limit, offset)
    finally:
        conn.close()
    return jsonify(
        _serialize(
            {
                "reviews": rows,
                "average_rating": average,
                "pagination": {
                    "total": total,
                    "limit": limit,
                    "offset": offset,
                    "hasMore": offset + len(rows) < total,
                },
            }
        )
    )


@app.route("/api/reviews", methods=["POST"])
@login_required
@rate_limit("review")
def api_create_review():
    data = _json_body()
    conn = get_db_connection()
    try:
        user = accounts.get_profile(conn, session["user_id"])
        review = reviews.create_review(
            conn,
            user,
            _to_int(data.get("product_id") or data.get("productId")),
            data.get("order_number") or data.get("orderNumber"),
            data.get("rating"),
            data.get("review_text") or data.get("reviewText"),
            data.get("images") or data.get("reviewImages"),
        )
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "review": review})), 201


@app.route("/api/reviews/<int:review_id>", methods=["DELETE"])
@login_required
def api_delete_review(review_id):
    conn = get_db_connection()
    try:
        reviews.delete_review(conn, review_id, session["user_id"], bool(session.get("is_admin")))
    finally:
        conn.close()
    return jsonify(success=True)


# Support messages


def _load_conversation(conn, conversation_id):
    if not conversation_id:
        raise OrderError("conversation_id is required")
    return messaging.get_conversation(conn, conversation_id, session["user_id"], bool(session.get("is_admin")))


def _open_conversation(conn, data: dict):
    """The caller's thread, or for admins the thread of ``user_id``; second value is True when new."""
    if session.get("is_admin"):
        customer_id = _to_int(data.get("user_id") or data.get("recipient_id"))
        if not customer_id:
            raise OrderError("user_id is required")
    else:
        customer_id = session["user_id"]
    return messaging.start_conversation(conn, customer_id)


@app.route("/api/conversations")
@login_required
def api_conversations():
    page, limit = _page_args(20, 50)
    conn = get_db_connection()
    try:
        rows, total = messaging.list_conversations(
            conn, session["user_id"], bool(session.get("is_admin")), page, limit
        )
    finally:
        conn.close()
    return jsonify(_serialize({"conversations": rows, "pagination": _pagination(page, limit, total)}))


@app.route("/api/conversations", methods=["POST"])
@login_required
@rate_limit("message")
def api_start_conversation():
    data = _json_body()
    text = data.get("message") or data.get("initial_message")
    conn = get_db_connection()
    try:
        conversation, created = _open_conversation(conn, data)
        if text:
            messaging.send_message(
                conn, conversation, session["user_id"], text, bool(session.get("is_admin"))
            )
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "conversation": conversation})), 201 if created else 200


@app.route("/api/conversations/<int:conversation_id>", methods=["DELETE"])
@login_required
def api_delete_conversation(conversation_id):
    conn = get_db_connection()
    try:
        conversation = _load_conversation(conn, conversation_id)
        messaging.delete_conversation(conn, conversation)
    finally:
        conn.close()
    return jsonify(success=True)


@app.route("/api/messages")
@login_required
def api_messages():
    page, limit = _page_args(50, 100)
    conn = get_db_connection()
    try:
        conversation = _load_conversation(conn, _to_int(request.args.get("conversation_id")))
        rows, total = messaging.list_messages(conn, conversation, bool(session.get("is_admin")), page, limit)
    finally:
        conn.close()
    return jsonify(
        _serialize(
            {
                "conversation": conversation,
                "messages": rows,
                "pagination": _pagination(page, limit, total),
            }
        )
    )


@app.route("/api/messages", methods=["POST"])
@login_required
@rate_limit("message")
def api_send_message():
    data = _json_body()
    if not str(data.get("content") or "").strip():
        return jsonify(error="Message content is required"), 400
    conn = get_db_connection()
    try:
        conversation_id = _to_int(data.get("conversation_id"))
        if conversation_id:
            conversation = _load_conversation(conn, conversation_id)
        else:
            conversation, _ = _open_conversation(conn, data)
        message = messaging.send_message(
            conn, conversation, session["user_id"], data.get("content"), bool(session.get("is_admin"))
        )
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "data": message})), 201


@app.route("/api/messages/read", methods=["POST"])
@login_required
def api_messages_read():
    data = _json_body()
    conn = get_db_connection()
    try:
        conversation = _load_conversation(conn, _to_int(data.get("conversation_id")))
        changed = messaging.mark_read(conn, conversation, bool(session.get("is_admin")))
    finally:
        conn.close()
    return jsonify(success=True, updated=changed)


# Admin


def _lockout_remaining(ip: str) -> float:
    entry = _login_attempts.get(ip)
    if not entry:
        return 0.0
    elapsed = time.time() - entry["last"]
    window = ADMIN_LOCKOUT_MINUTES * 60
    if elapsed >= window:
        _login_attempts.pop(ip, None)
        return 0.0
    if entry["count"] >= ADMIN_MAX_LOGIN_ATTEMPTS:
        return window - elapsed
    return 0.0


def _record_failed_login(ip: str) -> int:
    entry = _login_attempts.setdefault(ip, {"count": 0, "last": 0.0})
    entry["count"] += 1
    entry["last"] = time.time()
    return entry["count"]


@app.route("/admin/login", methods=["POST"])
def admin_login():
    ip = _client_ip()
    remaining = _lockout_remaining(ip)
    if remaining > 0:
        minutes = int(math.ceil(remaining / 60))
        app.logger.warning("Admin login blocked for %s (locked %s more minutes)", ip, minutes)
        return jsonify(error=f"Too many failed attempts. Try again in {minutes} minutes."), 429

    data = _json_body()
    identifier = str(data.get("identifier") or data.get("email") or "").strip()
    password = str(data.get("password") or "")
    if not identifier or not password:
        return jsonify(error="Email and password are required"), 400

    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            user = _find_user(cur, identifier)
    finally:
        conn.close()

    if not user or not verify_password(user.get("password"), password) or not is_admin_identity(user):
        attempts = _record_failed_login(ip)
        app.logger.warning("Admin login failed for %s from %s (%s attempts)", identifier, ip, attempts)
        return jsonify(error="Invalid admin credentials"), 401

    _login_attempts.pop(ip, None)
    _start_user_session(user, admin=True)
    app.logger.info("Admin %s signed in from %s", user["id"], ip)
    return jsonify(success=True, user=_public_user(user))


@app.route("/admin/logout", methods=["POST"])
def admin_logout():
    session.clear()
    return jsonify(success=True)


def _insert_row(cur, table: str, fields: dict) -> int:
    columns = ", ".join(fields)
    placeholders = ", ".join(["%s"] * len(fields))
    cur.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(fields.values()))
    return cur.lastrowid


def _update_row(cur, table: str, row_id, fields: dict) -> None:
    if not fields:
        return
    assignments = ", ".join(f"{column} = %s" for column in fields)
    cur.execute(f"UPDATE {table} SET {assignments} WHERE id = %s", tuple(fields.values()) + (row_id,))


def _row_exists(cur, table: str, row_id) -> bool:
    cur.execute(f"SELECT 1 FROM {table} WHERE id = %s", (row_id,))
    return cur.fetchone() is not None


def _slug_taken(cur, table: str, slug: str, exclude_id=None) -> bool:
    if exclude_id is None:
        cur.execute(f"SELECT 1 FROM {table} WHERE slug = %s", (slug,))
    else:
        cur.execute(f"SELECT 1 FROM {table} WHERE slug = %s AND id <> %s", (slug, exclude_id))
    return cur.fetchone() is not None


def _clean_product(cur, data: dict, partial: bool = False):
    clean = {}
    if not partial or "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            return None, "Product name is required"
        clean["name"] = name[:255]
    if data.get("slug") or not partial:
        slug = catalog.slugify(data.get("slug") or clean.get("name"))
        if not slug:
            return None, "Invalid slug"
        clean["slug"] = slug
    if not partial or "price" in data:
        price = _to_float(data.get("price"), -1)
        if price < 0:
            return None, "Price must be a non-negative number"
        clean["price"] = round(price, 2)
    if "sale_price" in data:
        raw = data.get("sale_price")
        if raw is None or raw == "":
            clean["sale_price"] = None
        else:
            sale_price = _to_float(raw, -1)
            if sale_price < 0:
                return None, "Sale price must be a non-negative number"
            clean["sale_price"] = round(sale_price, 2)
    if not partial or "stock" in data:
        stock = _to_int(data.get("stock", 0))
        if stock is None or stock < 0:
            return None, "Stock must be a non-negative integer"
        clean["stock"] = stock
    if "category_id" in data:
        raw = data.get("category_id")
        if raw is None or raw == "":
            clean["category_id"] = None
        else:
            category_id = _to_int(raw)
            if category_id is None or not _row_exists(cur, "categories", category_id):
                return None, "Category not found"
            clean["category_id"] = category_id
    if "is_featured" in data:
        clean["is_featured"] = _to_bool(data.get("is_featured"))
    for field in ("description", "image_url"):
        if field in data:
            clean[field] = str(data.get(field) or "").strip() or None
    return clean, None


@app.route("/admin/api/products")
@admin_required
def admin_products():
    page, limit = _page_args(20, catalog.MAX_PAGE_SIZE)
    conn = get_db_connection()
    try:
        products, total = catalog.list_products(
            conn,
            category=(request.args.get("category") or "").strip() or None,
            search=(request.args.get("search") or "").strip() or None,
            page=page,
            limit=limit,
        )
    finally:
        conn.close()
    return jsonify(_serialize({"products": products, "pagination": _pagination(page, limit, total)}))


@app.route("/admin/api/products", methods=["POST"])
@admin_required
def admin_create_product():
    data = _json_body()
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            clean, error = _clean_product(cur, data)
            if error:
                return jsonify(error=error), 400
            if _slug_taken(cur, "products", clean["slug"]):
                return jsonify(error="A product with this slug already exists"), 409
            now = datetime.now().replace(microsecond=0)
            clean["created_at"] = now
            clean["updated_at"] = now
            product_id = _insert_row(cur, "products", clean)
        conn.commit()
        product = catalog.get_product(conn, product_id=product_id)
    finally:
        conn.close()
    app.logger.info("Product %s created", product_id)
    return jsonify(_serialize({"success": True, "product": product})), 201


@app.route("/admin/api/products/<int:product_id>", methods=["PUT", "PATCH"])
@admin_required
def admin_update_product(product_id):
    data = _json_body()
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            if not _row_exists(cur, "products", product_id):
                return jsonify(error="Product not found"), 404
            clean, error = _clean_product(cur, data, partial=True)
            if error:
                return jsonify(error=error), 400
            if "slug" in clean and _slug_taken(cur, "products", clean["slug"], product_id):
                return jsonify(error="A product with this slug already exists"), 409
            clean["updated_at"] = datetime.now().replace(microsecond=0)
            _update_row(cur, "products", product_id, clean)
        conn.commit()
        product = catalog.get_product(conn, product_id=product_id)
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "product": product}))


@app.route("/admin/api/products/<int:product_id>", methods=["DELETE"])
@admin_required
def admin_delete_product(product_id):
    conn = get_db_connection()
    try:
        conn.begin()
        with conn.cursor() as cur:
            cur.execute("DELETE FROM combo_items WHERE product_id = %s", (product_id,))
            cur.execute("DELETE FROM products WHERE id = %s", (product_id,))
            deleted = cur.rowcount > 0
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    if not deleted:
        return jsonify(error="Product not found"), 404
    return jsonify(success=True)


def _clean_category(data: dict, partial: bool = False):
    clean = {}
    if not partial or "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            return None, "Category name is required"
        clean["name"] = name[:120]
    if data.get("slug") or not partial:
        slug = catalog.slugify(data.get("slug") or clean.get("name"))
        if not slug:
            return None, "Invalid slug"
        clean["slug"] = slug
    for field in ("description", "image_url"):
        if field in data:
            clean[field] = str(data.get(field) or "").strip() or None
    return clean, None


@app.route("/admin/api/categories")
@admin_required
def admin_categories():
    conn = get_db_connection()
    try:
        categories = catalog.list_categories(conn)
    finally:
        conn.close()
    return jsonify(_serialize({"categories": categories}))


@app.route("/admin/api/categories", methods=["POST"])
@admin_required
def admin_create_category():
    clean, error = _clean_category(_json_body())
    if error:
        return jsonify(error=error), 400
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            if _slug_taken(cur, "categories", clean["slug"]):
                return jsonify(error="A category with this slug already exists"), 409
            clean["created_at"] = datetime.now().replace(microsecond=0)
            clean["id"] = _insert_row(cur, "categories", clean)
        conn.commit()
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "category": clean})), 201


@app.route("/admin/api/categories/<int:category_id>", methods=["PUT", "PATCH"])
@admin_required
def admin_update_category(category_id):
    clean, error = _clean_category(_json_body(), partial=True)
    if error:
        return jsonify(error=error), 400
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            if not _row_exists(cur, "categories", category_id):
                return jsonify(error="Category not found"), 404
            if "slug" in clean and _slug_taken(cur, "categories", clean["slug"], category_id):
                return jsonify(error="A category with this slug already exists"), 409
            _update_row(cur, "categories", category_id, clean)
        conn.commit()
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "category": dict(clean, id=category_id)}))


@app.route("/admin/api/categories/<int:category_id>", methods=["DELETE"])
@admin_required
def admin_delete_category(category_id):
    conn = get_db_connection()
    try:
        conn.begin()
        with conn.cursor() as cur:
            cur.execute("UPDATE products SET category_id = NULL WHERE category_id = %s", (category_id,))
            cur.execute("DELETE FROM categories WHERE id = %s", (category_id,))
            deleted = cur.rowcount > 0
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    if not deleted:
        return jsonify(error="Category not found"), 404
    return jsonify(success=True)


def _clean_district(data: dict, partial: bool = False):
    clean = {}
    if not partial or "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            return None, "District name is required"
        clean["name"] = name[:80]
    if not partial or "delivery_charge" in data:
        charge = data.get("delivery_charge")
        if isinstance(charge, float) and charge.is_integer():
            charge = int(charge)
        charge = _to_int(charge)
        if charge is None or charge < 0:
            return None, "Delivery charge must be a non-negative integer"
        clean["delivery_charge"] = charge
    if "is_active" in data:
        clean["is_active"] = _to_bool(data.get("is_active"))
    return clean, None


def _district_name_taken(cur, name: str, exclude_id=None) -> bool:
    if exclude_id is None:
        cur.execute("SELECT 1 FROM districts WHERE LOWER(name) = LOWER(%s)", (name,))
    else:
        cur.execute("SELECT 1 FROM districts WHERE LOWER(name) = LOWER(%s) AND id <> %s", (name, exclude_id))
    return cur.fetchone() is not None


@app.route("/admin/api/districts")
@admin_required
def admin_districts():
    conn = get_db_connection()
    try:
        districts = catalog.list_districts(conn, active_only=False)
    finally:
        conn.close()
    return jsonify(_serialize({"districts": districts}))


@app.route("/admin/api/districts", methods=["POST"])
@admin_required
def admin_create_district():
    clean, error = _clean_district(_json_body())
    if error:
        return jsonify(error=error), 400
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            if _district_name_taken(cur, clean["name"]):
                return jsonify(error="District already exists"), 409
            clean.setdefault("is_active", 1)
            clean["created_at"] = datetime.now().replace(microsecond=0)
            clean["id"] = _insert_row(cur, "districts", clean)
        conn.commit()
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "district": clean})), 201


@app.route("/admin/api/districts/<int:district_id>", methods=["PUT", "PATCH"])
@admin_required
def admin_update_district(district_id):
    clean, error = _clean_district(_json_body(), partial=True)
    if error:
        return jsonify(error=error), 400
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            if not _row_exists(cur, "districts", district_id):
                return jsonify(error="District not found"), 404
            if "name" in clean and _district_name_taken(cur, clean["name"], district_id):
                return jsonify(error="District already exists"), 409
            _update_row(cur, "districts", district_id, clean)
        conn.commit()
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "district": dict(clean, id=district_id)}))


@app.route("/admin/api/districts/<int:district_id>", methods=["DELETE"])
@admin_required
def admin_delete_district(district_id):
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM districts WHERE id = %s", (district_id,))
            deleted = cur.rowcount > 0
        conn.commit()
    finally:
        conn.close()
    if not deleted:
        return jsonify(error="District not found"), 404
    return jsonify(success=True)


def _clean_combo(cur, data: dict, partial: bool = False):
    clean = {}
    if not partial or "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            return None, None, "Combo name is required"
        clean["name"] = name[:255]
    if data.get("slug") or not partial:
        slug = catalog.slugify(data.get("slug") or clean.get("name"))
        if not slug:
            return None, None, "Invalid slug"
        clean["slug"] = slug
    if not partial or "combo_price" in data:
        price = _to_float(data.get("combo_price"), -1)
        if price <= 0:
            return None, None, "Combo price must be a positive number"
        clean["combo_price"] = round(price, 2)
    for field in ("description", "image_url"):
        if field in data:
            clean[field] = str(data.get(field) or "").strip() or None
    if "is_active" in data:
        clean["is_active"] = _to_bool(data.get("is_active"))

    items = None
    if not partial or "items" in data:
        raw_items = data.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            return None, None, "A combo needs at least one product"
        items = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                return None, None, "Invalid combo item"
            product_id = _to_int(raw.get("product_id"))
            quantity = _to_int(raw.get("quantity", 1))
            if product_id is None or quantity is None or quantity <= 0:
                return None, None, "Invalid combo item"
            if not _row_exists(cur, "products", product_id):
                return None, None, f"Product(s) not found: {product_id}"
            items.append((product_id, quantity))
    return clean, items, None


def _replace_combo_items(cur, combo_id, items):
    cur.execute("DELETE FROM combo_items WHERE combo_id = %s", (combo_id,))
    for product_id, quantity in items:
        cur.execute(
            "INSERT INTO combo_items (combo_id, product_id, quantity) VALUES (%s, %s, %s)",
            (combo_id, product_id, quantity),
        )


@app.route("/admin/api/combos")
@admin_required
def admin_combos():
    conn = get_db_connection()
    try:
        combos = catalog.list_combos(conn, active_only=False)
    finally:
        conn.close()
    return jsonify(_serialize({"combos": combos}))


@app.route("/admin/api/combos", methods=["POST"])
@admin_required
def admin_create_combo():
    data = _json_body()
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            clean, items, error = _clean_combo(cur, data)
            if error:
                return jsonify(error=error), 400
            if _slug_taken(cur, "combo_products", clean["slug"]):
                return jsonify(error="A combo with this slug already exists"), 409
        conn.commit()
        conn.begin()
        try:
            with conn.cursor() as cur:
                clean.setdefault("is_active", 1)
                clean["created_at"] = datetime.now().replace(microsecond=0)
                combo_id = _insert_row(cur, "combo_products", clean)
                _replace_combo_items(cur, combo_id, items)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        combo = catalog.get_combo(conn, combo_id=combo_id, active_only=False)
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "combo": combo})), 201


@app.route("/admin/api/combos/<int:combo_id>", methods=["PUT", "PATCH"])
@admin_required
def admin_update_combo(combo_id):
    data = _json_body()
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            if not _row_exists(cur, "combo_products", combo_id):
                return jsonify(error="Combo not found"), 404
            clean, items, error = _clean_combo(cur, data, partial=True)
            if error:
                return jsonify(error=error), 400
            if "slug" in clean and _slug_taken(cur, "combo_products", clean["slug"], combo_id):
                return jsonify(error="A combo with this slug already exists"), 409
        conn.commit()
        conn.begin()
        try:
            with conn.cursor() as cur:
                _update_row(cur, "combo_products", combo_id, clean)
                if items is not None:
                    _replace_combo_items(cur, combo_id, items)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        combo = catalog.get_combo(conn, combo_id=combo_id, active_only=False)
    finally:
        conn.close()
    return jsonify(_serialize({"success": True, "combo": combo}))


@app.route("/admin/api/combos/<int:combo_id>", methods=["DELETE"])
@admin_required
def admin_delete_combo(combo_id):
    conn = get_db_connection()
    try:
        conn.begin()
        with conn.cursor() as cur:
            cur.execute("DELETE FROM combo_items WHERE combo_id = %s", (combo_id,))
            cur.execute("DELETE FROM combo_products WHERE id = %s", (combo_id,))
            deleted = cur.rowcount > 0
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    if not deleted:
        return jsonify(error="Combo not found"), 404
    return jsonify(success=True)


@app.route("/admin/api/flash-sale")
@admin_required
def admin_flash_sale():
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {catalog.PRODUCT_COLUMNS} {catalog.PRODUCT_FROM} "
                "WHERE p.is_flash_sale = 1 ORDER BY p.flash_sale_end ASC, p.id ASC"
            )
            products = orders.fetch_dicts(cur)
    finally:
        conn.close()
    now = datetime.now()
    for product in products:
        decorate_product(product, now)
    return jsonify(_serialize({"products": products}))


@app.route("/admin/api/flash-sale", methods=["POST"])
@admin_required
def admin_set_flash_sale():
    data = _json_body()
    raw_ids = data.get("product_ids")
    if not isinstance(raw_ids, list) or not raw_ids:
        return jsonify(error="Select at least one product"), 400
    product_ids = [_to_int(pid) for pid in raw_ids]
    if any(pid is None for pid in product_ids):
        return jsonify(error="Invalid product id"), 400

    now = datetime.now().replace(microsecond=0)
    if data.get("ends_at"):
        ends_at = _parse_dt(data.get("ends_at"))
        if ends_at is None:
            return jsonify(error="Invalid end time"), 400
    else:
        hours = _to_float(data.get("duration_hours"), 0)
        if hours <= 0:
            return jsonify(error="Provide ends_at or duration_hours"), 400
        ends_at = now + timedelta(hours=hours)
    ends_at = ends_at.replace(microsecond=0)
    if ends_at <= now:
        return jsonify(error="Flash sale must end in the future"), 400

    sale_price = None
    if data.get("sale_price") not in (None, ""):
        sale_price = _to_float(data.get("sale_price"), -1)
        if sale_price < 0:
            return jsonify(error="Sale price must be a non-negative number"), 400

    conn = get_db_connection()
    try:
        products = catalog.get_products_by_ids(conn, product_ids)
        missing = [str(pid) for pid in dict.fromkeys(product_ids) if pid not in products]
        if missing:
            return jsonify(error=f"Product(s) not found: {', '.join(missing)}"), 400
        conn.begin()
        try:
            with conn.cursor() as cur:
                for pid in dict.fromkeys(product_ids):
                    fields = {"is_flash_sale": 1, "flash_sale_end": ends_at, "updated_at": now}
                    if sale_price is not None:
                        fields["flash_sale_price"] = round(sale_price, 2)
                    _update_row(cur, "products", pid, fields)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    finally:
        conn.close()
    app.logger.info("Flash sale set on %s products until %s", len(products), ends_at)
    return jsonify(_serialize({"success": True, "product_ids": list(products), "ends_at": ends_at}))


@app.route("/admin/api/flash-sale", methods=["DELETE"])
@admin_required
def admin_clear_flash_sale():
    data = _json_body()
    raw_ids = data.get("product_ids")
    product_ids = []
    if isinstance(raw_ids, list) and raw_ids:
        product_ids = [_to_int(p) for p in raw_ids]
        if any(pid is None for pid in product_ids):
            return jsonify(error="Invalid product id"), 400
    reset = "is_flash_sale = 0, flash_sale_end = NULL, flash_sale_price = NULL"
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            if product_ids:
                placeholders = ", ".join(["%s"] * len(product_ids))
                cur.execute(
                    f"UPDATE products SET {reset} WHERE id IN ({placeholders})",
                    tuple(product_ids),
                )
            else:
                cur.execute(f"UPDATE products SET {reset} WHERE is_flash_sale = 1")
            cleared = cur.rowcount
        conn.commit()
    finally:
        conn.close()
    return jsonify(success=True, cleared=cleared)


@app.route("/admin/api/users")
@admin_required
def admin_users():
    page, limit = _page_args()
    search = (request.args.get("search") or "").strip()
    where = ""
    params = ()
    if search:
        like = f"%{search}%"
        where = "WHERE u.name LIKE %s OR u.email LIKE %s OR u.phone LIKE %s"
        params = (like, like, like)
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM users u {where}", params)
            total = int(cur.fetchone()[0] or 0)
            cur.execute(
                f"""
                SELECT u.id, u.name, u.email, u.phone, u.is_admin, u.created_at,
                       (SELECT COUNT(*) FROM orders o WHERE o.user_id = u.id) AS order_count
                FROM users u {where}
                ORDER BY u.created_at DESC, u.id DESC
                LIMIT %s OFFSET %s
                """,
                params + (limit, (page - 1) * limit),
            )
            users = orders.fetch_dicts(cur)
    finally:
        conn.close()
    return jsonify(_serialize({"users": users, "pagination": _pagination(page, limit, total)}))


@app.route("/admin/api/users/<int:user_id>", methods=["PUT", "PATCH"])
@admin_required
def admin_update_user(user_id):
    data = _json_body()
    clean = {}
    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            return jsonify(error="Name is required"), 400
        clean["name"] = name[:120]
    if "email" in data:
        email = str(data.get("email") or "").strip().lower() or None
        if email and not validate_email_format(email):
            return jsonify(error="Invalid email address"), 400
        clean["email"] = email
    if "is_admin" in data:
        clean["is_admin"] = _to_bool(data.get("is_admin"))
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            if not _row_exists(cur, "users", user_id):
                return jsonify(error="User not found"), 404
            if clean.get("email"):
                cur.execute("SELECT 1 FROM users WHERE LOWER(email) = %s AND id <> %s", (clean["email"], user_id))
                if cur.fetchone():
                    return jsonify(error="An account with this email already exists"), 409
            _update_row(cur, "users", user_id, clean)
        conn.commit()
    finally:
        conn.close()
    return jsonify(success=True)


@app.route("/admin/api/users/<int:user_id>", methods=["DELETE"])
@admin_required
def admin_delete_user(user_id):
    if user_id == session.get("user_id"):
        return jsonify(error="You cannot delete your own account"), 400
    conn = get_db_connection()
    try:
        conn.begin()
        with conn.cursor() as cur:
            cur.execute("UPDATE orders SET user_id = NULL WHERE user_id = %s", (user_id,))
            cur.execute("DELETE FROM user_notifications WHERE user_id = %s", (user_id,))
            cur.execute("DELETE FROM coupons WHERE user_id = %s AND is_used = 0", (user_id,))
            cur.execute("DELETE FROM user_addresses WHERE user_id = %s", (user_id,))
            cur.execute("DELETE FROM product_reviews WHERE user_id = %s", (user_id,))
            cur.execute(
                "DELETE FROM messages WHERE conversation_id IN (SELECT id FROM conversations WHERE user_id = %s)",
                (user_id,),
            )
            cur.execute("DELETE FROM conversations WHERE user_id = %s", (user_id,))
            cur.execute("DELETE FROM users WHERE id = %s", (user_id,))
            deleted = cur.rowcount > 0
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    if not deleted:
        return jsonify(error="User not found"), 404
    return jsonify(success=True)


@app.route("/admin/api/users/<int:user_id>/coupons", methods=["POST"])
@admin_required
def admin_issue_coupon(user_id):
    data = _json_body()
    code = str(data.get("code") or "").strip().upper() or f"TN{secrets.token_hex(4).upper()}"
    expires_at = None
    if data.get("expires_at"):
        expires_at = _parse_dt(data.get("expires_at"))
        if expires_at is None:
            return jsonify(error="Invalid expiry date"), 400
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            if not _row_exists(cur, "users", user_id):
                return jsonify(error="User not found"), 404
            cur.execute("SELECT 1 FROM coupons WHERE code = %s", (code,))
            if cur.fetchone():
                return jsonify(error="Coupon code already exists"), 409
        conn.commit()
        coupon_id = rewards.create_coupon(
            conn,
            user_id,
            code,
            str(data.get("discount_type") or "fixed"),
            data.get("discount_value"),
            data.get("minimum_order_amount") or 0,
            expires_at,
        )
        notifications.notify_user(
            conn, user_id, "coupon", "New coupon", f"You received coupon {code}. Use it at checkout."
        )
    finally:
        conn.close()
    return jsonify(success=True, coupon_id=coupon_id, code=code), 201


@app.route("/admin/api/orders")
@admin_required
def admin_orders():
    return _order_listing()


@app.route("/admin/api/orders/<int:order_id>")
@admin_required
def admin_order_detail(order_id):
    conn = get_db_connection()
    try:
        order = orders.get_order(conn, order_id=order_id)
    finally:
        conn.close()
    if not order:
        return jsonify(error="Order not found"), 404
    return jsonify(_serialize({"order": order}))


@app.route("/admin/api/orders/<int:order_id>/status", methods=["POST"])
@admin_required
def admin_update_order_status(order_id):
    data = _json_body()
    conn = get_db_connection()
    try:
        result = orders.update_order_status(
            conn,
            order_id,
            data.get("status"),
            note=data.get("note"),
            points_per_taka=REWARD_POINTS_PER_TAKA,
        )
        try:
            _after_status_change(conn, result)
        except Exception:
            app.logger.exception("Status side effects failed for order %s", order_id)
        order = orders.get_order(conn, order_id=order_id)
    finally:
        conn.close()
    return jsonify(
        _serialize(
            {
                "success": True,
                "previous_status": result["previous_status"],
                "reward_points": result["reward_points"],
                "order": order,
            }
        )
    )


@app.route("/admin/api/orders/<int:order_id>", methods=["DELETE"])
@admin_required
def admin_delete_order(order_id):
    conn = get_db_connection()
    try:
        deleted = orders.delete_order(conn, order_id)
    finally:
        conn.close()
    if not deleted:
        return jsonify(error="Order not found"), 404
    app.logger.info("Order %s deleted by admin %s", order_id, session.get("user_id"))
    return jsonify(success=True)


@app.route("/admin/api/notifications")
@admin_required
def admin_notifications():
    limit = min(100, max(1, _to_int(request.args.get("limit"), 50) or 50))
    conn = get_db_connection()
    try:
        rows = notifications.list_admin_notifications(conn, limit)
        unread = notifications.admin_unread_count(conn)
    finally:
        conn.close()
    return jsonify(_serialize({"notifications": rows, "unread_count": unread}))


@app.route("/admin/api/notifications/<int:notification_id>/read", methods=["POST"])
@admin_required
def admin_notification_read(notification_id):
    conn = get_db_connection()
    try:
        changed = notifications.mark_admin_notification_read(conn, notification_id)
    finally:
        conn.close()
    if not changed:
        return jsonify(error="Notification not found"), 404
    return jsonify(success=True)


@app.route("/admin/api/notifications/read-all", methods=["POST"])
@admin_required
def admin_notifications_read_all():
    conn = get_db_connection()
    try:
        changed = notifications.mark_all_admin_notifications_read(conn)
    finally:
        conn.close()
    return jsonify(success=True, updated=changed)


def _parse_day(value, default: date) -> date:
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return default


@app.route("/admin/api/analytics")
@admin_required
def admin_analytics():
    today = date.today()
    start_day = _parse_day(request.args.get("from"), today - timedelta(days=29))
    end_day = _parse_day(request.args.get("to"), today)
    if start_day > end_day:
        return jsonify(error="'from' must not be after 'to'"), 400
    start = datetime.combine(start_day, datetime.min.time())
    end = datetime.combine(end_day + timedelta(days=1), datetime.min.time())
    cancelled = OrderStatus.CANCELLED.value

    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*),
                       COALESCE(SUM(CASE WHEN status <> %s THEN total_amount ELSE 0 END), 0),
                       COALESCE(SUM(CASE WHEN status <> %s THEN 1 ELSE 0 END), 0)
                FROM orders WHERE created_at >= %s AND created_at < %s
                """,
                (cancelled, cancelled, start, end),
            )
            total_orders, revenue, paid_orders = cur.fetchone()

            cur.execute(
                """
                SELECT status, COUNT(*) FROM orders
                WHERE created_at >= %s AND created_at < %s
                GROUP BY status
                """,
                (start, end),
            )
            by_status = {status.value: 0 for status in OrderStatus}
            for status, count in cur.fetchall():
                by_status[status] = int(count)

            cur.execute(
                """
                SELECT DATE(created_at) AS day, COUNT(*) AS orders, COALESCE(SUM(total_amount), 0) AS revenue
                FROM orders
                WHERE created_at >= %s AND created_at < %s AND status <> %s
                GROUP BY DATE(created_at)
                ORDER BY day ASC
                """,
                (start, end, cancelled),
            )
            daily = orders.fetch_dicts(cur)

            cur.execute(
                """
                SELECT oi.product_id, p.name, SUM(oi.quantity) AS quantity,
                       SUM(oi.quantity * oi.price) AS revenue
                FROM order_items oi
                JOIN orders o ON o.id = oi.order_id
                LEFT JOIN products p ON p.id = oi.product_id
                WHERE o.created_at >= %s AND o.created_at < %s AND o.status <> %s
                GROUP BY oi.product_id, p.name
                ORDER BY quantity DESC, revenue DESC
                LIMIT 5
                """,
                (start, end, cancelled),
            )
            top_products = orders.fetch_dicts(cur)

            cur.execute(
                "SELECT id, name, stock FROM products WHERE stock <= %s ORDER BY stock ASC, name ASC",
                (LOW_STOCK_THRESHOLD,),
            )
            low_stock = orders.fetch_dicts(cur)
    finally:
        conn.close()

    revenue = round(float(revenue or 0), 2)
    paid_orders = int(paid_orders or 0)
    return jsonify(
        _serialize(
            {
                "range": {"from": start_day, "to": end_day},
                "totals": {
                    "orders": int(total_orders or 0),
                    "revenue": revenue,
                    "average_order_value": round(revenue / paid_orders, 2) if paid_orders else 0,
                },
                "orders_by_status": by_status,
                "revenue_by_day": daily,
                "top_products": top_products,
                "low_stock": low_stock,
            }
        )
    )


def _printable_order(order_id):
    conn = get_db_connection()
    try:
        order = orders.get_order(conn, order_id=order_id)
    finally:
        conn.close()
    if not order:
        abort(404, description="Order not found")
    for item in order["items"]:
        item["line_total"] = round(float(item["price"]) * int(item["quantity"]), 2)
    order["status_label"] = ORDER_STATUS_LABELS[OrderStatus(order["status"])]
    return order


def _print_context():
    return {
        "business_name": BUSINESS_NAME,
        "business_address": BUSINESS_ADDRESS,
        "support_phone": SUPPORT_PHONE,
        "support_email": SUPPORT_EMAIL,
        "currency": CURRENCY_SYMBOL,
        "printed_at": datetime.now(),
    }


@app.route("/admin/orders/<int:order_id>/invoice")
@admin_required
def admin_order_invoice(order_id):
    return render_template("invoice.html", order=_printable_order(order_id), **_print_context())


@app.route("/admin/orders/<int:order_id>/label")
@admin_required
def admin_order_label(order_id):
    return render_template("label.html", order=_printable_order(order_id), **_print_context())


if __name__ == "__main__":
    app.run(debug=os.getenv("FLASK_DEBUG", "0") == "1")
