import os
import re
import sqlite3
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

os.environ["FLASK_SECRET_KEY"] = "test-secret-key"
os.environ["API_KEY"] = "test-api-key"
os.environ["GEMINI_API_KEY"] = "test-gemini-key"
os.environ["ASSISTANT_RETRY_DELAY_SECONDS"] = "0"
os.environ["SMS_STATUS_UPDATES_ENABLED"] = "1"
os.environ["ADMIN_USERS"] = "owner@technirvor.test"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="technirvor-logs-")

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
API_HEADERS = {"x-api-key": "test-api-key"}

_DT_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d")


def _convert_datetime(raw: bytes):
    text = raw.decode()
    for fmt in _DT_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return text


sqlite3.register_adapter(datetime, lambda value: value.strftime("%Y-%m-%d %H:%M:%S"))
sqlite3.register_adapter(Decimal, str)
sqlite3.register_converter("DATETIME", _convert_datetime)
sqlite3.register_converter("DECIMAL", lambda raw: Decimal(raw.decode()))


def sqlite_schema() -> str:
    """schema.sql rewritten for SQLite: index lines dropped, AUTO_INCREMENT mapped."""
    with open(os.path.join(ROOT, "schema.sql"), encoding="utf-8") as fh:
        source = fh.read()
    lines = []
    for line in source.splitlines():
        stripped = line.strip()
        if stripped.startswith("--"):
            continue
        unique = re.match(r"^UNIQUE KEY \w+ (\(.+?\))(,?)$", stripped)
        if unique:
            lines.append(f"    UNIQUE {unique.group(1)}{unique.group(2)}")
            continue
        if stripped.startswith("KEY "):
            continue
        lines.append(line)
    sql = "\n".join(lines)
    sql = sql.replace("INT AUTO_INCREMENT PRIMARY KEY", "INTEGER PRIMARY KEY AUTOINCREMENT")
    sql = sql.replace("INSERT IGNORE", "INSERT OR IGNORE")
    return re.sub(r",\s*\n\s*\)", "\n)", sql)


class SQLiteCursor:
    """PyMySQL-style cursor over sqlite3: ``%s`` placeholders, context manager."""

    def __init__(self, raw):
        self._cur = raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self._cur.close()

    def execute(self, sql, params=None):
        self._cur.execute(sql.replace("%s", "?"), tuple(params or ()))
        return self._cur.rowcount

    def executemany(self, sql, seq):
        self._cur.executemany(sql.replace("%s", "?"), [tuple(p) for p in seq])
        return self._cur.rowcount

    def fetchone(self):
        return self._cur.fetchone()

    def fetchall(self):
        return self._cur.fetchall()

    def close(self):
        self._cur.close()

    @property
    def description(self):
        return self._cur.description

    @property
    def rowcount(self):
        return self._cur.rowcount

    @property
    def lastrowid(self):
        return self._cur.lastrowid


class SQLiteConnection:
    """With ``immediate`` a transaction takes the write lock at BEGIN, so a second
    writer waits for the first to commit, as with InnoDB row locks."""

    def __init__(self, path: str, immediate: bool = False):
        self.raw = sqlite3.connect(
            path,
            detect_types=sqlite3.PARSE_DECLTYPES,
            isolation_level=None,
            check_same_thread=False,
        )
        self.raw.execute("PRAGMA foreign_keys = ON")
        self.raw.execute("PRAGMA busy_timeout = 10000")
        self.immediate = immediate
        self.closed = False

    def cursor(self):
        return SQLiteCursor(self.raw.cursor())

    def begin(self):
        if not self.raw.in_transaction:
            self.raw.execute("BEGIN IMMEDIATE" if self.immediate else "BEGIN")

    def commit(self):
        if self.raw.in_transaction:
            self.raw.execute("COMMIT")

    def rollback(self):
        if self.raw.in_transaction:
            self.raw.execute("ROLLBACK")

    def close(self):
        self.closed = True
        self.raw.close()


@pytest.fixture
def connect(tmp_path):
    path = str(tmp_path / "store.db")
    setup = SQLiteConnection(path)
    setup.raw.executescript(sqlite_schema())
    setup.close()
    return lambda **options: SQLiteConnection(path, **options)


@pytest.fixture
def conn(connect):
    connection = connect()
    yield connection
    if not connection.closed:
        connection.close()


@pytest.fixture
def query(conn):
    def run(sql, params=()):
        with conn.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return rows

    return run


@pytest.fixture
def catalog_ids(conn):
    now = datetime.now().replace(microsecond=0)
    ids = {}
    with conn.cursor() as cur:
        for key, name, slug in (
            ("laptops", "Laptops", "laptops"),
            ("accessories", "Accessories", "accessories"),
            ("audio", "Audio", "audio"),
        ):
            cur.execute(
                "INSERT INTO categories (name, slug, created_at) VALUES (%s, %s, %s)",
                (name, slug, now),
            )
            ids[key] = cur.lastrowid

        products = (
            ("laptop", "Walton Laptop", "walton-laptop", 1000, None, 10, 1, 0, None, "laptops"),
            ("mouse", "Wireless Mouse", "wireless-mouse", 200, 150, 3, 0, 0, None, "accessories"),
            ("headphones", "Studio Headphones", "studio-headphones", 2000, 1500, 5, 1, 1, now + timedelta(days=1), "audio"),
            ("keyboard", "Mechanical Keyboard", "mechanical-keyboard", 800, 600, 4, 0, 1, now - timedelta(days=1), "accessories"),
            ("cable", "USB-C Cable", "usb-c-cable", 100, None, 0, 0, 0, None, "accessories"),
        )
        for offset, (key, name, slug, price, sale, stock, featured, flash, ends, category) in enumerate(products):
            created = now - timedelta(minutes=len(products) - offset)
            cur.execute(
                """
                INSERT INTO products
                (name, slug, description, price, sale_price, stock, is_featured, is_flash_sale,
                 flash_sale_end, category_id, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (name, slug, f"{name} from Tech Nirvor", price, sale, stock, featured, flash, ends, ids[category], created, created),
            )
            ids[key] = cur.lastrowid

        for name, charge, active in (("Dhaka", 60, 1), ("Khulna", 120, 1), ("Bhola", 150, 0)):
            cur.execute(
                "INSERT INTO districts (name, delivery_charge, is_active, created_at) VALUES (%s, %s, %s, %s)",
                (name, charge, active, now),
            )
    conn.commit()
    return ids


@pytest.fixture
def make_user(conn):
    def create(name="Rahim", phone="01712345678", email=None, password="secret123", is_admin=0):
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (name, email, phone, password, is_admin, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (name, email, phone, generate_password_hash(password), is_admin, datetime.now().replace(microsecond=0)),
            )
            user_id = cur.lastrowid
        conn.commit()
        return user_id

    return create


@pytest.fixture
def order_payload(catalog_ids):
    def build(items=None, district="Dhaka", **overrides):
        items = items or [{"product_id": catalog_ids["laptop"], "quantity": 2, "price": 1000}]
        subtotal = sum(it["price"] * it["quantity"] for it in items)
        charge = {"Dhaka": 60, "Khulna": 120, "Bhola": 150}.get(district, 0)
        payload = {
            "customer_name": "Karim Uddin",
            "customer_phone": "01712345678",
            "district": district,
            "address": "House 12, Road 5, Dhanmondi",
            "items": items,
            "total_amount": subtotal + charge,
        }
        payload.update(overrides)
        return payload

    return build


@pytest.fixture
def app_module(monkeypatch, connect):
    import app as module

    monkeypatch.setattr(module, "get_db_connection", connect)
    module.app.config["TESTING"] = True
    module._rate_store.clear()
    module._login_attempts.clear()
    yield module
    module._rate_store.clear()
    module._login_attempts.clear()


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()


@pytest.fixture
def csrf(client):
    def headers():
        token = client.get("/csrf-token").get_json()["csrf_token"]
        return {"X-CSRF-Token": token}

    return headers


@pytest.fixture
def admin_client(client, csrf, make_user):
    make_user(name="Admin", phone="01811111111", email="admin@technirvor.test", password="admin-pass", is_admin=1)
    resp = client.post(
        "/admin/login",
        json={"identifier": "admin@technirvor.test", "password": "admin-pass"},
        headers=csrf(),
    )
    assert resp.status_code == 200
    return client


@pytest.fixture
def user_client(client, csrf, make_user):
    user_id = make_user(name="Rahim", phone="01712345678", email="rahim@example.com", password="secret123")
    resp = client.post(
        "/auth/login",
        json={"identifier": "01712345678", "password": "secret123"},
        headers=csrf(),
    )
    assert resp.status_code == 200
    client.user_id = user_id
    return client
