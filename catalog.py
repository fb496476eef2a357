import re
from datetime import datetime

from orders import fetch_dict, fetch_dicts
from pricing import combo_summary, decorate_product, effective_price

PRODUCT_COLUMNS = """
    p.id, p.name, p.slug, p.description, p.price, p.sale_price, p.flash_sale_price, p.stock,
    p.is_featured, p.is_flash_sale, p.flash_sale_end, p.category_id, p.image_url,
    p.created_at, p.updated_at,
    c.name AS category_name, c.slug AS category_slug
"""
PRODUCT_FROM = "FROM products p LEFT JOIN categories c ON c.id = p.category_id"
MAX_PAGE_SIZE = 100


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(value or "").strip().lower())
    return slug.strip("-")


def _decorate_all(products, now=None):
    now = now or datetime.now()
    for product in products:
        decorate_product(product, now)
    return products


def list_products(
    conn,
    category=None,
    flash_sale: bool = False,
    featured: bool = False,
    search=None,
    in_stock: bool = False,
    page: int = 1,
    limit: int = 20,
    now=None,
):
    now = now or datetime.now().replace(microsecond=0)
    where = []
    params = []
    if category:
        where.append("c.slug = %s")
        params.append(category)
    if flash_sale:
        where.append("p.is_flash_sale = 1 AND p.flash_sale_end > %s")
        params.append(now)
    if featured:
        where.append("p.is_featured = 1")
    if search:
        where.append("(p.name LIKE %s OR p.description LIKE %s)")
        like = f"%{search}%"
        params.extend([like, like])
    if in_stock:
        where.append("p.stock > 0")
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    page = max(1, int(page or 1))
    limit = min(MAX_PAGE_SIZE, max(1, int(limit or 20)))
    with conn.cursor() as cur:
        cur.execute(f"SELECT COUNT(*) {PRODUCT_FROM} {where_sql}", tuple(params))
        row = cur.fetchone()
        total = int(row[0] or 0) if row else 0
        cur.execute(
            f"""
            SELECT {PRODUCT_COLUMNS} {PRODUCT_FROM} {where_sql}
            ORDER BY p.created_at DESC, p.id DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params) + (limit, (page - 1) * limit),
        )
        products = fetch_dicts(cur)
    return _decorate_all(products, now), total


def get_product(conn, product_id=None, slug=None):
    with conn.cursor() as cur:
        if product_id is not None:
            cur.execute(f"SELECT {PRODUCT_COLUMNS} {PRODUCT_FROM} WHERE p.id = %s", (product_id,))
        else:
            cur.execute(f"SELECT {PRODUCT_COLUMNS} {PRODUCT_FROM} WHERE p.slug = %s", (slug,))
        product = fetch_dict(cur)
    if product:
        decorate_product(product, datetime.now())
    return product


def get_products_by_ids(conn, product_ids):
    ids = sorted({int(pid) for pid in product_ids})
    if not ids:
        return {}
    placeholders = ", ".join(["%s"] * len(ids))
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {PRODUCT_COLUMNS} {PRODUCT_FROM} WHERE p.id IN ({placeholders})",
            tuple(ids),
        )
        products = _decorate_all(fetch_dicts(cur))
    return {int(p["id"]): p for p in products}


def list_categories(conn):
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT c.id, c.name, c.slug, c.description, c.image_url, c.created_at,
                   (SELECT COUNT(*) FROM products p WHERE p.category_id = c.id) AS product_count
            FROM categories c
            ORDER BY c.name ASC
            """
        )
        return fetch_dicts(cur)


def flash_sale_products(conn, limit=None, now=None):
    now = now or datetime.now().replace(microsecond=0)
    sql = f"""
        SELECT {PRODUCT_COLUMNS} {PRODUCT_FROM}
        WHERE p.is_flash_sale = 1 AND p.flash_sale_end > %s
        ORDER BY p.flash_sale_end ASC, p.id ASC
    """
    params = (now,)
    if limit:
        sql += " LIMIT %s"
        params += (int(limit),)
    with conn.cursor() as cur:
        cur.execute(sql, params)
        products = fetch_dicts(cur)
    return _decorate_all(products, now)


def search_products(conn, query: str, limit: int = 6):
    products, _ = list_products(conn, search=query, in_stock=True, limit=limit)
    return products


def products_by_category(conn, category: str, limit: int = 6):
    """Products whose category slug or name matches ``category`` loosely."""
    term = str(category or "").strip()
    like = f"%{term}%"
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {PRODUCT_COLUMNS} {PRODUCT_FROM}
            WHERE p.stock > 0 AND (c.slug = %s OR c.name LIKE %s OR c.slug LIKE %s)
            ORDER BY p.is_featured DESC, p.id DESC
            LIMIT %s
            """,
            (slugify(term), like, like, int(limit)),
        )
        products = fetch_dicts(cur)
    return _decorate_all(products)


def featured_products(conn, limit: int = 6):
    products, _ = list_products(conn, featured=True, in_stock=True, limit=limit)
    return products


def _combo_items(cur, combo_ids):
    if not combo_ids:
        return {}
    placeholders = ", ".join(["%s"] * len(combo_ids))
    cur.execute(
        f"""
        SELECT ci.combo_id, ci.product_id, ci.quantity,
               p.name, p.slug, p.price, p.sale_price, p.flash_sale_price, p.is_flash_sale, p.flash_sale_end,
               p.stock, p.image_url
        FROM combo_items ci
        JOIN products p ON p.id = ci.product_id
        WHERE ci.combo_id IN ({placeholders})
        ORDER BY ci.id ASC
        """,
        tuple(combo_ids),
    )
    grouped = {cid: [] for cid in combo_ids}
    for item in fetch_dicts(cur):
        grouped[item["combo_id"]].append(item)
    return grouped


def _shape_combo(combo, items):
    combo["items"] = items
    combo.update(combo_summary(combo.get("combo_price"), items))
    combo["in_stock"] = bool(items) and all(
        int(it.get("stock") or 0) >= int(it.get("quantity") or 0) for it in items
    )
    return combo


def list_combos(conn, active_only: bool = True):
    where = "WHERE is_active = 1" if active_only else ""
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT id, name, slug, description, combo_price, image_url, is_active, created_at
            FROM combo_products {where}
            ORDER BY created_at DESC, id DESC
            """
        )
        combos = fetch_dicts(cur)
        items = _combo_items(cur, [c["id"] for c in combos])
    return [_shape_combo(c, items.get(c["id"], [])) for c in combos]


def get_combo(conn, slug=None, combo_id=None, active_only: bool = True):
    where = "slug = %s" if slug is not None else "id = %s"
    if active_only:
        where += " AND is_active = 1"
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT id, name, slug, description, combo_price, image_url, is_active, created_at
            FROM combo_products WHERE {where}
            """,
            (slug if slug is not None else combo_id,),
        )
        combo = fetch_dict(cur)
        if not combo:
            return None
        items = _combo_items(cur, [combo["id"]])
    return _shape_combo(combo, items.get(combo["id"], []))


def list_districts(conn, active_only: bool = True):
    where = "WHERE is_active = 1" if active_only else ""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT id, name, delivery_charge, is_active, created_at FROM districts {where} ORDER BY name ASC"
        )
        return fetch_dicts(cur)


def validate_cart_items(conn, items):
    """Advisory availability report for ``[{product_id, quantity}]``."""
    wanted = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            product_id = int(item.get("product_id"))
            quantity = int(item.get("quantity") or 1)
        except (TypeError, ValueError):
            continue
        wanted.append((product_id, max(1, quantity)))

    products = get_products_by_ids(conn, [pid for pid, _ in wanted])
    report = []
    for product_id, quantity in wanted:
        product = products.get(product_id)
        if not product:
            report.append({"product_id": product_id, "quantity": quantity, "ok": False, "available": 0, "price": None})
            continue
        available = int(product.get("stock") or 0)
        report.append(
            {
                "product_id": product_id,
                "name": product["name"],
                "quantity": quantity,
                "ok": available >= quantity,
                "available": available,
                "price": effective_price(product),
            }
        )
    return report
