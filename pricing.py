from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP


def _to_float(value, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def discount_percent(original, sale) -> int:
    """Whole-number percentage saved going from ``original`` to ``sale``.

    Half values round up (12.5 -> 13) the same way the storefront badges do.
    A zero or negative original price has nothing to discount and yields 0.
    """
    original = _to_float(original)
    sale = _to_float(sale)
    if original <= 0:
        return 0
    pct = Decimal(str((original - sale) / original * 100))
    return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def savings(original, sale) -> float:
    return round(max(0.0, _to_float(original) - _to_float(sale)), 2)


def _parse_dt(value):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip().replace("T", " ")
    for fmt in ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def flash_sale_active(product: dict, now: datetime = None) -> bool:
    if not product or not product.get("is_flash_sale"):
        return False
    ends = _parse_dt(product.get("flash_sale_end"))
    if ends is None:
        return False
    return ends > (now or datetime.now())


def effective_price(product: dict, now: datetime = None) -> float:
    """Price a customer pays right now.

    ``sale_price`` only applies when it undercuts ``price``; on flash-sale
    items it additionally requires the sale window to still be open.
    ``flash_sale_price``, set when a flash sale starts, wins while the window
    is open and is ignored otherwise.
    """
    price = _to_float(product.get("price"))
    flash = product.get("flash_sale_price")
    if flash not in (None, "") and flash_sale_active(product, now):
        flash = _to_float(flash, price)
        if flash < price:
            return flash
    sale = product.get("sale_price")
    if sale is None or sale == "":
        return price
    sale = _to_float(sale, price)
    if sale >= price:
        return price
    if product.get("is_flash_sale") and not flash_sale_active(product, now):
        return price
    return sale


def decorate_product(product: dict, now: datetime = None) -> dict:
    price = _to_float(product.get("price"))
    current = effective_price(product, now)
    product["flash_sale_active"] = flash_sale_active(product, now)
    product["effective_price"] = current
    product["discount_percent"] = discount_percent(price, current) if current < price else 0
    return product


def combo_summary(combo_price, items) -> dict:
    original = 0.0
    for item in items or []:
        original += _to_float(item.get("price")) * int(item.get("quantity") or 0)
    original = round(original, 2)
    combo_price = round(_to_float(combo_price), 2)
    return {
        "original_price": original,
        "combo_price": combo_price,
        "discount_percent": discount_percent(original, combo_price) if combo_price < original else 0,
        "savings": savings(original, combo_price),
    }
