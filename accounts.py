import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta

from werkzeug.security import check_password_hash, generate_password_hash

from orders import OrderError, fetch_dict, fetch_dicts, is_valid_bd_phone
from pricing import _parse_dt

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
EMAIL_REGEX = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")

# request key -> column, max length
ADDRESS_FIELDS = {
    "name": ("name", 120),
    "phone": ("phone", 20),
    "address": ("address", 500),
    "city": ("city", 80),
    "district": ("district", 80),
    "postal_code": ("postal_code", 12),
}

ADDRESS_COLUMNS = "id, user_id, name, phone, address, city, district, postal_code, is_default, created_at"


def _now():
    return datetime.now().replace(microsecond=0)


def _truthy(value) -> bool:
    return value in (True, 1, "1", "true", "True", "on", "yes")


# Saved addresses


def _clean_address(data: dict, partial: bool = False) -> dict:
    if "postalCode" in data and "postal_code" not in data:
        data = dict(data, postal_code=data["postalCode"])
    fields = {}
    for key, (column, max_len) in ADDRESS_FIELDS.items():
        if key not in data and partial:
            continue
        value = str(data.get(key) or "").strip()
        if not value:
            raise OrderError("All fields are required")
        fields[column] = value[:max_len]
    if "phone" in fields and not is_valid_bd_phone(fields["phone"]):
        raise OrderError("Invalid phone number")
    return fields


def list_addresses(conn, user_id):
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {ADDRESS_COLUMNS}
            FROM user_addresses
            WHERE user_id = %s
            ORDER BY is_default DESC, created_at ASC, id ASC
            """,
            (user_id,),
        )
        return fetch_dicts(cur)


def _get_address(cur, user_id, address_id):
    cur.execute(
        f"SELECT {ADDRESS_COLUMNS} FROM user_addresses WHERE id = %s AND user_id = %s",
        (address_id, user_id),
    )
    address = fetch_dict(cur)
    if not address:
        raise OrderError("Address not found", 404)
    return address


def _clear_default(cur, user_id):
    cur.execute("UPDATE user_addresses SET is_default = 0 WHERE user_id = %s AND is_default = 1", (user_id,))


def create_address(conn, user_id, data: dict) -> dict:
    """Save an address; the first one a customer saves becomes the default."""
    fields = _clean_address(data)
    with conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM user_addresses WHERE user_id = %s", (user_id,))
        first = int(cur.fetchone()[0] or 0) == 0
        is_default = first or _truthy(data.get("is_default", data.get("isDefault")))
        if is_default:
            _clear_default(cur, user_id)
        fields.update(user_id=user_id, is_default=1 if is_default else 0, created_at=_now())
        columns = ", ".join(fields)
        placeholders = ", ".join(["%s"] * len(fields))
        cur.execute(f"INSERT INTO user_addresses ({columns}) VALUES ({placeholders})", tuple(fields.values()))
        address_id = cur.lastrowid
        conn.commit()
        return _get_address(cur, user_id, address_id)


def update_address(conn, user_id, address_id, data: dict) -> dict:
    with conn.cursor() as cur:
        current = _get_address(cur, user_id, address_id)
        fields = _clean_address(data, partial=True)
        flag = data.get("is_default", data.get("isDefault"))
        if flag is not None:
            if _truthy(flag):
                _clear_default(cur, user_id)
                fields["is_default"] = 1
            elif current["is_default"]:
                raise OrderError("Choose another default address first")
        if fields:
            assignments = ", ".join(f"{column} = %s" for column in fields)
            cur.execute(
                f"UPDATE user_addresses SET {assignments} WHERE id = %s AND user_id = %s",
                tuple(fields.values()) + (address_id, user_id),
            )
        conn.commit()
        return _get_address(cur, user_id, address_id)


def delete_address(conn, user_id, address_id) -> None:
    """Delete an address; removing the default promotes the oldest remaining one."""
    with conn.cursor() as cur:
        address = _get_address(cur, user_id, address_id)
        cur.execute("DELETE FROM user_addresses WHERE id = %s AND user_id = %s", (address_id, user_id))
        if address["is_default"]:
            cur.execute(
                """
                SELECT id FROM user_addresses
                WHERE user_id = %s
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """,
                (user_id,),
            )
            row = cur.fetchone()
            if row:
                cur.execute("UPDATE user_addresses SET is_default = 1 WHERE id = %s", (row[0],))
    conn.commit()


# Profile


def get_profile(conn, user_id) -> dict:
    with conn.cursor() as cur:
        cur.execute("SELECT id, name, email, phone, is_admin, created_at FROM users WHERE id = %s", (user_id,))
        user = fetch_dict(cur)
    if not user:
        raise OrderError("User not found", 404)
    return user


def update_profile(conn, user_id, data: dict) -> dict:
    """Change name and phone, the email when one is sent, and the password when
    ``new_password`` is given. A new password needs the current one.
    """
    name = str(data.get("name") or "").strip()
    phone = str(data.get("phone") or "").strip()
    email = str(data.get("email") or "").strip().lower() or None
    current_password = data.get("current_password", data.get("currentPassword"))
    new_password = data.get("new_password", data.get("newPassword"))

    if not name or not phone:
        raise OrderError("Name and phone are required")
    if not is_valid_bd_phone(phone):
        raise OrderError("Invalid phone number")
    if email and not EMAIL_REGEX.match(email):
        raise OrderError("Invalid email address")

    with conn.cursor() as cur:
        cur.execute("SELECT id, password FROM users WHERE id = %s", (user_id,))
        user = fetch_dict(cur)
        if not user:
            raise OrderError("User not found", 404)
        cur.execute("SELECT id FROM users WHERE phone = %s AND id <> %s", (phone, user_id))
        if cur.fetchone():
            raise OrderError("Phone number is already in use", 409)
        if email:
            cur.execute("SELECT id FROM users WHERE LOWER(email) = %s AND id <> %s", (email, user_id))
            if cur.fetchone():
                raise OrderError("Email is already in use", 409)

        fields = {"name": name[:120], "phone": phone}
        if "email" in data:
            fields["email"] = email
        if new_password:
            if not current_password:
                raise OrderError("Current password is required to set a new password")
            if not user.get("password") or not check_password_hash(user["password"], str(current_password)):
                raise OrderError("Current password is incorrect", 403)
            if len(str(new_password)) < MIN_PASSWORD_LENGTH:
                raise OrderError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
            fields["password"] = generate_password_hash(str(new_password))

        assignments = ", ".join(f"{column} = %s" for column in fields)
        cur.execute(f"UPDATE users SET {assignments} WHERE id = %s", tuple(fields.values()) + (user_id,))
    conn.commit()
    if "password" in fields:
        logger.info("User %s changed their password", user_id)
    return get_profile(conn, user_id)


# Password reset


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_reset_token(conn, user_id, minutes: float = 60) -> str:
    """Store a fresh reset token for ``user_id`` and return it; only its hash is kept."""
    token = secrets.token_urlsafe(16)
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE users SET reset_token_hash = %s, reset_expires = %s WHERE id = %s",
            (_token_hash(token), _now() + timedelta(minutes=minutes), user_id),
        )
    conn.commit()
    return token


def reset_password(conn, token, password, now=None) -> int:
    token = str(token or "").strip()
    password = str(password or "")
    if not token or not password:
        raise OrderError("Token and password are required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise OrderError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    with conn.cursor() as cur:
        cur.execute(
            "SELECT id, reset_expires FROM users WHERE reset_token_hash = %s",
            (_token_hash(token),),
        )
        user = fetch_dict(cur)
        expires = _parse_dt(user.get("reset_expires")) if user else None
        if not user or expires is None or expires < (now or datetime.now()):
            raise OrderError("Invalid or expired reset token")
        cur.execute(
            """
            UPDATE users SET password = %s, reset_token_hash = NULL, reset_expires = NULL
            WHERE id = %s
            """,
            (generate_password_hash(password), user["id"]),
        )
    conn.commit()
    logger.info("Password reset for user %s", user["id"])
    return user["id"]
