import argparse
import os
import sys
from datetime import datetime
from urllib.parse import urlparse, parse_qs

import pymysql
from dotenv import load_dotenv
from werkzeug.security import generate_password_hash


SCHEMA_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "schema.sql")


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


def get_db_connection():
    db_url = os.getenv("DATABASE_URL") or os.getenv("MYSQL_URL") or os.getenv("DB_URL")
    if db_url:
        cfg = _parse_db_url(db_url)
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
        connect_timeout=10,
        read_timeout=30,
        write_timeout=30,
    )
    if not ssl_disabled:
        connect_kwargs["ssl"] = {"ssl": {}}
    return pymysql.connect(**connect_kwargs)


def split_statements(sql: str):
    """Split a schema file on statement-ending semicolons, dropping ``--`` comments."""
    statements = []
    buffer = []
    for line in sql.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue
        buffer.append(line)
        if stripped.endswith(";"):
            statements.append("\n".join(buffer).rstrip().rstrip(";"))
            buffer = []
    if buffer:
        statements.append("\n".join(buffer))
    return statements


def apply_schema(conn, path: str = SCHEMA_PATH) -> int:
    with open(path, encoding="utf-8") as fh:
        statements = split_statements(fh.read())
    with conn.cursor() as cur:
        for statement in statements:
            cur.execute(statement)
    conn.commit()
    return len(statements)


def ensure_admin(conn, name: str, email: str, password: str) -> int:
    email = email.strip().lower()
    with conn.cursor() as cur:
        cur.execute("SELECT id FROM users WHERE LOWER(email) = %s", (email,))
        row = cur.fetchone()
        if row:
            cur.execute(
                "UPDATE users SET is_admin = 1, password = %s WHERE id = %s",
                (generate_password_hash(password), row[0]),
            )
            user_id = row[0]
        else:
            cur.execute(
                """
                INSERT INTO users (name, email, password, is_admin, created_at)
                VALUES (%s, %s, %s, 1, %s)
                """,
                (name, email, generate_password_hash(password), datetime.now().replace(microsecond=0)),
            )
            user_id = cur.lastrowid
    conn.commit()
    return user_id


def main(argv=None):
    load_dotenv()
    parser = argparse.ArgumentParser(description="Create the storefront tables.")
    parser.add_argument("--admin-email", default=os.getenv("INIT_ADMIN_EMAIL", ""))
    parser.add_argument("--admin-password", default=os.getenv("INIT_ADMIN_PASSWORD", ""))
    parser.add_argument("--admin-name", default="Store Admin")
    args = parser.parse_args(argv)

    conn = get_db_connection()
    try:
        count = apply_schema(conn)
        print(f"Applied {count} schema statement(s).")
        if args.admin_email:
            if len(args.admin_password) < 8:
                print("Admin password must be at least 8 characters.", file=sys.stderr)
                return 1
            user_id = ensure_admin(conn, args.admin_name, args.admin_email, args.admin_password)
            print(f"Admin account ready (user {user_id}).")
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
