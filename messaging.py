import logging
from datetime import datetime

import notifications
from orders import OrderError, fetch_dict, fetch_dicts

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000
PREVIEW_LENGTH = 50

CONVERSATION_COLUMNS = """
    c.id, c.user_id, c.admin_id, c.last_message_at, c.created_at,
    u.name AS user_name, u.phone AS user_phone
"""


def _now():
    return datetime.now().replace(microsecond=0)


def _clean_content(content) -> str:
    content = str(content or "").strip()
    if not content:
        raise OrderError("Message content is required")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise OrderError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")
    return content


def _preview(content: str) -> str:
    if len(content) <= PREVIEW_LENGTH:
        return content
    return content[:PREVIEW_LENGTH] + "..."


def list_conversations(conn, user_id=None, admin: bool = False, page: int = 1, limit: int = 20):
    """Support threads newest first with the reader's unread count.

    Customers see their own thread; admins see every thread. ``unread_count``
    counts messages from the other side that are still unread.
    """
    where = ""
    params = [0 if admin else 1]
    if not admin:
        where = "WHERE c.user_id = %s"
        params.append(user_id)
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {CONVERSATION_COLUMNS},
                   (SELECT COUNT(*) FROM messages m
                    WHERE m.conversation_id = c.id AND m.is_read = 0 AND m.from_admin = %s) AS unread_count,
                   (SELECT m.content FROM messages m
                    WHERE m.conversation_id = c.id
                    ORDER BY m.created_at DESC, m.id DESC LIMIT 1) AS last_message
            FROM conversations c
            JOIN users u ON u.id = c.user_id
            {where}
            ORDER BY c.last_message_at DESC, c.id DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params) + (limit, (page - 1) * limit),
        )
        rows = fetch_dicts(cur)
        if admin:
            cur.execute("SELECT COUNT(*) FROM conversations")
        else:
            cur.execute("SELECT COUNT(*) FROM conversations WHERE user_id = %s", (user_id,))
        row = cur.fetchone()
    return rows, int(row[0] or 0) if row else 0


def _load_conversation(cur, where: str, value):
    cur.execute(
        f"""
        SELECT {CONVERSATION_COLUMNS}
        FROM conversations c
        JOIN users u ON u.id = c.user_id
        WHERE {where} = %s
        """,
        (value,),
    )
    return fetch_dict(cur)


def get_conversation(conn, conversation_id, user_id, admin: bool = False) -> dict:
    with conn.cursor() as cur:
        conversation = _load_conversation(cur, "c.id", conversation_id)
    if not conversation or (not admin and conversation["user_id"] != user_id):
        raise OrderError("Conversation not found or access denied", 404)
    return conversation


def start_conversation(conn, customer_id):
    """Return ``(conversation, created)``; a customer has at most one support thread."""
    with conn.cursor() as cur:
        conversation = _load_conversation(cur, "c.user_id", customer_id)
        if conversation:
            return conversation, False
        cur.execute("SELECT id FROM users WHERE id = %s", (customer_id,))
        if not cur.fetchone():
            raise OrderError("User not found", 404)
        now = _now()
        cur.execute(
            "INSERT INTO conversations (user_id, last_message_at, created_at) VALUES (%s, %s, %s)",
            (customer_id, now, now),
        )
        conversation_id = cur.lastrowid
        conn.commit()
        conversation = _load_conversation(cur, "c.id", conversation_id)
    logger.info("Conversation %s opened for user %s", conversation_id, customer_id)
    return conversation, True


def list_messages(conn, conversation: dict, admin: bool = False, page: int = 1, limit: int = 50):
    """Messages oldest first; the other side's messages are marked read."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, conversation_id, sender_id, from_admin, content, is_read, created_at
            FROM messages
            WHERE conversation_id = %s
            ORDER BY created_at ASC, id ASC
            LIMIT %s OFFSET %s
            """,
            (conversation["id"], limit, (page - 1) * limit),
        )
        rows = fetch_dicts(cur)
        cur.execute("SELECT COUNT(*) FROM messages WHERE conversation_id = %s", (conversation["id"],))
        row = cur.fetchone()
    mark_read(conn, conversation, admin)
    return rows, int(row[0] or 0) if row else 0


def send_message(conn, conversation: dict, sender_id, content, admin: bool = False) -> dict:
    content = _clean_content(content)
    now = _now()
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO messages (conversation_id, sender_id, from_admin, content, is_read, created_at)
            VALUES (%s, %s, %s, %s, 0, %s)
            """,
            (conversation["id"], sender_id, 1 if admin else 0, content, now),
        )
        message_id = cur.lastrowid
        if admin:
            cur.execute(
                "UPDATE conversations SET last_message_at = %s, admin_id = %s WHERE id = %s",
                (now, sender_id, conversation["id"]),
            )
        else:
            cur.execute(
                "UPDATE conversations SET last_message_at = %s WHERE id = %s",
                (now, conversation["id"]),
            )
    conn.commit()

    if admin:
        notifications.notify_user(
            conn,
            conversation["user_id"],
            "message",
            "New Message",
            f"You have a new message: {_preview(content)}",
        )
    else:
        notifications.create_admin_notification(
            conn,
            "message",
            f"New message from {conversation.get('user_name') or 'a customer'}",
            _preview(content),
        )
    return {
        "id": message_id,
        "conversation_id": conversation["id"],
        "sender_id": sender_id,
        "from_admin": 1 if admin else 0,
        "content": content,
        "is_read": 0,
        "created_at": now,
    }


def mark_read(conn, conversation: dict, admin: bool = False) -> int:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE messages SET is_read = 1
            WHERE conversation_id = %s AND from_admin = %s AND is_read = 0
            """,
            (conversation["id"], 0 if admin else 1),
        )
        changed = cur.rowcount
    conn.commit()
    return changed


def delete_conversation(conn, conversation: dict) -> None:
    with conn.cursor() as cur:
        cur.execute("DELETE FROM messages WHERE conversation_id = %s", (conversation["id"],))
        cur.execute("DELETE FROM conversations WHERE id = %s", (conversation["id"],))
    conn.commit()
    logger.info("Conversation %s deleted", conversation["id"])
