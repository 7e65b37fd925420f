from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from . import config
from .logging_utils import get_logger

log = get_logger(__name__)

DEFAULT_SESSION_TITLE = "New chat"

STATUS_DRAFT = "draft"
STATUS_PUBLISHED = "published"

_CHARACTER_COLUMNS = """
    c.character_id, c.owner_id, u.username AS owner_username, c.name, c.prompt,
    c.avatar_url, c.short_description, c.status, c.version, c.last_published_at,
    c.created_at, c.updated_at
"""

_SESSION_COLUMNS = """
    s.session_id, s.owner_id, s.title, s.character_id, s.created_at, s.updated_at,
    (SELECT COUNT(1) FROM messages m WHERE m.session_id = s.session_id) AS message_count
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect(db_path: Path | None = None) -> sqlite3.Connection:
    db_path = db_path or config.APP_DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def normalize_username(username: str) -> str:
    return str(username or "").strip().lower()


def init_db() -> None:
    conn = _connect()
    try:
        conn.executescript(
            f"""
            CREATE TABLE IF NOT EXISTS users (
              user_id TEXT PRIMARY KEY,
              username TEXT NOT NULL,
              username_normalized TEXT NOT NULL UNIQUE,
              preferred_model TEXT,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS characters (
              character_id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              name TEXT NOT NULL,
              prompt TEXT NOT NULL,
              avatar_url TEXT,
              short_description TEXT,
              status TEXT NOT NULL DEFAULT '{STATUS_DRAFT}' CHECK(status IN ('{STATUS_DRAFT}','{STATUS_PUBLISHED}')),
              version INTEGER NOT NULL DEFAULT 1,
              last_published_at TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              FOREIGN KEY(owner_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS character_pins (
              user_id TEXT NOT NULL,
              character_id TEXT NOT NULL,
              created_at TEXT NOT NULL,
              PRIMARY KEY(user_id, character_id),
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE,
              FOREIGN KEY(character_id) REFERENCES characters(character_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS sessions (
              session_id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              title TEXT NOT NULL DEFAULT '{DEFAULT_SESSION_TITLE}',
              character_id TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              FOREIGN KEY(owner_id) REFERENCES users(user_id) ON DELETE CASCADE,
              FOREIGN KEY(character_id) REFERENCES characters(character_id) ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
              message_id TEXT PRIMARY KEY,
              session_id TEXT NOT NULL,
              role TEXT NOT NULL CHECK(role IN ('user','assistant')),
              content TEXT NOT NULL,
              created_at TEXT NOT NULL,
              FOREIGN KEY(session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_owner_updated
              ON sessions(owner_id, updated_at DESC);

            CREATE INDEX IF NOT EXISTS idx_messages_session_created
              ON messages(session_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_characters_owner
              ON characters(owner_id, updated_at DESC);

            CREATE INDEX IF NOT EXISTS idx_characters_status
              ON characters(status, updated_at DESC);

            CREATE INDEX IF NOT EXISTS idx_character_pins_user
              ON character_pins(user_id, created_at);
            """
        )
        _migrate_db(conn)
        conn.commit()
    finally:
        conn.close()


def _migrate_db(conn: sqlite3.Connection) -> None:
    # users.preferred_model was added after the initial schema.
    cols = [r["name"] for r in conn.execute("PRAGMA table_info(users)").fetchall()]
    if "preferred_model" not in cols:
        conn.execute("ALTER TABLE users ADD COLUMN preferred_model TEXT")
    cols = [r["name"] for r in conn.execute("PRAGMA table_info(sessions)").fetchall()]
    if "character_id" not in cols:
        conn.execute("ALTER TABLE sessions ADD COLUMN character_id TEXT REFERENCES characters(character_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_character ON sessions(character_id);")


# Users


def create_user(*, username: str, preferred_model: str | None = None, user_id: str | None = None) -> dict[str, Any]:
    normalized = normalize_username(username)
    if not normalized:
        raise ValueError("Username is empty")
    user_id = user_id or str(uuid.uuid4())
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO users(user_id, username, username_normalized, preferred_model, created_at)
            VALUES (?,?,?,?,?)
            """,
            (user_id, username.strip(), normalized, preferred_model or None, now),
        )
        conn.commit()
    finally:
        conn.close()
    return {
        "user_id": user_id,
        "username": username.strip(),
        "preferred_model": preferred_model or None,
        "created_at": now,
    }


def get_user(user_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT user_id, username, preferred_model, created_at FROM users WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_user_by_username(username: str) -> dict[str, Any] | None:
    normalized = normalize_username(username)
    if not normalized:
        return None
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT user_id, username, preferred_model, created_at FROM users WHERE username_normalized = ?",
            (normalized,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def set_user_preferred_model(user_id: str, model: str | None) -> None:
    conn = _connect()
    try:
        conn.execute("UPDATE users SET preferred_model = ? WHERE user_id = ?", (model or None, user_id))
        conn.commit()
    finally:
        conn.close()


# Characters


def create_character(
    *,
    owner_id: str,
    name: str,
    prompt: str,
    avatar_url: str | None = None,
    short_description: str | None = None,
) -> dict[str, Any]:
    character_id = str(uuid.uuid4())
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO characters(character_id, owner_id, name, prompt, avatar_url, short_description,
                                   status, version, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,1,?,?)
            """,
            (
                character_id,
                owner_id,
                name.strip(),
                prompt.strip(),
                avatar_url or None,
                (short_description or "").strip() or None,
                STATUS_DRAFT,
                now,
                now,
            ),
        )
        conn.commit()
    finally:
        conn.close()
    created = get_character(character_id)
    assert created is not None
    return created


def get_character(character_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            f"""
            SELECT {_CHARACTER_COLUMNS}
            FROM characters c
            JOIN users u ON u.user_id = c.owner_id
            WHERE c.character_id = ?
            """,
            (character_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_character_owned_by(character_id: str, owner_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            f"""
            SELECT {_CHARACTER_COLUMNS}
            FROM characters c
            JOIN users u ON u.user_id = c.owner_id
            WHERE c.character_id = ? AND c.owner_id = ?
            """,
            (character_id, owner_id),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_character_by_owner_and_name(owner_id: str, name: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            f"""
            SELECT {_CHARACTER_COLUMNS}
            FROM characters c
            JOIN users u ON u.user_id = c.owner_id
            WHERE c.owner_id = ? AND c.name = ?
            """,
            (owner_id, name),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_characters(*, owner_id: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            f"""
            SELECT {_CHARACTER_COLUMNS}
            FROM characters c
            JOIN users u ON u.user_id = c.owner_id
            WHERE c.owner_id = ?
            ORDER BY c.updated_at DESC
            """,
            (owner_id,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def list_published_characters() -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            f"""
            SELECT {_CHARACTER_COLUMNS}
            FROM characters c
            JOIN users u ON u.user_id = c.owner_id
            WHERE c.status = ?
            ORDER BY c.updated_at DESC
            """,
            (STATUS_PUBLISHED,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def update_character(
    *,
    character_id: str,
    owner_id: str,
    name: str,
    prompt: str,
    avatar_url: str | None = None,
    short_description: str | None = None,
) -> dict[str, Any] | None:
    now = _utc_now()
    conn = _connect()
    try:
        cur = conn.execute(
            """
            UPDATE characters
            SET name = ?, prompt = ?, avatar_url = ?, short_description = ?,
                version = version + 1, updated_at = ?
            WHERE character_id = ? AND owner_id = ?
            """,
            (
                name.strip(),
                prompt.strip(),
                avatar_url or None,
                (short_description or "").strip() or None,
                now,
                character_id,
                owner_id,
            ),
        )
        conn.commit()
        changed = cur.rowcount > 0
    finally:
        conn.close()
    return get_character_owned_by(character_id, owner_id) if changed else None


def set_character_status(*, character_id: str, owner_id: str, status: str) -> dict[str, Any] | None:
    if status not in (STATUS_DRAFT, STATUS_PUBLISHED):
        raise ValueError(f"Unknown character status: {status}")
    now = _utc_now()
    conn = _connect()
    try:
        if status == STATUS_PUBLISHED:
            cur = conn.execute(
                """
                UPDATE characters SET status = ?, last_published_at = ?, updated_at = ?
                WHERE character_id = ? AND owner_id = ?
                """,
                (status, now, now, character_id, owner_id),
            )
        else:
            cur = conn.execute(
                "UPDATE characters SET status = ?, updated_at = ? WHERE character_id = ? AND owner_id = ?",
                (status, now, character_id, owner_id),
            )
        conn.commit()
        changed = cur.rowcount > 0
    finally:
        conn.close()
    return get_character_owned_by(character_id, owner_id) if changed else None


def delete_character(*, character_id: str, owner_id: str) -> bool:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM characters WHERE character_id = ? AND owner_id = ?", (character_id, owner_id))
        conn.commit()
        return cur.rowcount > 0
    finally:
        conn.close()


# Pins


def insert_pin(*, user_id: str, character_id: str) -> None:
    conn = _connect()
    try:
        conn.execute(
            "INSERT OR IGNORE INTO character_pins(user_id, character_id, created_at) VALUES (?,?,?)",
            (user_id, character_id, _utc_now()),
        )
        conn.commit()
    finally:
        conn.close()


def delete_pin(*, user_id: str, character_id: str) -> bool:
    conn = _connect()
    try:
        cur = conn.execute(
            "DELETE FROM character_pins WHERE user_id = ? AND character_id = ?",
            (user_id, character_id),
        )
        conn.commit()
        return cur.rowcount > 0
    finally:
        conn.close()


def list_pinned_characters(*, user_id: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            f"""
            SELECT {_CHARACTER_COLUMNS}, p.created_at AS pinned_at
            FROM character_pins p
            JOIN characters c ON c.character_id = p.character_id
            JOIN users u ON u.user_id = c.owner_id
            WHERE p.user_id = ? AND (c.owner_id = ? OR c.status = ?)
            ORDER BY p.created_at ASC
            """,
            (user_id, user_id, STATUS_PUBLISHED),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


# Sessions


def create_session(*, owner_id: str, title: str | None = None, character_id: str | None = None) -> dict[str, Any]:
    session_id = str(uuid.uuid4())
    now = _utc_now()
    title = (title or "").strip() or DEFAULT_SESSION_TITLE

    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO sessions(session_id, owner_id, title, character_id, created_at, updated_at)
            VALUES (?,?,?,?,?,?)
            """,
            (session_id, owner_id, title, character_id, now, now),
        )
        conn.commit()
    finally:
        conn.close()

    return {
        "session_id": session_id,
        "owner_id": owner_id,
        "title": title,
        "character_id": character_id,
        "created_at": now,
        "updated_at": now,
        "message_count": 0,
    }


def get_session_owned_by(session_id: str, owner_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions s WHERE s.session_id = ? AND s.owner_id = ?",
            (session_id, owner_id),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_sessions(*, owner_id: str, limit: int = 100) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM sessions s
            WHERE s.owner_id = ?
            ORDER BY s.updated_at DESC
            LIMIT ?
            """,
            (owner_id, limit),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def set_session_title(session_id: str, owner_id: str, title: str, *, only_if_default: bool = False) -> bool:
    title = (title or "").strip() or DEFAULT_SESSION_TITLE
    sql = "UPDATE sessions SET title = ?, updated_at = ? WHERE session_id = ? AND owner_id = ?"
    params: list[Any] = [title, _utc_now(), session_id, owner_id]
    if only_if_default:
        sql += " AND (title IS NULL OR title = '' OR title = ?)"
        params.append(DEFAULT_SESSION_TITLE)
    conn = _connect()
    try:
        cur = conn.execute(sql, params)
        conn.commit()
        return cur.rowcount > 0
    finally:
        conn.close()


# Messages


def insert_message(session_id: str, role: str, content: str) -> dict[str, Any]:
    if role not in ("user", "assistant"):
        raise ValueError(f"Refusing to store message with role {role!r}")
    message_id = str(uuid.uuid4())
    created_at = _utc_now()

    conn = _connect()
    try:
        conn.execute(
            "INSERT INTO messages(message_id, session_id, role, content, created_at) VALUES (?,?,?,?,?)",
            (message_id, session_id, role, content, created_at),
        )
        conn.execute("UPDATE sessions SET updated_at = ? WHERE session_id = ?", (created_at, session_id))
        conn.commit()
    finally:
        conn.close()

    return {
        "message_id": message_id,
        "session_id": session_id,
        "role": role,
        "content": content,
        "created_at": created_at,
    }


def list_messages(session_id: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT message_id, session_id, role, content, created_at
            FROM messages
            WHERE session_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (session_id,),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]
