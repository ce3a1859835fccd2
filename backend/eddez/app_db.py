from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from . import config
from .defaults import DEFAULT_KNOWLEDGE_BASE
from .logging_utils import get_logger

log = get_logger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect(db_path: Path | None = None) -> sqlite3.Connection:
    # Resolved at call time so tests can point EDDEZ at a temporary database.
    db_path = db_path or config.APP_DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db() -> None:
    conn = _connect()
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
              email TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              password_hash TEXT NOT NULL,
              role TEXT NOT NULL CHECK(role IN ('admin','user')),
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS auth_sessions (
              token_hash TEXT PRIMARY KEY,
              email TEXT NOT NULL,
              created_at TEXT NOT NULL,
              expires_at TEXT NOT NULL,
              last_seen_at TEXT NOT NULL,
              FOREIGN KEY(email) REFERENCES users(email) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS chat_sessions (
              owner_email TEXT NOT NULL,
              session_id TEXT NOT NULL,
              position INTEGER NOT NULL,
              payload_json TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY(owner_email, session_id)
            );

            CREATE TABLE IF NOT EXISTS user_settings (
              email TEXT PRIMARY KEY,
              value_json TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS knowledge_base (
              position INTEGER PRIMARY KEY,
              item_id TEXT NOT NULL,
              payload_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS kb_meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
              key TEXT PRIMARY KEY,
              value_json TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_chat_sessions_owner_position
              ON chat_sessions(owner_email, position);
            """
        )
        _seed_knowledge_base(conn)
        conn.commit()
    finally:
        conn.close()


def _seed_knowledge_base(conn: sqlite3.Connection) -> None:
    # Seed once; an admin emptying the knowledge base later must stay empty.
    row = conn.execute("SELECT value FROM kb_meta WHERE key = 'seeded'").fetchone()
    if row:
        return
    rows = [(i, str(item["id"]), json.dumps(item, ensure_ascii=False)) for i, item in enumerate(DEFAULT_KNOWLEDGE_BASE)]
    conn.executemany("INSERT OR REPLACE INTO knowledge_base(position, item_id, payload_json) VALUES (?,?,?)", rows)
    conn.execute("INSERT INTO kb_meta(key, value) VALUES ('seeded', ?)", (_utc_now(),))
    log.info("Seeded default knowledge base (%d entries)", len(rows))


# --- users ---


def create_user(*, email: str, name: str, password_hash: str, role: str = "user") -> dict[str, Any]:
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO users(email, name, password_hash, role, created_at, updated_at)
            VALUES (?,?,?,?,?,?)
            """,
            (email, name, password_hash, role, now, now),
        )
        conn.commit()
    finally:
        conn.close()
    return {"email": email, "name": name, "role": role, "created_at": now, "updated_at": now}


def get_user(email: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT email, name, password_hash, role, created_at, updated_at FROM users WHERE email = ?",
            (email,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_users(limit: int = 500) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            "SELECT email, name, role, created_at FROM users ORDER BY created_at ASC LIMIT ?",
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def set_user_role(email: str, role: str) -> bool:
    conn = _connect()
    try:
        cur = conn.execute(
            "UPDATE users SET role = ?, updated_at = ? WHERE email = ?",
            (role, _utc_now(), email),
        )
        conn.commit()
        return bool(cur.rowcount)
    finally:
        conn.close()


# --- auth sessions ---


def create_auth_session(*, token_hash: str, email: str, expires_at: str) -> None:
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO auth_sessions(token_hash, email, created_at, expires_at, last_seen_at)
            VALUES (?,?,?,?,?)
            """,
            (token_hash, email, now, expires_at, now),
        )
        conn.commit()
    finally:
        conn.close()


def get_auth_session(token_hash: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT s.token_hash, s.email, s.created_at, s.expires_at, s.last_seen_at,
                   u.name, u.role
            FROM auth_sessions s
            JOIN users u ON u.email = s.email
            WHERE s.token_hash = ?
            """,
            (token_hash,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def touch_auth_session(token_hash: str) -> None:
    conn = _connect()
    try:
        conn.execute("UPDATE auth_sessions SET last_seen_at = ? WHERE token_hash = ?", (_utc_now(), token_hash))
        conn.commit()
    finally:
        conn.close()


def delete_auth_session(token_hash: str) -> None:
    conn = _connect()
    try:
        conn.execute("DELETE FROM auth_sessions WHERE token_hash = ?", (token_hash,))
        conn.commit()
    finally:
        conn.close()


def delete_expired_auth_sessions(now_iso: str) -> int:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM auth_sessions WHERE expires_at < ?", (now_iso,))
        conn.commit()
        return int(cur.rowcount or 0)
    finally:
        conn.close()


# --- chat sessions ---


def list_chat_sessions(owner_email: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            "SELECT payload_json FROM chat_sessions WHERE owner_email = ? ORDER BY position DESC",
            (owner_email,),
        ).fetchall()
    finally:
        conn.close()
    return [json.loads(r["payload_json"]) for r in rows]


def upsert_chat_session(owner_email: str, session: dict[str, Any]) -> None:
    """Replace the session in place when its id exists, otherwise put it first.

    Two writers saving the same id race; the last write wins.
    """
    session_id = str(session["id"])
    payload = json.dumps(session, ensure_ascii=False)
    now = _utc_now()
    conn = _connect()
    try:
        existing = conn.execute(
            "SELECT position FROM chat_sessions WHERE owner_email = ? AND session_id = ?",
            (owner_email, session_id),
        ).fetchone()
        if existing:
            conn.execute(
                "UPDATE chat_sessions SET payload_json = ?, updated_at = ? WHERE owner_email = ? AND session_id = ?",
                (payload, now, owner_email, session_id),
            )
        else:
            row = conn.execute(
                "SELECT COALESCE(MAX(position), 0) AS p FROM chat_sessions WHERE owner_email = ?",
                (owner_email,),
            ).fetchone()
            position = int(row["p"] or 0) + 1
            conn.execute(
                """
                INSERT INTO chat_sessions(owner_email, session_id, position, payload_json, updated_at)
                VALUES (?,?,?,?,?)
                """,
                (owner_email, session_id, position, payload, now),
            )
        conn.commit()
    finally:
        conn.close()


def delete_chat_session(owner_email: str, session_id: str) -> bool:
    conn = _connect()
    try:
        cur = conn.execute(
            "DELETE FROM chat_sessions WHERE owner_email = ? AND session_id = ?",
            (owner_email, session_id),
        )
        conn.commit()
        return bool(cur.rowcount)
    finally:
        conn.close()


# --- per-user settings ---


def get_user_settings(email: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute("SELECT value_json FROM user_settings WHERE email = ?", (email,)).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    try:
        return json.loads(row["value_json"])
    except json.JSONDecodeError:
        log.warning("Ignoring unreadable settings for %s", email)
        return None


def set_user_settings(email: str, values: dict[str, Any]) -> None:
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO user_settings(email, value_json, updated_at) VALUES (?,?,?)
            ON CONFLICT(email) DO UPDATE SET value_json=excluded.value_json, updated_at=excluded.updated_at
            """,
            (email, json.dumps(values, ensure_ascii=False), _utc_now()),
        )
        conn.commit()
    finally:
        conn.close()


# --- knowledge base ---


def list_knowledge_items() -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute("SELECT payload_json FROM knowledge_base ORDER BY position ASC").fetchall()
    finally:
        conn.close()
    return [json.loads(r["payload_json"]) for r in rows]


def replace_knowledge_items(items: list[dict[str, Any]]) -> None:
    rows = [(i, str(item["id"]), json.dumps(item, ensure_ascii=False)) for i, item in enumerate(items)]
    conn = _connect()
    try:
        with conn:
            conn.execute("DELETE FROM knowledge_base")
            conn.executemany("INSERT INTO knowledge_base(position, item_id, payload_json) VALUES (?,?,?)", rows)
    finally:
        conn.close()


# --- server-wide settings ---


def list_settings() -> dict[str, Any]:
    conn = _connect()
    try:
        rows = conn.execute("SELECT key, value_json FROM settings ORDER BY key ASC").fetchall()
    finally:
        conn.close()
    out: dict[str, Any] = {}
    for r in rows:
        try:
            out[r["key"]] = json.loads(r["value_json"])
        except json.JSONDecodeError:
            out[r["key"]] = r["value_json"]
    return out


def set_settings(values: dict[str, Any]) -> None:
    now = _utc_now()
    rows = [(k, json.dumps(v, ensure_ascii=False), now, now) for k, v in values.items()]
    conn = _connect()
    try:
        conn.executemany(
            """
            INSERT INTO settings(key, value_json, created_at, updated_at)
            VALUES (?,?,?,?)
            ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_at=excluded.updated_at
            """,
            rows,
        )
        conn.commit()
    finally:
        conn.close()
