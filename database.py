#!/usr/bin/env python3
"""
CRTalk – database helpers (PostgreSQL version)

• ThreadedConnectionPool with direct-connect fallback
• Schema bootstrap: users, chat_groups, group_members, messages
• Store classes consumed by the core:
    PgUserStore, PgMembershipStore, PgMessageStore

Membership inserts rely on the (user_id, group_id) primary key and
INSERT … ON CONFLICT DO NOTHING; status transitions are a single
conditional UPDATE. Neither path does check-then-act in Python.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import psycopg2
import psycopg2.errors
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from constants import get_db_connection_string, sanitize_postgres_dsn, redact_dsn
from models import Group, Membership, MembershipStatus, Message, Role, User, new_id
from stores import search_terms


def _log_table_owner_mismatch(conn, table_name: str) -> None:
    """Log actionable guidance when the connected DB user can't ALTER a table.

    Most common cause: tables were created by a different Postgres role (owner),
    but the DSN in server_config.json uses another role.
    """
    try:
        conn.rollback()
        with conn.cursor() as cur:
            cur.execute("SELECT current_user, current_database();")
            current_user, current_db = cur.fetchone()
            cur.execute(
                "SELECT tableowner FROM pg_tables WHERE schemaname = 'public' AND tablename = %s;",
                (table_name,),
            )
            row = cur.fetchone()
            owner = row[0] if row else None

        logging.error(
            "DB migration blocked: connected as '%s' but public.%s is owned by '%s'.",
            current_user,
            table_name,
            owner,
        )
        logging.error("Fix (run as a superuser / postgres):")
        logging.error(
            "  sudo -u postgres psql -d %s -c \"ALTER TABLE public.%s OWNER TO %s;\"",
            current_db,
            table_name,
            current_user,
        )
    except psycopg2.Error as exc:
        logging.error("Could not inspect table ownership for troubleshooting: %s", exc)


# ----------------------------------------------------------------------
# Connection helpers
# ----------------------------------------------------------------------

# Optional global connection pool. Enabled by calling init_db_pool().
_POOL: ThreadedConnectionPool | None = None
_DSN: str | None = None


def init_db_pool(minconn: int = 1, maxconn: int = 10, dsn: str | None = None) -> None:
    """Initialise a global ThreadedConnectionPool.

    Safe to call multiple times (no-op after first init).
    """
    global _POOL, _DSN
    if _POOL is not None:
        return

    _DSN = str(sanitize_postgres_dsn(dsn or get_db_connection_string()))

    try:
        _POOL = ThreadedConnectionPool(minconn=int(minconn), maxconn=int(maxconn), dsn=_DSN)
        logging.info("✅  Postgres connection pool ready (min=%s max=%s)", minconn, maxconn)
    except psycopg2.Error as e:
        _POOL = None
        logging.warning("⚠️  Could not initialise Postgres pool; falling back to direct connects: %s", e)


def close_db_pool() -> None:
    global _POOL
    if _POOL is not None:
        _POOL.closeall()
        _POOL = None


def _acquire_conn():
    """Acquire a connection either from the pool or by direct connect.

    Returns (conn, from_pool: bool)
    """
    if _POOL is not None:
        return _POOL.getconn(), True
    return psycopg2.connect(_DSN or get_db_connection_string()), False


def _release_conn(conn, from_pool: bool) -> None:
    if conn is None:
        return
    if _POOL is not None and from_pool:
        try:
            # Ensure a clean connection is returned to the pool.
            conn.rollback()
        except psycopg2.Error:
            pass
        _POOL.putconn(conn)
    else:
        conn.close()


@contextmanager
def db_cursor(dict_rows: bool = False):
    """Yield a cursor inside one transaction; commit on success, roll back on error."""
    conn, from_pool = _acquire_conn()
    try:
        factory = RealDictCursor if dict_rows else None
        with conn.cursor(cursor_factory=factory) as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _release_conn(conn, from_pool)


# ----------------------------------------------------------------------
# Schema
# ----------------------------------------------------------------------

_SCHEMA = {
    "users": """
        CREATE TABLE IF NOT EXISTS users (
            id               TEXT PRIMARY KEY,
            username         TEXT NOT NULL UNIQUE,
            password_hash    TEXT NOT NULL,
            refresh_token    TEXT,
            token_created    TIMESTAMPTZ,
            token_expires    TIMESTAMPTZ,
            created_at       TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
    """,
    "chat_groups": """
        CREATE TABLE IF NOT EXISTS chat_groups (
            id          TEXT PRIMARY KEY,
            name        TEXT NOT NULL,
            is_public   BOOLEAN NOT NULL DEFAULT FALSE,
            created_at  TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
    """,
    "group_members": """
        CREATE TABLE IF NOT EXISTS group_members (
            user_id    TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            group_id   TEXT NOT NULL REFERENCES chat_groups(id) ON DELETE CASCADE,
            role       TEXT NOT NULL,
            status     TEXT NOT NULL,
            PRIMARY KEY (user_id, group_id)
        );
    """,
    "messages": """
        CREATE TABLE IF NOT EXISTS messages (
            id              TEXT PRIMARY KEY,
            group_id        TEXT NOT NULL REFERENCES chat_groups(id) ON DELETE CASCADE,
            user_id         TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            content         TEXT,
            timestamp       TIMESTAMPTZ NOT NULL,
            file_url        TEXT,
            mime_type       TEXT,
            is_deleted      BOOLEAN NOT NULL DEFAULT FALSE,
            last_edited_at  TIMESTAMPTZ
        );
    """,
}

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_messages_group_ts ON messages (group_id, timestamp DESC);",
    "CREATE INDEX IF NOT EXISTS idx_chat_groups_public ON chat_groups (is_public);",
)


def init_database() -> None:
    """
    Create the schema if missing.
    Called once at application startup.
    """
    logging.info("🔧  Initialising DB…")
    conn, from_pool = _acquire_conn()
    try:
        for table, ddl in _SCHEMA.items():
            try:
                with conn.cursor() as cur:
                    cur.execute(ddl)
                conn.commit()
            except psycopg2.errors.InsufficientPrivilege:
                _log_table_owner_mismatch(conn, table)
                raise
        with conn.cursor() as cur:
            for stmt in _INDEXES:
                cur.execute(stmt)
        conn.commit()
    finally:
        _release_conn(conn, from_pool)

    logging.info("✅  DB ready at %s", redact_dsn(_DSN or get_db_connection_string()))


def get_db_identity() -> dict:
    """Return runtime identity information for the current DB connection.

    Helps detect 'wrong database / wrong role' mistakes quickly.
    """
    out = {"current_user": None, "current_database": None, "server_version": None}
    try:
        with db_cursor() as cur:
            cur.execute("SELECT current_user, current_database(), version();")
            row = cur.fetchone()
        if row:
            out["current_user"], out["current_database"], out["server_version"] = row
    except psycopg2.Error as exc:
        out["error"] = str(exc)
    return out


# ----------------------------------------------------------------------
# Stores
# ----------------------------------------------------------------------

def _user(row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        password_hash=row["password_hash"],
        refresh_token=row["refresh_token"],
        token_created=row["token_created"],
        token_expires=row["token_expires"],
    )


def _group(row) -> Group:
    return Group(id=row["id"], name=row["name"], is_public=bool(row["is_public"]))


def _message(row) -> Message:
    return Message(
        id=row["id"],
        group_id=row["group_id"],
        user_id=row["user_id"],
        content=row["content"],
        timestamp=row["timestamp"],
        file_url=row["file_url"],
        mime_type=row["mime_type"],
        is_deleted=bool(row["is_deleted"]),
        last_edited_at=row["last_edited_at"],
    )


_USER_COLS = "id, username, password_hash, refresh_token, token_created, token_expires"
_MESSAGE_COLS = "id, group_id, user_id, content, timestamp, file_url, mime_type, is_deleted, last_edited_at"


class PgUserStore:
    def create(self, username: str, password_hash: str) -> Optional[User]:
        with db_cursor(dict_rows=True) as cur:
            cur.execute(
                f"""
                INSERT INTO users (id, username, password_hash)
                VALUES (%s, %s, %s)
                ON CONFLICT (username) DO NOTHING
                RETURNING {_USER_COLS};
                """,
                (new_id(), username, password_hash),
            )
            row = cur.fetchone()
        return _user(row) if row else None

    def get(self, user_id: str) -> Optional[User]:
        with db_cursor(dict_rows=True) as cur:
            cur.execute(f"SELECT {_USER_COLS} FROM users WHERE id = %s;", (user_id,))
            row = cur.fetchone()
        return _user(row) if row else None

    def get_by_username(self, username: str) -> Optional[User]:
        with db_cursor(dict_rows=True) as cur:
            cur.execute(f"SELECT {_USER_COLS} FROM users WHERE username = %s;", (username,))
            row = cur.fetchone()
        return _user(row) if row else None

    def usernames_for(self, user_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        with db_cursor() as cur:
            cur.execute("SELECT id, username FROM users WHERE id = ANY(%s);", (ids,))
            return {uid: name for uid, name in cur.fetchall()}

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with db_cursor() as cur:
            cur.execute("UPDATE users SET password_hash = %s WHERE id = %s;", (password_hash, user_id))

    def set_refresh_token(self, user_id: str, token: str, created: datetime, expires: datetime) -> None:
        with db_cursor() as cur:
            cur.execute(
                """
                UPDATE users
                   SET refresh_token = %s, token_created = %s, token_expires = %s
                 WHERE id = %s;
                """,
                (token, created, expires, user_id),
            )

    def rotate_refresh_token(
        self, user_id: str, expected: str, token: str, created: datetime, expires: datetime
    ) -> bool:
        with db_cursor() as cur:
            cur.execute(
                """
                UPDATE users
                   SET refresh_token = %s, token_created = %s, token_expires = %s
                 WHERE id = %s
                   AND refresh_token = %s;
                """,
                (token, created, expires, user_id, expected),
            )
            return cur.rowcount == 1


class PgMembershipStore:
    def create_group(self, name: str, is_public: bool, creator_id: str) -> Group:
        group = Group(id=new_id(), name=name, is_public=bool(is_public))
        with db_cursor() as cur:
            cur.execute(
                "INSERT INTO chat_groups (id, name, is_public) VALUES (%s, %s, %s);",
                (group.id, group.name, group.is_public),
            )
            cur.execute(
                "INSERT INTO group_members (user_id, group_id, role, status) VALUES (%s, %s, %s, %s);",
                (creator_id, group.id, Role.ADMIN.value, MembershipStatus.ACTIVE.value),
            )
        return group

    def get_group(self, group_id: str) -> Optional[Group]:
        with db_cursor(dict_rows=True) as cur:
            cur.execute("SELECT id, name, is_public FROM chat_groups WHERE id = %s;", (group_id,))
            row = cur.fetchone()
        return _group(row) if row else None

    def list_public_groups(self) -> List[Group]:
        with db_cursor(dict_rows=True) as cur:
            cur.execute("SELECT id, name, is_public FROM chat_groups WHERE is_public ORDER BY lower(name);")
            return [_group(r) for r in cur.fetchall()]

    def try_insert(self, user_id: str, group_id: str, role: Role, status: MembershipStatus) -> bool:
        with db_cursor() as cur:
            cur.execute(
                """
                INSERT INTO group_members (user_id, group_id, role, status)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, group_id) DO NOTHING;
                """,
                (user_id, group_id, Role(role).value, MembershipStatus(status).value),
            )
            return cur.rowcount == 1

    def get(self, user_id: str, group_id: str) -> Optional[Membership]:
        with db_cursor(dict_rows=True) as cur:
            cur.execute(
                "SELECT role, status FROM group_members WHERE user_id = %s AND group_id = %s;",
                (user_id, group_id),
            )
            row = cur.fetchone()
        if not row:
            return None
        return Membership(user_id, group_id, Role(row["role"]), MembershipStatus(row["status"]))

    def update_status(
        self, user_id: str, group_id: str, expected: MembershipStatus, new: MembershipStatus
    ) -> bool:
        with db_cursor() as cur:
            cur.execute(
                """
                UPDATE group_members
                   SET status = %s
                 WHERE user_id = %s
                   AND group_id = %s
                   AND status = %s;
                """,
                (MembershipStatus(new).value, user_id, group_id, MembershipStatus(expected).value),
            )
            return cur.rowcount == 1


class PgMessageStore:
    def insert(self, message: Message) -> None:
        with db_cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO messages ({_MESSAGE_COLS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s);
                """,
                (
                    message.id,
                    message.group_id,
                    message.user_id,
                    message.content,
                    message.timestamp,
                    message.file_url,
                    message.mime_type,
                    message.is_deleted,
                    message.last_edited_at,
                ),
            )

    def get_by_id(self, message_id: str) -> Optional[Message]:
        with db_cursor(dict_rows=True) as cur:
            cur.execute(f"SELECT {_MESSAGE_COLS} FROM messages WHERE id = %s;", (message_id,))
            row = cur.fetchone()
        return _message(row) if row else None

    def replace(self, message_id: str, message: Message) -> None:
        with db_cursor() as cur:
            cur.execute(
                """
                UPDATE messages
                   SET content = %s, file_url = %s, mime_type = %s,
                       is_deleted = %s, last_edited_at = %s
                 WHERE id = %s;
                """,
                (
                    message.content,
                    message.file_url,
                    message.mime_type,
                    message.is_deleted,
                    message.last_edited_at,
                    message_id,
                ),
            )

    def query(
        self, group_id: str, page: int, page_size: int, search_text: Optional[str] = None
    ) -> List[Message]:
        terms = search_terms(search_text)
        sql = f"SELECT {_MESSAGE_COLS} FROM messages WHERE group_id = %s"
        params: list = [group_id]
        if terms:
            sql += " AND content ILIKE ANY(%s)"
            params.append([f"%{_escape_like(t)}%" for t in terms])
        sql += " ORDER BY timestamp DESC, id DESC OFFSET %s LIMIT %s;"
        params.extend([(page - 1) * page_size, page_size])
        with db_cursor(dict_rows=True) as cur:
            cur.execute(sql, params)
            return [_message(r) for r in cur.fetchall()]


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
