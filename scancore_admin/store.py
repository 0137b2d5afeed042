"""Relational store used by the installer, the health checks and the debug page.

Connections are scoped: :meth:`Store.connection` opens one and always closes
it, :meth:`Store.transaction` additionally commits on success and rolls back
on error. PostgreSQL is the production backend; sqlite is used for local runs
and tests.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import psycopg2

ROLE_ADMIN = "ADMIN"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id {id_column},
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        password TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'USER',
        created_at {timestamp_column}
    )
    """,
    # At most one ADMIN row; the losing side of a concurrent install gets an integrity error.
    "CREATE UNIQUE INDEX IF NOT EXISTS users_single_admin ON users (role) WHERE role = 'ADMIN'",
    """
    CREATE TABLE IF NOT EXISTS system_config (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'string'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_config (
        id {id_column},
        host TEXT NOT NULL,
        port INTEGER NOT NULL,
        username TEXT,
        password TEXT,
        from_address TEXT NOT NULL,
        from_name TEXT,
        secure {bool_type} NOT NULL DEFAULT {false},
        is_active {bool_type} NOT NULL DEFAULT {false}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_config (
        id {id_column},
        name TEXT NOT NULL UNIQUE,
        base_url TEXT NOT NULL,
        enabled {bool_type} NOT NULL DEFAULT {true},
        priority INTEGER NOT NULL DEFAULT 0
    )
    """,
)


class StoreError(RuntimeError):
    pass


class StoreConflictError(StoreError):
    """A unique constraint rejected the write, usually because of a concurrent request."""


class Store:
    backend = ""
    placeholder = "%s"
    id_column = ""
    timestamp_column = ""
    bool_type = "BOOLEAN"
    integrity_errors: tuple[type[Exception], ...] = ()
    tables_query = ""

    def _connect(self):
        raise NotImplementedError

    def _sql(self, statement: str) -> str:
        if self.placeholder == "%s":
            return statement
        return statement.replace("%s", self.placeholder)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        with self.connection() as conn:
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def execute(self, conn, statement: str, params: tuple = ()):
        cur = conn.cursor()
        try:
            cur.execute(self._sql(statement), params)
        except self.integrity_errors as exc:
            cur.close()
            raise StoreConflictError(str(exc).strip()) from exc
        except Exception:
            cur.close()
            raise
        return cur

    def _fetchall(self, statement: str, params: tuple = ()) -> list[tuple]:
        with self.connection() as conn:
            cur = self.execute(conn, statement, params)
            try:
                return list(cur.fetchall())
            finally:
                cur.close()

    def _scalar(self, statement: str, params: tuple = ()) -> Any:
        rows = self._fetchall(statement, params)
        return rows[0][0] if rows else None

    def ping(self) -> None:
        self._scalar("SELECT 1")

    def ensure_schema(self) -> None:
        with self.transaction() as conn:
            for ddl in _SCHEMA:
                statement = ddl.format(
                    id_column=self.id_column,
                    timestamp_column=self.timestamp_column,
                    bool_type=self.bool_type,
                    true="TRUE",
                    false="FALSE",
                )
                self.execute(conn, statement).close()

    def list_tables(self) -> list[str]:
        return [row[0] for row in self._fetchall(self.tables_query)]

    # --------- users ----------
    def count_users(self, role: str | None = None) -> int:
        if role is None:
            return int(self._scalar("SELECT COUNT(*) FROM users"))
        return int(self._scalar("SELECT COUNT(*) FROM users WHERE role = %s", (role,)))

    def find_user(self, email: str) -> dict[str, Any] | None:
        rows = self._fetchall("SELECT id, email, name, password, role FROM users WHERE email = %s", (email,))
        if not rows:
            return None
        keys = ("id", "email", "name", "password", "role")
        return dict(zip(keys, rows[0]))

    def create_admin(self, *, email: str, name: str, password_hash: str) -> bool:
        """Insert the first ADMIN user; returns False when an admin already exists."""
        with self.transaction() as conn:
            cur = self.execute(conn, "SELECT COUNT(*) FROM users WHERE role = %s", (ROLE_ADMIN,))
            existing = cur.fetchone()[0]
            cur.close()
            if existing:
                return False
            self.execute(
                conn,
                "INSERT INTO users (email, name, password, role) VALUES (%s, %s, %s, %s)",
                (email, name, password_hash, ROLE_ADMIN),
            ).close()
        return True

    # --------- email ----------
    def has_active_email_config(self) -> bool:
        return bool(self._scalar("SELECT COUNT(*) FROM email_config WHERE is_active = %s", (True,)))

    def count_email_configs(self) -> int:
        return int(self._scalar("SELECT COUNT(*) FROM email_config"))

    def save_email_config(
        self,
        *,
        host: str,
        port: int,
        username: str | None,
        password: str | None,
        from_address: str,
        from_name: str | None,
        secure: bool,
    ) -> None:
        values = (host, port, username, password, from_address, from_name, secure)
        with self.transaction() as conn:
            cur = self.execute(conn, "SELECT id FROM email_config WHERE is_active = %s ORDER BY id", (True,))
            row = cur.fetchone()
            cur.close()
            if row:
                self.execute(
                    conn,
                    """
                    UPDATE email_config
                    SET host = %s, port = %s, username = %s, password = %s,
                        from_address = %s, from_name = %s, secure = %s
                    WHERE id = %s
                    """,
                    values + (row[0],),
                ).close()
                return
            self.execute(
                conn,
                """
                INSERT INTO email_config (host, port, username, password, from_address, from_name, secure, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                values + (True,),
            ).close()

    # --------- product APIs ----------
    def has_enabled_api_config(self) -> bool:
        return bool(self._scalar("SELECT COUNT(*) FROM api_config WHERE enabled = %s", (True,)))

    def count_api_configs(self) -> int:
        return int(self._scalar("SELECT COUNT(*) FROM api_config"))

    def add_api_config(self, *, name: str, base_url: str, enabled: bool = True, priority: int = 0) -> bool:
        """Insert an API config unless one with ``name`` exists; returns whether a row was written."""
        with self.transaction() as conn:
            cur = self.execute(conn, "SELECT COUNT(*) FROM api_config WHERE name = %s", (name,))
            existing = cur.fetchone()[0]
            cur.close()
            if existing:
                return False
            self.execute(
                conn,
                "INSERT INTO api_config (name, base_url, enabled, priority) VALUES (%s, %s, %s, %s)",
                (name, base_url, enabled, priority),
            ).close()
        return True

    def list_api_configs(self, *, enabled_only: bool = False) -> list[dict[str, Any]]:
        statement = "SELECT name, base_url, enabled, priority FROM api_config"
        params: tuple = ()
        if enabled_only:
            statement += " WHERE enabled = %s"
            params = (True,)
        statement += " ORDER BY priority, name"
        return [
            {"name": name, "base_url": base_url, "enabled": bool(enabled), "priority": priority}
            for name, base_url, enabled, priority in self._fetchall(statement, params)
        ]

    # --------- system config ----------
    def set_system_config(self, entries: list[tuple[str, str, str]]) -> None:
        """Upsert ``(key, value, type)`` rows in a single transaction."""
        with self.transaction() as conn:
            for key, value, value_type in entries:
                self.execute(
                    conn,
                    """
                    INSERT INTO system_config (key, value, type) VALUES (%s, %s, %s)
                    ON CONFLICT (key) DO UPDATE SET value = excluded.value, type = excluded.type
                    """,
                    (key, value, value_type),
                ).close()

    def get_system_config(self, key: str) -> Any:
        rows = self._fetchall("SELECT value, type FROM system_config WHERE key = %s", (key,))
        if not rows:
            return None
        return decode_config_value(*rows[0])

    def count_system_config(self) -> int:
        return int(self._scalar("SELECT COUNT(*) FROM system_config"))


def decode_config_value(value: str, value_type: str) -> Any:
    if value_type == "boolean":
        return value.strip().lower() == "true"
    if value_type == "number":
        try:
            return int(value)
        except ValueError:
            return float(value)
    return value


class PostgresStore(Store):
    backend = "postgresql"
    id_column = "SERIAL PRIMARY KEY"
    timestamp_column = "TIMESTAMPTZ NOT NULL DEFAULT NOW()"
    integrity_errors = (psycopg2.IntegrityError,)
    tables_query = "SELECT tablename FROM pg_tables WHERE schemaname = 'public' ORDER BY tablename"

    def __init__(self, dsn: str, *, connect_timeout: int = 5) -> None:
        self.dsn = _libpq_dsn(dsn)
        self.connect_timeout = connect_timeout

    def _connect(self):
        try:
            return psycopg2.connect(self.dsn, connect_timeout=self.connect_timeout)
        except psycopg2.Error as exc:
            raise StoreError(f"Database not reachable: {str(exc).strip()}") from exc


class SqliteStore(Store):
    backend = "sqlite"
    placeholder = "?"
    id_column = "INTEGER PRIMARY KEY AUTOINCREMENT"
    timestamp_column = "TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP"
    bool_type = "INTEGER"
    integrity_errors = (sqlite3.IntegrityError,)
    tables_query = "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"

    def __init__(self, path: Path, *, create: bool = True) -> None:
        self.path = Path(path)
        self.create = create

    def _connect(self):
        if not self.create and not self.path.exists():
            raise StoreError(f"Database file not found: {self.path}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return sqlite3.connect(self.path, timeout=5)
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"Database not reachable: {exc}") from exc


def _libpq_dsn(url: str) -> str:
    # ?schema=public is a Prisma-only parameter that libpq rejects.
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "schema"]
    return urlunsplit(parts._replace(query=urlencode(query)))


def create_store(database_url: str) -> Store:
    if database_url.startswith("sqlite:"):
        path = database_url[len("sqlite:") :]
        if path.startswith("///"):
            path = path[3:]
        if not path or path == ":memory:":
            raise ValueError("sqlite store needs a file path, e.g. sqlite:///data/scancore.db")
        return SqliteStore(Path(path))
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresStore(database_url)
    raise ValueError(f"Unsupported DATABASE_URL scheme: {database_url.split(':', 1)[0]}")


__all__ = [
    "ROLE_ADMIN",
    "Store",
    "StoreError",
    "StoreConflictError",
    "PostgresStore",
    "SqliteStore",
    "create_store",
    "decode_config_value",
]
