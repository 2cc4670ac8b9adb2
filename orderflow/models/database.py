"""Async SQLite database layer using aiosqlite.

The schema treats SQLite as a document store: each row keeps the full
pydantic document as JSON in ``doc`` next to a handful of indexed columns
used for lookups.  Service orders also carry a ``version`` column so saves
can be made conditional on the version that was read.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite

from orderflow.utils.logger import get_logger

log = get_logger(__name__, component="database")

_JSON_COLUMNS = ("doc", "metadata")


class Database:
    """Thin async wrapper around an aiosqlite connection.

    Parameters
    ----------
    db_path:
        File-system path to the SQLite database, or ``:memory:``.  Parent
        directories are created automatically.
    """

    def __init__(self, db_path: str = "data/orderflow.db") -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection, enable WAL mode, and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.commit()
        log.info("database_connected", path=self._db_path)
        await self.migrate()

    async def close(self) -> None:
        """Close the database connection gracefully."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            log.info("database_closed")

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def migrate(self) -> None:
        """Create all application tables if they do not already exist."""
        assert self._conn is not None, "Database is not connected"

        await self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id         TEXT PRIMARY KEY,
                role       TEXT NOT NULL,
                name       TEXT NOT NULL,
                doc        TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_users_role ON users(role);

            CREATE TABLE IF NOT EXISTS catalog_items (
                id         TEXT PRIMARY KEY,
                creator_id TEXT NOT NULL,
                doc        TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS service_packages (
                id                  TEXT    PRIMARY KEY,
                creator_id          TEXT    NOT NULL,
                catalog_item_id     TEXT    NOT NULL,
                slug                TEXT    UNIQUE NOT NULL,
                is_active           INTEGER NOT NULL DEFAULT 1,
                stats_orders        INTEGER NOT NULL DEFAULT 0,
                stats_completed     INTEGER NOT NULL DEFAULT 0,
                stats_revenue_cents INTEGER NOT NULL DEFAULT 0,
                created_at          TEXT    NOT NULL,
                doc                 TEXT    NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_packages_item
                ON service_packages(catalog_item_id, is_active);

            CREATE TABLE IF NOT EXISTS service_orders (
                id                  TEXT    PRIMARY KEY,
                order_number        TEXT    UNIQUE NOT NULL,
                buyer_id            TEXT    NOT NULL,
                creator_id          TEXT    NOT NULL,
                assigned_creator_id TEXT,
                is_generic_request  INTEGER NOT NULL DEFAULT 0,
                status              TEXT    NOT NULL,
                due_date            TEXT,
                created_at          TEXT    NOT NULL,
                updated_at          TEXT    NOT NULL,
                version             INTEGER NOT NULL DEFAULT 0,
                doc                 TEXT    NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_orders_buyer
                ON service_orders(buyer_id, status);
            CREATE INDEX IF NOT EXISTS idx_orders_creator
                ON service_orders(creator_id, status);
            CREATE INDEX IF NOT EXISTS idx_orders_assigned
                ON service_orders(assigned_creator_id, status);
            CREATE INDEX IF NOT EXISTS idx_orders_generic
                ON service_orders(is_generic_request, status);

            CREATE TABLE IF NOT EXISTS notifications (
                id         INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id    TEXT    NOT NULL,
                kind       TEXT    NOT NULL,
                title      TEXT    NOT NULL,
                message    TEXT    NOT NULL,
                link       TEXT    NOT NULL DEFAULT '',
                metadata   TEXT    NOT NULL DEFAULT '{}',
                is_read    INTEGER NOT NULL DEFAULT 0,
                created_at TEXT    NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_notifications_user
                ON notifications(user_id, is_read);
            """
        )
        await self._conn.commit()
        log.info("database_migrated")

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    @property
    def conn(self) -> aiosqlite.Connection:
        """Return the raw connection, raising if not connected."""
        if self._conn is None:
            raise RuntimeError("Database is not connected. Call connect() first.")
        return self._conn

    async def execute(
        self, sql: str, params: tuple[Any, ...] = ()
    ) -> aiosqlite.Cursor:
        """Execute a SQL statement and commit.

        Returns the cursor so callers can read ``rowcount`` or
        ``lastrowid``.
        """
        cursor = await self.conn.execute(sql, params)
        await self.conn.commit()
        return cursor

    async def fetch_one(
        self, sql: str, params: tuple[Any, ...] = ()
    ) -> dict[str, Any] | None:
        """Fetch a single row as a dictionary, or ``None``."""
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_dict(row)

    async def fetch_all(
        self, sql: str, params: tuple[Any, ...] = ()
    ) -> list[dict[str, Any]]:
        """Fetch all matching rows, each returned as a dictionary."""
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_dict(row) for row in rows]

    @staticmethod
    def _row_to_dict(row: aiosqlite.Row) -> dict[str, Any]:
        """Convert a row to a plain ``dict``, decoding JSON columns."""
        data: dict[str, Any] = dict(row)
        for json_field in _JSON_COLUMNS:
            if json_field in data and isinstance(data[json_field], str):
                try:
                    data[json_field] = json.loads(data[json_field])
                except (json.JSONDecodeError, TypeError):
                    pass
        return data
