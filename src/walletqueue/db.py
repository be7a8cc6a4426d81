"""Database operations for walletqueue."""

from __future__ import annotations

import logging
import time
import uuid
from enum import Enum
from typing import Any

import aiosqlite

from walletqueue.models import FOREVER, Expiry, TaskRecord, now_millis, to_unix_millis, to_unix_seconds

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Memoized task results
CREATE TABLE IF NOT EXISTS cache (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at INTEGER  -- unix millis, NULL = forever
);

-- Durable queue of top-level tasks, kept until they succeed
CREATE TABLE IF NOT EXISTS queued_tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_name TEXT NOT NULL,
    arguments TEXT NOT NULL,
    added_at INTEGER NOT NULL,
    expires_at INTEGER,
    priority INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    leased_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_queued_tasks_order ON queued_tasks(priority, added_at, id);
CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache(expires_at);

CREATE TABLE IF NOT EXISTS activities (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    service_name TEXT NOT NULL,
    service_key TEXT NOT NULL,
    detail TEXT NOT NULL,
    date INTEGER NOT NULL,
    amount REAL,
    currency TEXT,
    converted_amount REAL,
    converted_currency TEXT,
    request_id TEXT NOT NULL,
    subscription_id TEXT,
    status TEXT NOT NULL DEFAULT 'neutral'
        CHECK (status IN ('neutral', 'positive', 'negative', 'pending')),
    invoice TEXT,
    refunded_activity_id TEXT,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activities_invoice ON activities(invoice);

CREATE TABLE IF NOT EXISTS payment_status (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice TEXT NOT NULL,
    action_type TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_payment_status_invoice ON payment_status(invoice);

CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL,
    service_name TEXT NOT NULL,
    service_key TEXT NOT NULL,
    amount REAL NOT NULL,
    currency TEXT NOT NULL,
    recurrence_calendar TEXT NOT NULL,
    recurrence_first_payment_due INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'cancelled', 'expired')),
    last_payment_date INTEGER,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS processed_cashu_tokens (
    token TEXT PRIMARY KEY,
    mint_url TEXT NOT NULL,
    unit TEXT NOT NULL,
    amount INTEGER NOT NULL,
    processed_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS relays (
    ws_uri TEXT PRIMARY KEY,
    created_at INTEGER NOT NULL
);

-- Nostr Connect (remote signer) state
CREATE TABLE IF NOT EXISTS bunker_secrets (
    secret TEXT PRIMARY KEY,
    used INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS allowed_bunker_clients (
    client_pubkey TEXT PRIMARY KEY,
    client_name TEXT,
    granted_permissions TEXT NOT NULL DEFAULT '',
    revoked INTEGER NOT NULL DEFAULT 0,
    last_seen INTEGER,
    created_at INTEGER NOT NULL
);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """
    Initialize database connection and schema.

    The connection runs in autocommit mode: statements outside a savepoint
    commit immediately, statements inside one commit with it.

    Args:
        db_path: Path to SQLite file or ":memory:" for in-memory.

    Returns:
        Open database connection.
    """
    conn = await aiosqlite.connect(db_path, isolation_level=None)
    conn.row_factory = aiosqlite.Row

    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")

    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ) as cursor:
        exists = await cursor.fetchone()

    if not exists:
        await conn.executescript(SCHEMA)
        await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

    return conn


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _savepoint_sql(verb: str, name: str) -> str:
    quoted = name.replace('"', '""')
    return f'{verb} "{quoted}"'


class DatabaseService:
    """
    The persistence provider tasks depend on.

    Wraps one aiosqlite connection shared by every task in the process.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self._savepoint_counter = 0
        self._open_savepoints: list[str] = []

    @classmethod
    async def open(cls, db_path: str) -> DatabaseService:
        return cls(await init_db(db_path))

    async def close(self) -> None:
        await self.conn.close()

    async def _fetchone(self, sql: str, params: tuple | list = ()) -> dict | None:
        async with self.conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def _fetchall(self, sql: str, params: tuple | list = ()) -> list[dict]:
        async with self.conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    # --- Cache ---

    async def get_cache(self, key: str) -> str | None:
        """Return the cached value for `key` unless it is missing or expired."""
        row = await self._fetchone(
            "SELECT value FROM cache WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
            (key, now_millis()),
        )
        return row["value"] if row else None

    async def set_cache(self, key: str, value: str, expiry: Expiry) -> None:
        expires_at = None if expiry == FOREVER else to_unix_millis(expiry)
        await self.conn.execute(
            "INSERT OR REPLACE INTO cache (key, value, expires_at) VALUES (?, ?, ?)",
            (key, value, expires_at),
        )

    async def purge_expired_cache(self) -> int:
        async with self.conn.execute(
            "DELETE FROM cache WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (now_millis(),),
        ) as cursor:
            return cursor.rowcount

    async def list_cache(self, live_only: bool = False, limit: int = 100) -> list[dict]:
        query = "SELECT * FROM cache"
        params: list = []
        if live_only:
            query += " WHERE expires_at IS NULL OR expires_at > ?"
            params.append(now_millis())
        query += " ORDER BY key LIMIT ?"
        params.append(limit)
        return await self._fetchall(query, params)

    # --- Queue ---

    async def add_queued_task(
        self,
        task_name: str,
        arguments: str,
        expires_at: int | None,
        priority: int = 0,
        leased_by: str | None = None,
    ) -> int:
        """Insert a queue record and return its new id."""
        async with self.conn.execute(
            """
            INSERT INTO queued_tasks (task_name, arguments, added_at, expires_at, priority, leased_by)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (task_name, arguments, to_unix_seconds(time.time()), expires_at, priority, leased_by),
        ) as cursor:
            return cursor.lastrowid

    async def extract_next_queued_task(self, session: str) -> TaskRecord | None:
        """
        Atomically lease the oldest record not already leased by `session`.

        Records leased by a previous process (one that died) are eligible
        again. The record stays in the table until it is deleted.
        """
        async with self.conn.execute(
            """
            UPDATE queued_tasks SET leased_by = ?
            WHERE id = (
                SELECT id FROM queued_tasks
                WHERE leased_by IS NULL OR leased_by != ?
                ORDER BY priority DESC, added_at ASC, id ASC
                LIMIT 1
            )
            RETURNING *
            """,
            (session, session),
        ) as cursor:
            rows = await cursor.fetchall()
        return TaskRecord.from_row(rows[0]) if rows else None

    async def delete_queued_task(self, task_id: int) -> None:
        await self.conn.execute("DELETE FROM queued_tasks WHERE id = ?", (task_id,))

    async def record_failed_attempt(self, task_id: int) -> int:
        """Bump the attempt counter and return the new value."""
        async with self.conn.execute(
            "UPDATE queued_tasks SET attempts = attempts + 1 WHERE id = ? RETURNING attempts",
            (task_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return rows[0]["attempts"] if rows else 0

    async def get_queued_task(self, task_id: int) -> TaskRecord | None:
        row = await self._fetchone("SELECT * FROM queued_tasks WHERE id = ?", (task_id,))
        return TaskRecord.from_row(row) if row else None

    async def list_queued_tasks(self, limit: int = 100) -> list[TaskRecord]:
        rows = await self._fetchall(
            "SELECT * FROM queued_tasks ORDER BY priority DESC, added_at ASC, id ASC LIMIT ?",
            (limit,),
        )
        return [TaskRecord.from_row(row) for row in rows]

    async def count_queued_tasks(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS count FROM queued_tasks")
        return row["count"] if row else 0

    async def purge_expired_queued_tasks(self) -> int:
        async with self.conn.execute(
            "DELETE FROM queued_tasks WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (now_millis(),),
        ) as cursor:
            return cursor.rowcount

    # --- Savepoints ---

    async def start_savepoint(self, name: str) -> str:
        """
        Open a savepoint and return its actual name.

        A counter suffix keeps names unique, so nested or repeated
        savepoints for the same key never collide.
        """
        self._savepoint_counter += 1
        unique = f"{name}_{self._savepoint_counter}"
        await self.conn.execute(_savepoint_sql("SAVEPOINT", unique))
        self._open_savepoints.append(unique)
        logger.debug("Began savepoint %s", unique)
        return unique

    async def release_savepoint(self, name: str) -> None:
        await self.conn.execute(_savepoint_sql("RELEASE SAVEPOINT", name))
        self._forget_savepoint(name)
        logger.debug("Released savepoint %s", name)

    async def rollback_savepoint(self, name: str) -> None:
        """Undo everything since the savepoint and remove it from the stack."""
        await self.conn.execute(_savepoint_sql("ROLLBACK TO SAVEPOINT", name))
        await self.conn.execute(_savepoint_sql("RELEASE SAVEPOINT", name))
        self._forget_savepoint(name)
        logger.debug("Rolled back savepoint %s", name)

    def _forget_savepoint(self, name: str) -> None:
        # Releasing a savepoint also releases every savepoint opened after it.
        if name in self._open_savepoints:
            del self._open_savepoints[self._open_savepoints.index(name):]

    @property
    def in_savepoint(self) -> bool:
        return bool(self._open_savepoints)

    # --- Activities ---

    async def add_activity(self, activity: dict[str, Any]) -> str:
        activity_id = uuid.uuid4().hex
        await self.conn.execute(
            """
            INSERT INTO activities (
                id, type, service_name, service_key, detail, date, amount, currency,
                converted_amount, converted_currency, request_id, subscription_id,
                status, invoice, refunded_activity_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                activity_id,
                _plain(activity["type"]),
                activity["service_name"],
                activity["service_key"],
                activity["detail"],
                to_unix_seconds(activity.get("date") or time.time()),
                activity.get("amount"),
                activity.get("currency"),
                activity.get("converted_amount"),
                activity.get("converted_currency"),
                activity["request_id"],
                activity.get("subscription_id"),
                _plain(activity.get("status") or "neutral"),
                activity.get("invoice"),
                activity.get("refunded_activity_id"),
                to_unix_seconds(time.time()),
            ),
        )
        logger.info("Activity %s of type %s added", activity_id, _plain(activity["type"]))
        return activity_id

    async def get_activity(self, activity_id: str) -> dict | None:
        return await self._fetchone("SELECT * FROM activities WHERE id = ?", (activity_id,))

    async def get_activity_from_invoice(self, invoice: str) -> dict | None:
        return await self._fetchone(
            "SELECT * FROM activities WHERE invoice = ? ORDER BY created_at DESC LIMIT 1",
            (invoice,),
        )

    async def update_activity_status(self, activity_id: str, status: str, detail: str) -> None:
        await self.conn.execute(
            "UPDATE activities SET status = ?, detail = ? WHERE id = ?",
            (_plain(status), detail, activity_id),
        )

    async def list_activities(
        self,
        *,
        type: str | None = None,
        request_id: str | None = None,
        limit: int = 100,
    ) -> list[dict]:
        query = "SELECT * FROM activities WHERE 1=1"
        params: list = []
        if type:
            query += " AND type = ?"
            params.append(_plain(type))
        if request_id:
            query += " AND request_id = ?"
            params.append(request_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return await self._fetchall(query, params)

    async def count_activities(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS count FROM activities")
        return row["count"] if row else 0

    # --- Payment status log ---

    async def add_payment_status_entry(self, invoice: str, action: str) -> None:
        await self.conn.execute(
            "INSERT INTO payment_status (invoice, action_type, created_at) VALUES (?, ?, ?)",
            (invoice, _plain(action), to_unix_seconds(time.time())),
        )

    async def get_payment_status_entries(self, invoice: str) -> list[dict]:
        return await self._fetchall(
            "SELECT * FROM payment_status WHERE invoice = ? ORDER BY id ASC", (invoice,)
        )

    # --- Subscriptions ---

    async def add_subscription(self, subscription: dict[str, Any]) -> str:
        subscription_id = subscription.get("id") or uuid.uuid4().hex
        await self.conn.execute(
            """
            INSERT INTO subscriptions (
                id, request_id, service_name, service_key, amount, currency,
                recurrence_calendar, recurrence_first_payment_due, status,
                last_payment_date, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscription_id,
                subscription["request_id"],
                subscription["service_name"],
                subscription["service_key"],
                subscription["amount"],
                subscription["currency"],
                subscription["recurrence_calendar"],
                to_unix_seconds(subscription["recurrence_first_payment_due"]),
                subscription.get("status", "active"),
                subscription.get("last_payment_date"),
                to_unix_seconds(time.time()),
            ),
        )
        return subscription_id

    async def get_subscription(self, subscription_id: str) -> dict | None:
        return await self._fetchone(
            "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
        )

    async def update_subscription_status(self, subscription_id: str, status: str) -> None:
        await self.conn.execute(
            "UPDATE subscriptions SET status = ? WHERE id = ?", (status, subscription_id)
        )

    async def update_subscription_last_payment(self, subscription_id: str, paid_at: int) -> None:
        await self.conn.execute(
            "UPDATE subscriptions SET last_payment_date = ? WHERE id = ?",
            (paid_at, subscription_id),
        )

    # --- E-cash ---

    async def mark_cashu_token_as_processed(
        self, token: str, mint_url: str, unit: str, amount: int
    ) -> bool:
        """Record `token` as processed. Returns True if it already was."""
        async with self.conn.execute(
            """
            INSERT OR IGNORE INTO processed_cashu_tokens (token, mint_url, unit, amount, processed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (token, mint_url, unit, amount, to_unix_seconds(time.time())),
        ) as cursor:
            return cursor.rowcount == 0

    # --- Relays ---

    async def add_relay(self, ws_uri: str) -> None:
        await self.conn.execute(
            "INSERT OR IGNORE INTO relays (ws_uri, created_at) VALUES (?, ?)",
            (ws_uri, to_unix_seconds(time.time())),
        )

    async def get_relays(self) -> list[str]:
        rows = await self._fetchall("SELECT ws_uri FROM relays ORDER BY created_at, ws_uri")
        return [row["ws_uri"] for row in rows]

    # --- Nostr Connect ---

    async def add_bunker_secret(self, secret: str) -> None:
        await self.conn.execute(
            "INSERT OR IGNORE INTO bunker_secrets (secret, created_at) VALUES (?, ?)",
            (secret, to_unix_seconds(time.time())),
        )

    async def use_bunker_secret(self, secret: str) -> bool:
        """Consume a one-time secret. Returns False if unknown or already used."""
        async with self.conn.execute(
            "UPDATE bunker_secrets SET used = 1 WHERE secret = ? AND used = 0", (secret,)
        ) as cursor:
            return cursor.rowcount == 1

    async def add_allowed_bunker_client(
        self, client_pubkey: str, client_name: str | None, granted_permissions: str
    ) -> None:
        await self.conn.execute(
            """
            INSERT OR REPLACE INTO allowed_bunker_clients
                (client_pubkey, client_name, granted_permissions, revoked, created_at)
            VALUES (?, ?, ?, 0, ?)
            """,
            (client_pubkey, client_name, granted_permissions, to_unix_seconds(time.time())),
        )

    async def get_bunker_client(self, client_pubkey: str) -> dict | None:
        return await self._fetchone(
            "SELECT * FROM allowed_bunker_clients WHERE client_pubkey = ?", (client_pubkey,)
        )

    async def update_bunker_client_last_seen(self, client_pubkey: str) -> None:
        await self.conn.execute(
            "UPDATE allowed_bunker_clients SET last_seen = ? WHERE client_pubkey = ?",
            (to_unix_seconds(time.time()), client_pubkey),
        )
