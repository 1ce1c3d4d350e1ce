"""
SQLite store for subscriptions.

Subscriptions are owned by the delivery layer; walrus only needs to read
them per change event and to write them through the validated
SubscriptionService. They live in a single SQLite file, so the store has
no dependency on the database whose changes are being evaluated.

Invariants:
    - Filters are stored as JSON text exactly as validated
    - Every write is a single transaction
    - list_for_entity() returns subscriptions in id order

How to change safely:
    - Schema changes must be additive (new nullable columns)
    - Do not call these methods directly for writes; use SubscriptionService

Table schema:
    subscriptions:
        - id INTEGER PRIMARY KEY AUTOINCREMENT
        - user_id TEXT
        - schema_name TEXT
        - table_name TEXT
        - filters_json TEXT (JSON list of {column_name, op, value})
        - created_at INTEGER (Unix ms)
        - INDEX on (schema_name, table_name)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from ..visibility.types import Entity, Filter, Subscription
from .base import StorageError

logger = logging.getLogger(__name__)


class SubscriptionNotFoundError(StorageError):
    """Subscription does not exist."""

    def __init__(self, subscription_id: int) -> None:
        super().__init__(f"Subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class SubscriptionStore:
    """SQLite-backed subscription registry.

    Thread safety:
        A connection is opened per operation. SQLite serializes writers.

    Example:
        >>> store = SubscriptionStore("/var/lib/walrus/subscriptions.db")
        >>> store.initialize()
        >>> sub = await store.create("user-1", Entity("public", "notes"), [])
    """

    def __init__(self, path: str, busy_timeout_ms: int = 5000) -> None:
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # explicit transactions
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode = WAL")
            yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    schema_name TEXT NOT NULL,
                    table_name TEXT NOT NULL,
                    filters_json TEXT NOT NULL DEFAULT '[]',
                    created_at INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_subscriptions_entity
                    ON subscriptions(schema_name, table_name);
            """)
        logger.info("Subscription store initialized", extra={"path": str(self.path)})

    async def create(
        self,
        user_id: str,
        entity: Entity,
        filters: Sequence[Filter],
    ) -> Subscription:
        now = int(time.time() * 1000)
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO subscriptions (user_id, schema_name, table_name,
                                               filters_json, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, entity.schema, entity.name, _dump_filters(filters), now),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return Subscription(
            id=cursor.lastrowid,
            user_id=user_id,
            entity=Entity(entity.schema, entity.name),
            filters=tuple(filters),
            created_at=now,
        )

    async def update_filters(self, subscription_id: int, filters: Sequence[Filter]) -> Subscription:
        """Replace a subscription's filters.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    "UPDATE subscriptions SET filters_json = ? WHERE id = ?",
                    (_dump_filters(filters), subscription_id),
                )
                if cursor.rowcount == 0:
                    raise SubscriptionNotFoundError(subscription_id)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return await self.get(subscription_id)

    async def delete(self, subscription_id: int) -> None:
        """Delete a subscription.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))
            if cursor.rowcount == 0:
                raise SubscriptionNotFoundError(subscription_id)

    async def get(self, subscription_id: int) -> Subscription:
        """Raises SubscriptionNotFoundError if absent."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
            ).fetchone()
        if row is None:
            raise SubscriptionNotFoundError(subscription_id)
        return _row_to_subscription(row)

    async def list_for_entity(self, entity: Entity) -> list[Subscription]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE schema_name = ? AND table_name = ?
                ORDER BY id
                """,
                (entity.schema, entity.name),
            ).fetchall()
        return [_row_to_subscription(row) for row in rows]

    async def list_all(self, limit: int = 1000) -> list[Subscription]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM subscriptions ORDER BY id LIMIT ?", (limit,)
            ).fetchall()
        return [_row_to_subscription(row) for row in rows]

    async def count(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM subscriptions").fetchone()[0]


def _dump_filters(filters: Sequence[Filter]) -> str:
    return json.dumps([f.to_dict() for f in filters])


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        entity=Entity(row["schema_name"], row["table_name"]),
        filters=tuple(Filter.from_dict(f) for f in json.loads(row["filters_json"])),
        created_at=row["created_at"],
    )
