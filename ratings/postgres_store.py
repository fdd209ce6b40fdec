"""
PostgresStore adapter for the ratings kernel.

Implements the ReviewStore interface on two tables:
- restaurants: one row per restaurant, aggregate columns included
- ratings: one row per review, keyed by (id, restaurant_id)

Transactions run at READ COMMITTED and lock the rows they read
(SELECT ... FOR UPDATE): writers to one restaurant queue on its row lock
and each waiter reads the row as last committed. Deadlocks and
serialization failures are retried with jittered exponential backoff up
to max_attempts.

Change notification: row triggers (see alembic/versions/001) call
pg_notify('record_changes', '<collection>/<id>'); a dedicated connection
LISTENs and republishes into the store's ChangeFeed.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import asyncpg

from ratings.store import SERVER_TIMESTAMP, ReviewStore, Transaction
from ratings.types import (
    FILTER_OPS,
    RESTAURANTS,
    DocumentRef,
    InvalidInput,
    QuerySpec,
    StorageTransactionFailed,
    Timestamp,
    parent_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOTIFY_CHANNEL = "record_changes"

RESTAURANT_COLUMNS = frozenset(
    {"name", "category", "city", "price", "photo", "num_ratings", "sum_rating", "avg_rating", "timestamp"}
)
RATING_COLUMNS = frozenset({"rating", "text", "user_id", "timestamp"})

_RETRYABLE = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


def _q(name: str) -> str:
    return f'"{name}"'


def _table(collection: str) -> tuple[str, frozenset[str], str | None]:
    """Map a collection path to (table, writable columns, owning restaurant id)."""
    if collection == RESTAURANTS:
        return "restaurants", RESTAURANT_COLUMNS, None
    owner = parent_id(collection)
    if owner is not None:
        return "ratings", RATING_COLUMNS, owner
    raise InvalidInput(f"Unknown collection: {collection!r}")


def _columns(columns: frozenset[str], data: dict[str, Any]) -> list[str]:
    unknown = set(data) - columns
    if unknown:
        raise InvalidInput(f"Unknown fields: {sorted(unknown)}")
    return sorted(data)


def _row_to_data(row: asyncpg.Record) -> dict[str, Any]:
    """Convert a database row to record fields (ids stripped, store-native timestamp)."""
    data = {k: v for k, v in dict(row).items() if k not in ("id", "restaurant_id")}
    if data.get("timestamp") is not None:
        data["timestamp"] = Timestamp.from_datetime(data["timestamp"])
    return data


class _Params:
    """Positional parameter builder ($1, $2, ...)."""

    def __init__(self) -> None:
        self.values: list[Any] = []

    def add(self, value: Any) -> str:
        if value is SERVER_TIMESTAMP:
            return "clock_timestamp()"
        self.values.append(value)
        return f"${len(self.values)}"


def _where_ref(ref: DocumentRef, params: _Params) -> tuple[str, str]:
    table, _, owner = _table(ref.collection)
    where = f"id = {params.add(ref.id)}"
    if owner is not None:
        where += f" AND restaurant_id = {params.add(owner)}"
    return table, where


async def _fetch(conn: asyncpg.Connection, ref: DocumentRef, for_update: bool = False) -> dict[str, Any] | None:
    params = _Params()
    table, where = _where_ref(ref, params)
    lock = " FOR UPDATE" if for_update else ""
    # S608/B608: table and columns come from fixed whitelists
    row = await conn.fetchrow(f"SELECT * FROM {table} WHERE {where}{lock}", *params.values)  # nosec B608
    return _row_to_data(row) if row else None


async def _upsert(conn: asyncpg.Connection, ref: DocumentRef, data: dict[str, Any]) -> None:
    table, columns, owner = _table(ref.collection)
    names = _columns(columns, data)
    params = _Params()
    values = [params.add(ref.id)]
    insert_cols = ["id"]
    if owner is not None:
        insert_cols.append("restaurant_id")
        values.append(params.add(owner))
    insert_cols.extend(_q(n) for n in names)
    values.extend(params.add(data[n]) for n in names)
    updates = ", ".join(f"{_q(n)} = EXCLUDED.{_q(n)}" for n in names) or "id = EXCLUDED.id"
    await conn.execute(
        f"""
        INSERT INTO {table} ({", ".join(insert_cols)})
        VALUES ({", ".join(values)})
        ON CONFLICT (id) DO UPDATE SET {updates}
        """,  # nosec B608
        *params.values,
    )


async def _update(conn: asyncpg.Connection, ref: DocumentRef, fields: dict[str, Any]) -> bool:
    table, columns, _ = _table(ref.collection)
    names = _columns(columns, fields)
    if not names:
        return await _fetch(conn, ref) is not None
    params = _Params()
    _, where = _where_ref(ref, params)
    set_clause = ", ".join(f"{_q(n)} = {params.add(fields[n])}" for n in names)
    result = await conn.execute(f"UPDATE {table} SET {set_clause} WHERE {where}", *params.values)  # nosec B608
    return result == "UPDATE 1"


class _PostgresTransaction(Transaction):
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn
        self.writes: list[tuple[str, DocumentRef, dict[str, Any]]] = []

    async def get(self, ref: DocumentRef) -> dict[str, Any] | None:
        if self.writes:
            raise StorageTransactionFailed("Transaction reads must happen before writes.")
        return await _fetch(self._conn, ref, for_update=True)

    def set(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        self.writes.append(("set", ref, dict(data)))

    def update(self, ref: DocumentRef, fields: dict[str, Any]) -> None:
        self.writes.append(("update", ref, dict(fields)))


class PostgresStore(ReviewStore):
    """
    Postgres-based store for restaurants and ratings.

    The pool is owned by the caller; close() only stops listening.
    """

    def __init__(self, pool: asyncpg.Pool, max_attempts: int = 5, backoff_seconds: float = 0.05):
        super().__init__()
        self.pool = pool
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._listen_conn: asyncpg.Connection | None = None

    # -- change notification --

    async def start(self) -> None:
        """Start listening for committed changes."""
        if self._listen_conn is not None:
            return
        self._listen_conn = await self.pool.acquire()
        await self._listen_conn.add_listener(NOTIFY_CHANNEL, self._on_notify)
        logger.info("postgres store: listening on %s", NOTIFY_CHANNEL)

    def _on_notify(self, conn: asyncpg.Connection, pid: int, channel: str, payload: str) -> None:
        try:
            ref = DocumentRef.from_path(payload)
        except InvalidInput:
            logger.warning("postgres store: ignoring malformed notification %r", payload)
            return
        self.feed.publish([ref])

    async def close(self) -> None:
        if self._listen_conn is not None:
            conn, self._listen_conn = self._listen_conn, None
            await conn.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self.pool.release(conn)
        await super().close()

    # -- reads --

    async def get(self, ref: DocumentRef) -> dict[str, Any] | None:
        async with self.pool.acquire() as conn:
            return await _fetch(conn, ref)

    async def query(self, spec: QuerySpec) -> list[tuple[str, dict[str, Any]]]:
        table, columns, owner = _table(spec.collection)
        order = spec.order_by.field
        if order not in columns:
            raise InvalidInput(f"Cannot order by {order!r}")

        params = _Params()
        where: list[str] = []
        if owner is not None:
            where.append(f"restaurant_id = {params.add(owner)}")
        for clause in spec.filters:
            if clause.field not in columns or clause.op not in FILTER_OPS:
                raise InvalidInput(f"Unsupported filter: {clause.field} {clause.op}")
            op = "=" if clause.op == "==" else clause.op
            where.append(f"{_q(clause.field)} {op} {params.add(clause.value)}")
        where.append(f"{_q(order)} IS NOT NULL")

        direction = "DESC" if spec.order_by.descending else "ASC"
        sql = f"SELECT * FROM {table} WHERE {' AND '.join(where)} ORDER BY {_q(order)} {direction}, id ASC"  # nosec B608
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *params.values)
        return [(row["id"], _row_to_data(row)) for row in rows]

    # -- plain writes --

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = self.new_id()
        await self.set(DocumentRef(collection, doc_id), data)
        return doc_id

    async def set(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        async with self.pool.acquire() as conn:
            await _upsert(conn, ref, data)

    async def update(self, ref: DocumentRef, fields: dict[str, Any]) -> bool:
        async with self.pool.acquire() as conn:
            return await _update(conn, ref, fields)

    async def delete(self, ref: DocumentRef) -> bool:
        params = _Params()
        table, where = _where_ref(ref, params)
        async with self.pool.acquire() as conn:
            result = await conn.execute(f"DELETE FROM {table} WHERE {where}", *params.values)  # nosec B608
        return result == "DELETE 1"

    # -- transactions --

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.pool.acquire() as conn:
                    # READ COMMITTED: FOR UPDATE waiters re-read the committed row.
                    async with conn.transaction():
                        tx = _PostgresTransaction(conn)
                        result = await fn(tx)
                        for kind, ref, data in tx.writes:
                            if kind == "set":
                                await _upsert(conn, ref, data)
                            elif not await _update(conn, ref, data):
                                raise StorageTransactionFailed(f"Cannot update missing record {ref.path}")
                return result
            except _RETRYABLE as e:
                if attempt == self.max_attempts:
                    raise StorageTransactionFailed(f"Transaction aborted after {attempt} attempts: {e}") from e
                wait_time = random.uniform(0.5, 1.5) * self.backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "postgres store: transaction conflict (attempt %d), retrying in %.2fs: %s",
                    attempt,
                    wait_time,
                    e,
                )
                await asyncio.sleep(wait_time)
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                raise StorageTransactionFailed(f"Transaction failed: {e}") from e

        raise StorageTransactionFailed("Transaction was not attempted.")
