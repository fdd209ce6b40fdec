"""
Ratings Kernel — Store Layer

Persistence interface for restaurant records and their ratings
sub-collections, plus the in-memory implementation used by tests and the
single-process dev server.

A store provides:
  - point reads and query evaluation over a collection path
  - plain writes (add, set, update, delete)
  - run_transaction(fn): atomic read-then-write with serializable
    isolation per record
  - feed: fan-out of committed document refs for realtime listeners

Reference: PostgresStore in ratings/postgres_store.py
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from ratings.query import evaluate
from ratings.types import (
    DocumentRef,
    QuerySpec,
    StorageTransactionFailed,
    Timestamp,
    now_utc,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _ServerTimestamp:
    """Placeholder resolved to the store's clock when a write commits."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


# ---------------------------------------------------------------------------
# Change feed
# ---------------------------------------------------------------------------


class ChangeFeed:
    """
    Fan-out of committed writes. Each listener owns an unbounded queue of
    DocumentRefs; a None item means the store has shut down.
    """

    def __init__(self) -> None:
        self._listeners: set[asyncio.Queue[DocumentRef | None]] = set()

    def open(self) -> asyncio.Queue[DocumentRef | None]:
        queue: asyncio.Queue[DocumentRef | None] = asyncio.Queue()
        self._listeners.add(queue)
        return queue

    def close(self, queue: asyncio.Queue[DocumentRef | None]) -> None:
        self._listeners.discard(queue)

    def publish(self, refs: list[DocumentRef]) -> None:
        for queue in list(self._listeners):
            for ref in refs:
                queue.put_nowait(ref)

    def shutdown(self) -> None:
        for queue in list(self._listeners):
            queue.put_nowait(None)
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------


class Transaction:
    """
    Read-then-write unit of work handed to run_transaction callbacks.
    All reads must happen before the first write; writes are buffered
    and committed together.
    """

    async def get(self, ref: DocumentRef) -> dict[str, Any] | None:
        raise NotImplementedError

    def set(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        raise NotImplementedError

    def update(self, ref: DocumentRef, fields: dict[str, Any]) -> None:
        raise NotImplementedError


class ReviewStore:
    """
    Abstract storage interface.
    Implement with Postgres for production, or in-memory for tests.
    """

    def __init__(self) -> None:
        self.feed = ChangeFeed()

    def new_id(self) -> str:
        return uuid.uuid4().hex

    async def get(self, ref: DocumentRef) -> dict[str, Any] | None:
        """Fetch one record's fields. Returns None if not found."""
        raise NotImplementedError

    async def query(self, spec: QuerySpec) -> list[tuple[str, dict[str, Any]]]:
        """Evaluate a QuerySpec. Returns ordered (id, data) pairs."""
        raise NotImplementedError

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a record with a new id. Returns the id."""
        raise NotImplementedError

    async def set(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        """Create or overwrite a record."""
        raise NotImplementedError

    async def update(self, ref: DocumentRef, fields: dict[str, Any]) -> bool:
        """Merge fields into an existing record. False if it does not exist."""
        raise NotImplementedError

    async def delete(self, ref: DocumentRef) -> bool:
        """Delete a record. False if it did not exist."""
        raise NotImplementedError

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run fn atomically. Raises StorageTransactionFailed if it cannot commit."""
        raise NotImplementedError

    async def close(self) -> None:
        self.feed.shutdown()


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class _MemoryTransaction(Transaction):
    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self._held: list[asyncio.Lock] = []
        self.writes: list[tuple[str, DocumentRef, dict[str, Any]]] = []

    async def get(self, ref: DocumentRef) -> dict[str, Any] | None:
        if self.writes:
            raise StorageTransactionFailed("Transaction reads must happen before writes.")
        lock = self._store._get_lock(ref.path)
        if lock not in self._held:
            # Held until commit: later transactions on this record wait here.
            await lock.acquire()
            self._held.append(lock)
        return await self._store.get(ref)

    def set(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        self.writes.append(("set", ref, dict(data)))

    def update(self, ref: DocumentRef, fields: dict[str, Any]) -> None:
        self.writes.append(("update", ref, dict(fields)))

    def release(self) -> None:
        while self._held:
            self._held.pop().release()


class MemoryStore(ReviewStore):
    """
    In-memory store for tests and single-process use.

    Transactions lock each record they read (per-record asyncio.Lock) until
    commit, so read-modify-write cycles on one record are serialized.
    """

    def __init__(self, clock: Callable[[], datetime] = now_utc) -> None:
        super().__init__()
        self._clock = clock
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_timestamp: Timestamp | None = None

    def _get_lock(self, path: str) -> asyncio.Lock:
        """Per-record asyncio lock for single-instance serialization."""
        if path not in self._locks:
            self._locks[path] = asyncio.Lock()
        return self._locks[path]

    def _timestamp(self) -> Timestamp:
        ts = Timestamp.from_datetime(self._clock())
        last = self._last_timestamp
        if last is not None and ts <= last:
            # Keep server timestamps strictly increasing.
            micros = last.seconds * 1_000_000 + last.nanoseconds // 1000 + 1
            ts = Timestamp(seconds=micros // 1_000_000, nanoseconds=(micros % 1_000_000) * 1000)
        self._last_timestamp = ts
        return ts

    def _resolve(self, data: dict[str, Any]) -> dict[str, Any]:
        resolved = copy.deepcopy({k: v for k, v in data.items() if v is not SERVER_TIMESTAMP})
        for key, value in data.items():
            if value is SERVER_TIMESTAMP:
                resolved[key] = self._timestamp()
        return resolved

    # -- reads --

    async def get(self, ref: DocumentRef) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        data = self._collections.get(ref.collection, {}).get(ref.id)
        return copy.deepcopy(data) if data is not None else None

    async def query(self, spec: QuerySpec) -> list[tuple[str, dict[str, Any]]]:
        await asyncio.sleep(0)
        records = self._collections.get(spec.collection, {}).items()
        return [(doc_id, copy.deepcopy(dict(data))) for doc_id, data in evaluate(records, spec)]

    # -- plain writes --

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = self.new_id()
        await self.set(DocumentRef(collection, doc_id), data)
        return doc_id

    async def set(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self._collections[ref.collection][ref.id] = self._resolve(data)
        self.feed.publish([ref])

    async def update(self, ref: DocumentRef, fields: dict[str, Any]) -> bool:
        await asyncio.sleep(0)
        current = self._collections.get(ref.collection, {}).get(ref.id)
        if current is None:
            return False
        current.update(self._resolve(fields))
        self.feed.publish([ref])
        return True

    async def delete(self, ref: DocumentRef) -> bool:
        await asyncio.sleep(0)
        removed = self._collections.get(ref.collection, {}).pop(ref.id, None)
        if removed is None:
            return False
        self.feed.publish([ref])
        return True

    # -- transactions --

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        tx = _MemoryTransaction(self)
        try:
            result = await fn(tx)
            changed = self._commit(tx.writes)
        finally:
            tx.release()
        self.feed.publish(changed)
        return result

    def _commit(self, writes: list[tuple[str, DocumentRef, dict[str, Any]]]) -> list[DocumentRef]:
        """Apply buffered writes all-or-nothing. No awaits: atomic on the loop."""
        pending: dict[str, set[str]] = defaultdict(set)
        for kind, ref, _ in writes:
            exists = ref.id in self._collections.get(ref.collection, {}) or ref.id in pending[ref.collection]
            if kind == "update" and not exists:
                raise StorageTransactionFailed(f"Cannot update missing record {ref.path}")
            pending[ref.collection].add(ref.id)

        for kind, ref, data in writes:
            if kind == "set":
                self._collections[ref.collection][ref.id] = self._resolve(data)
            else:
                self._collections[ref.collection][ref.id].update(self._resolve(data))
        logger.debug("memory store: committed %d writes", len(writes))
        return [ref for _, ref, _ in writes]
