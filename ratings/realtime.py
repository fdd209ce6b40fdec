"""
Ratings Kernel — Realtime Sync Layer

Live subscriptions over a store. A Subscription listens to the store's
change feed and, whenever a relevant record commits, re-reads its target
and delivers the full result:

  watch_collection: ordered list of entities for a QuerySpec
  watch_document: one Restaurant, or NotFound(id)
  watch_reviews: a restaurant's reviews, newest first

Each delivery goes to the observer callback and into a bounded channel
the caller may iterate with `async for`. When the channel is full the
oldest result is dropped; the newest state always gets through.

One-shot reads (get_restaurants, get_restaurant, get_reviews) share the
same composition and timestamp conversion.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from ratings.query import restaurants_query, reviews_query
from ratings.store import ReviewStore
from ratings.types import (
    DocumentRef,
    InvalidInput,
    NotFound,
    QuerySpec,
    Restaurant,
    Review,
    restaurant_ref,
    to_entity,
)

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 16

# Re-read attempts after a change before the subscription gives up.
READ_ATTEMPTS = 3
READ_BACKOFF_SECONDS = 0.05

Observer = Callable[[Any], Any]

_END = object()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def _read_collection(store: ReviewStore, spec: QuerySpec) -> list[Any]:
    rows = await store.query(spec)
    return [to_entity(DocumentRef(spec.collection, doc_id), data) for doc_id, data in rows]


async def _read_restaurant(store: ReviewStore, restaurant_id: str) -> Restaurant | NotFound:
    ref = restaurant_ref(restaurant_id)
    data = await store.get(ref)
    if data is None:
        return NotFound(id=restaurant_id)
    return to_entity(ref, data)


async def get_restaurants(store: ReviewStore, filters: Mapping[str, Any] | None = None) -> list[Restaurant]:
    """Fetch restaurants matching filters (category, city, price, sort)."""
    return await _read_collection(store, restaurants_query(filters))


async def get_restaurant(store: ReviewStore, restaurant_id: str) -> Restaurant | None:
    """Fetch a single restaurant. Returns None if not found."""
    if not restaurant_id:
        raise InvalidInput("No restaurant ID has been provided.")
    result = await _read_restaurant(store, restaurant_id)
    return None if isinstance(result, NotFound) else result


async def get_reviews(store: ReviewStore, restaurant_id: str) -> list[Review]:
    """Fetch a restaurant's reviews, newest first."""
    return await _read_collection(store, reviews_query(restaurant_id))


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------


class Subscription:
    """
    Live handle on one watch target.

    The change listener is registered before the first read, so any write
    committed before subscribing shows up in the first delivery.

    A failed re-read is retried with backoff; if it keeps failing the
    subscription ends. Callers learn of the end through `done`, `error`,
    `wait_closed()`, and the channel (iteration stops).
    """

    def __init__(
        self,
        store: ReviewStore,
        label: str,
        load: Callable[[], Awaitable[Any]],
        matches: Callable[[DocumentRef], bool],
        observer: Observer,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self.label = label
        self._store = store
        self._load = load
        self._matches = matches
        self._observer = observer
        self._changes = store.feed.open()
        self._results: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, buffer_size))
        self._task: asyncio.Task[None] | None = None
        self._started: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._finished: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._unsubscribed = False
        self.deliveries = 0
        self.error: Exception | None = None

    # -- lifecycle --

    async def _start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"watch:{self.label}")
        try:
            await self._started
        except (Exception, asyncio.CancelledError):
            self.unsubscribe()
            raise
        logger.info("realtime: subscribed %s", self.label)

    def unsubscribe(self) -> None:
        """Stop deliveries. Safe to call any number of times."""
        if self._unsubscribed:
            return
        self._unsubscribed = True
        self._store.feed.close(self._changes)
        if self._task is not None and not self._task.done():
            # The loop may already be closed at process teardown.
            with contextlib.suppress(RuntimeError):
                self._task.cancel()
        self._push(_END)
        self._finish()
        logger.info("realtime: unsubscribed %s after %d deliveries", self.label, self.deliveries)

    @property
    def active(self) -> bool:
        return not self._unsubscribed and self._task is not None and not self._task.done()

    @property
    def done(self) -> bool:
        """True once no further results will be delivered."""
        return self._finished.done()

    async def wait_closed(self) -> Exception | None:
        """Wait until the subscription ends. Returns the error that ended it, if any."""
        await asyncio.shield(self._finished)
        return self.error

    def _finish(self) -> None:
        if not self._finished.done():
            self._finished.set_result(None)

    # -- delivery loop --

    async def _run(self) -> None:
        try:
            await self._deliver()
        except Exception as e:
            self._started.set_exception(e)
            return
        self._started.set_result(None)

        try:
            while True:
                ref = await self._changes.get()
                if ref is None:
                    break
                relevant = self._matches(ref)
                closing = False
                # Coalesce a burst of commits into one re-read.
                while not self._changes.empty():
                    pending = self._changes.get_nowait()
                    if pending is None:
                        closing = True
                        break
                    relevant = relevant or self._matches(pending)
                if relevant:
                    await self._redeliver()
                if closing:
                    break
        except Exception as e:
            self.error = e
            logger.exception("realtime: read failed for %s, subscription ended", self.label)
        finally:
            self._store.feed.close(self._changes)
            self._push(_END)
            self._finish()

    async def _redeliver(self) -> None:
        for attempt in range(1, READ_ATTEMPTS + 1):
            try:
                await self._deliver()
                return
            except Exception as e:
                if attempt == READ_ATTEMPTS:
                    raise
                wait_time = READ_BACKOFF_SECONDS * 2 ** (attempt - 1)
                logger.warning(
                    "realtime: read failed for %s (attempt %d), retrying in %.2fs: %s",
                    self.label,
                    attempt,
                    wait_time,
                    e,
                )
                await asyncio.sleep(wait_time)

    async def _deliver(self) -> None:
        result = await self._load()
        self.deliveries += 1
        self._push(result)
        try:
            outcome = self._observer(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("realtime: observer failed for %s", self.label)

    def _push(self, item: Any) -> None:
        try:
            self._results.put_nowait(item)
        except asyncio.QueueFull:
            # Drop oldest to make room for newest
            with contextlib.suppress(asyncio.QueueEmpty):
                self._results.get_nowait()
            self._results.put_nowait(item)

    # -- channel interface --

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Any:
        item = await self._results.get()
        if item is _END:
            self._push(_END)
            raise StopAsyncIteration
        return item

    async def next(self, timeout: float | None = None) -> Any:
        """Wait for the next delivered result (StopAsyncIteration once ended)."""
        return await asyncio.wait_for(self.__anext__(), timeout)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def _check_observer(observer: Any) -> None:
    if not callable(observer):
        raise InvalidInput(f"Observer must be callable, got {type(observer).__name__}.")


async def watch_collection(
    store: ReviewStore,
    spec: QuerySpec,
    observer: Observer,
    *,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> Subscription:
    """
    Deliver the full, ordered result of spec now and after every change.

    Raises:
        InvalidInput: spec is not a QuerySpec or observer is not callable
    """
    _check_observer(observer)
    if not isinstance(spec, QuerySpec) or not spec.collection:
        raise InvalidInput("A query specification is required.")

    sub = Subscription(
        store,
        f"collection={spec.collection}",
        lambda: _read_collection(store, spec),
        lambda ref: ref.collection == spec.collection,
        observer,
        buffer_size,
    )
    await sub._start()
    return sub


async def watch_document(
    store: ReviewStore,
    restaurant_id: str,
    observer: Observer,
    *,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> Subscription:
    """
    Deliver a restaurant (or NotFound) now and after every change or deletion.
    """
    _check_observer(observer)
    if not restaurant_id:
        raise InvalidInput("No restaurant ID has been provided.")

    target = restaurant_ref(restaurant_id)
    sub = Subscription(
        store,
        f"document={target.path}",
        lambda: _read_restaurant(store, restaurant_id),
        lambda ref: ref == target,
        observer,
        buffer_size,
    )
    await sub._start()
    return sub


async def watch_reviews(
    store: ReviewStore,
    restaurant_id: str,
    observer: Observer,
    *,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> Subscription:
    """Deliver a restaurant's reviews, newest first, now and after every change."""
    _check_observer(observer)
    if not restaurant_id:
        raise InvalidInput("No restaurant ID has been provided.")
    return await watch_collection(store, reviews_query(restaurant_id), observer, buffer_size=buffer_size)
