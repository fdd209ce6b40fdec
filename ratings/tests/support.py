"""Shared helpers for kernel tests."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from ratings.store import SERVER_TIMESTAMP, MemoryStore
from ratings.types import RESTAURANTS, DocumentRef

START = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class StepClock:
    """Returns START, START + step, START + 2*step, ..."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start
        self.step = step
        self.calls = 0

    def __call__(self) -> datetime:
        value = self.current
        self.current += self.step
        self.calls += 1
        return value


async def seed_restaurant(store: MemoryStore, restaurant_id: str, **fields: Any) -> DocumentRef:
    """Write a restaurant record directly, aggregates included."""
    data: dict[str, Any] = {
        "name": f"Restaurant {restaurant_id}",
        "category": "Pizza",
        "city": "Austin",
        "price": 2,
        "photo": None,
        "num_ratings": 0,
        "sum_rating": 0.0,
        "avg_rating": 0.0,
        "timestamp": SERVER_TIMESTAMP,
    }
    data.update(fields)
    ref = DocumentRef(RESTAURANTS, restaurant_id)
    await store.set(ref, data)
    return ref


async def next_matching(subscription, predicate, timeout: float = 1.0):
    """Consume deliveries until one satisfies predicate."""
    async with asyncio.timeout(timeout):
        async for result in subscription:
            if predicate(result):
                return result
    raise AssertionError(f"subscription {subscription.label} ended without a matching delivery")
