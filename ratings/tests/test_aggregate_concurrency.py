"""
Ratings Kernel -- Aggregate Concurrency Tests

Concurrent submit_review calls against one restaurant are serialized by
the store transaction: whatever the interleaving, the final aggregate is
the mean of every rating plus the prior aggregate, and each call leaves
exactly one review.

MemoryStore reads yield to the event loop, so gathered submissions do
interleave between read and commit.
"""

import asyncio
import random

import pytest

from ratings.aggregate import set_restaurant_photo, submit_review
from ratings.realtime import get_restaurant, get_reviews
from ratings.tests.support import seed_restaurant
from ratings.types import NewReview, StorageTransactionFailed, restaurant_ref


@pytest.mark.parametrize("seed", [1, 7, 42])
async def test_concurrent_reviews_from_zero(store, seed):
    rng = random.Random(seed)
    ratings = [rng.randint(1, 5) for _ in range(25)]
    await seed_restaurant(store, "r1")

    await asyncio.gather(*(submit_review(store, "r1", NewReview(rating=r)) for r in ratings))

    restaurant = await get_restaurant(store, "r1")
    assert restaurant.num_ratings == len(ratings)
    assert restaurant.sum_rating == sum(ratings)
    assert restaurant.avg_rating == pytest.approx(sum(ratings) / len(ratings))
    assert len(await get_reviews(store, "r1")) == len(ratings)


async def test_concurrent_reviews_with_prior_aggregate(store):
    await seed_restaurant(store, "r1", num_ratings=4, sum_rating=10.0, avg_rating=2.5)
    ratings = [5, 5, 4, 1, 3, 2, 5, 4]

    await asyncio.gather(*(submit_review(store, "r1", {"rating": r}) for r in ratings))

    restaurant = await get_restaurant(store, "r1")
    assert restaurant.num_ratings == 4 + len(ratings)
    assert restaurant.sum_rating == 10 + sum(ratings)
    assert restaurant.avg_rating == pytest.approx((10 + sum(ratings)) / (4 + len(ratings)))


async def test_concurrent_reviews_across_restaurants(store):
    await seed_restaurant(store, "a")
    await seed_restaurant(store, "b")

    calls = [submit_review(store, "a", {"rating": 5}) for _ in range(6)]
    calls += [submit_review(store, "b", {"rating": 1}) for _ in range(4)]
    await asyncio.gather(*calls)

    a = await get_restaurant(store, "a")
    b = await get_restaurant(store, "b")
    assert (a.num_ratings, a.avg_rating) == (6, 5.0)
    assert (b.num_ratings, b.avg_rating) == (4, 1.0)


async def test_photo_update_races_harmlessly(store):
    await seed_restaurant(store, "r1")

    await asyncio.gather(
        *(submit_review(store, "r1", {"rating": 4}) for _ in range(5)),
        set_restaurant_photo(store, "r1", "https://media.test/r1.jpg"),
    )

    restaurant = await get_restaurant(store, "r1")
    assert restaurant.photo == "https://media.test/r1.jpg"
    assert restaurant.num_ratings == 5
    assert restaurant.avg_rating == 4.0


async def test_failed_transactions_do_not_block_others(store):
    await seed_restaurant(store, "r1")

    results = await asyncio.gather(
        submit_review(store, "ghost", {"rating": 5}),
        submit_review(store, "r1", {"rating": 3}),
        submit_review(store, "ghost", {"rating": 1}),
        submit_review(store, "r1", {"rating": 5}),
        return_exceptions=True,
    )

    assert isinstance(results[0], StorageTransactionFailed)
    assert isinstance(results[2], StorageTransactionFailed)
    restaurant = await get_restaurant(store, "r1")
    assert (restaurant.num_ratings, restaurant.avg_rating) == (2, 4.0)


async def test_lock_released_when_callback_raises(store):
    await seed_restaurant(store, "r1")

    async def boom(tx):
        await tx.get(restaurant_ref("r1"))
        raise RuntimeError("callback failed")

    with pytest.raises(RuntimeError):
        await store.run_transaction(boom)

    await asyncio.wait_for(submit_review(store, "r1", {"rating": 2}), timeout=1.0)
    assert (await get_restaurant(store, "r1")).num_ratings == 1
