"""
Ratings Kernel — Aggregate Writes

The write path for restaurants and reviews. A review is never written on
its own: submit_review creates it in the same transaction that folds its
rating into the restaurant's num_ratings / sum_rating / avg_rating.

Everything else on a restaurant (photo) is written outside that
transaction and never touches the aggregate fields.
"""

from __future__ import annotations

import logging
import math
import numbers
from collections.abc import Mapping
from typing import Any, Protocol

from ratings.store import SERVER_TIMESTAMP, ReviewStore, Transaction
from ratings.types import (
    AGGREGATE_FIELDS,
    RESTAURANTS,
    DocumentRef,
    InvalidInput,
    MediaStoreError,
    NewRestaurant,
    NewReview,
    StorageTransactionFailed,
    ratings_path,
    restaurant_ref,
)

logger = logging.getLogger(__name__)


class MediaStore(Protocol):
    """Binary storage for restaurant photos. Returns a public URI."""

    async def upload_image(self, restaurant_id: str, filename: str, content: bytes) -> str: ...


def _review_record(review: NewReview | Mapping[str, Any]) -> dict[str, Any]:
    record = review.to_record() if isinstance(review, NewReview) else dict(review)
    rating = record.get("rating")
    if isinstance(rating, bool):
        raise InvalidInput("Review rating must be an integer, got a boolean.")
    if isinstance(rating, str):
        try:
            rating = int(rating)
        except ValueError as e:
            raise InvalidInput(f"Review rating must be an integer, got {rating!r}.") from e
    # Stored reviews are integers; the aggregate must sum exactly what they hold.
    if not isinstance(rating, numbers.Real) or not math.isfinite(rating) or rating != int(rating):
        raise InvalidInput(f"Review rating must be an integer, got {rating!r}.")
    record["rating"] = int(rating)
    record.pop("timestamp", None)
    return record


async def _update_with_rating(
    tx: Transaction,
    restaurant: DocumentRef,
    new_review: DocumentRef,
    record: dict[str, Any],
) -> None:
    """Read the aggregate, fold in one rating, write both records."""
    data = await tx.get(restaurant)
    if data is None:
        raise StorageTransactionFailed(f"Restaurant {restaurant.id} does not exist.")

    num_ratings = (data.get("num_ratings") or 0) + 1
    sum_rating = (data.get("sum_rating") or 0) + record["rating"]
    avg_rating = sum_rating / num_ratings

    tx.update(
        restaurant,
        {
            "num_ratings": num_ratings,
            "sum_rating": sum_rating,
            "avg_rating": avg_rating,
        },
    )
    tx.set(new_review, {**record, "timestamp": SERVER_TIMESTAMP})


async def submit_review(
    store: ReviewStore,
    restaurant_id: str,
    review: NewReview | Mapping[str, Any] | None,
) -> str:
    """
    Add a review to a restaurant and update its aggregates atomically.

    Args:
        store: Persistence backend
        restaurant_id: Restaurant the review belongs to
        review: NewReview (or mapping) carrying at least a rating

    Returns:
        Id of the new review record

    Raises:
        InvalidInput: restaurant_id or review missing, rating not an integer
        StorageTransactionFailed: the transaction could not commit
    """
    if not restaurant_id:
        raise InvalidInput("No restaurant ID has been provided.")
    if review is None:
        raise InvalidInput("A valid review has not been provided.")

    record = _review_record(review)
    restaurant = restaurant_ref(restaurant_id)
    new_review = DocumentRef(ratings_path(restaurant_id), store.new_id())

    try:
        await store.run_transaction(lambda tx: _update_with_rating(tx, restaurant, new_review, record))
    except StorageTransactionFailed as e:
        logger.error("aggregate: failed to add rating to restaurant_id=%s: %s", restaurant_id, e)
        raise

    logger.info(
        "aggregate: rating=%s added to restaurant_id=%s review_id=%s",
        record["rating"],
        restaurant_id,
        new_review.id,
    )
    return new_review.id


async def set_restaurant_photo(store: ReviewStore, restaurant_id: str, uri: str) -> None:
    """Overwrite the photo field. Not transactional, disjoint from the aggregates."""
    if not restaurant_id:
        raise InvalidInput("No restaurant ID has been provided.")
    if not uri:
        raise InvalidInput("A photo URI is required.")

    updated = await store.update(restaurant_ref(restaurant_id), {"photo": uri})
    if not updated:
        raise InvalidInput(f"Restaurant {restaurant_id} does not exist.")


async def add_restaurant(store: ReviewStore, restaurant: NewRestaurant | Mapping[str, Any]) -> str:
    """
    Create a restaurant with zeroed aggregates.

    Aggregate values in the input are ignored: they are only ever
    produced by submit_review.
    """
    if restaurant is None:
        raise InvalidInput("A valid restaurant has not been provided.")
    record = restaurant.to_record() if isinstance(restaurant, NewRestaurant) else dict(restaurant)
    if not record.get("name"):
        raise InvalidInput("A restaurant name is required.")

    for key in (*AGGREGATE_FIELDS, "timestamp"):
        record.pop(key, None)
    record.update(num_ratings=0, sum_rating=0.0, avg_rating=0.0, timestamp=SERVER_TIMESTAMP)

    restaurant_id = await store.add(RESTAURANTS, record)
    logger.info("aggregate: created restaurant_id=%s name=%r", restaurant_id, record["name"])
    return restaurant_id


async def update_restaurant_image(
    store: ReviewStore,
    media: MediaStore,
    restaurant_id: str,
    filename: str,
    content: bytes,
) -> str:
    """
    Upload a photo through the media store, then point the restaurant at it.

    Returns:
        Public URI of the uploaded image

    Raises:
        InvalidInput: restaurant_id, filename or content missing
        MediaStoreError: the upload failed; the photo field is left unchanged
    """
    if not restaurant_id:
        raise InvalidInput("No restaurant ID has been provided.")
    if not filename or not content:
        raise InvalidInput("A valid image has not been provided.")

    try:
        uri = await media.upload_image(restaurant_id, filename, content)
    except Exception as e:
        logger.error("aggregate: image upload failed for restaurant_id=%s: %s", restaurant_id, e)
        raise MediaStoreError(f"Image upload failed for restaurant {restaurant_id}.") from e

    await set_restaurant_photo(store, restaurant_id, uri)
    return uri
