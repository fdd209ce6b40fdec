"""
Ratings Kernel — restaurant aggregates with realtime fan-out.

Three components:
  aggregate: transactional rating aggregation + photo updates
  query: filters mapping → QuerySpec  (pure, deterministic)
  realtime: live subscriptions and one-shot reads over a store

Stores:
  MemoryStore: in-process, per-record locks
  PostgresStore: asyncpg, row-locked transactions, LISTEN/NOTIFY
"""

from ratings.aggregate import add_restaurant, set_restaurant_photo, submit_review, update_restaurant_image
from ratings.query import build_query, reviews_query
from ratings.realtime import (
    Subscription,
    get_restaurant,
    get_restaurants,
    get_reviews,
    watch_collection,
    watch_document,
    watch_reviews,
)
from ratings.store import MemoryStore, ReviewStore
from ratings.types import (
    InvalidInput,
    MediaStoreError,
    NewRestaurant,
    NewReview,
    NotFound,
    QuerySpec,
    RatingsError,
    Restaurant,
    Review,
    StorageTransactionFailed,
)

__all__ = [
    "submit_review",
    "set_restaurant_photo",
    "add_restaurant",
    "update_restaurant_image",
    "build_query",
    "reviews_query",
    "watch_collection",
    "watch_document",
    "watch_reviews",
    "get_restaurants",
    "get_restaurant",
    "get_reviews",
    "Subscription",
    "ReviewStore",
    "MemoryStore",
    "QuerySpec",
    "Restaurant",
    "Review",
    "NewRestaurant",
    "NewReview",
    "NotFound",
    "RatingsError",
    "InvalidInput",
    "StorageTransactionFailed",
    "MediaStoreError",
]
