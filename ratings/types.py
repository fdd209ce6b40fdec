"""
Ratings Kernel — Shared Types

Data classes and exceptions used across the store, query composer,
aggregate transaction, and realtime layer. These are the contracts that
bind the kernel together.

Record fields are stored snake_case:
- restaurants: name, category, city, price, photo,
  num_ratings, sum_rating, avg_rating, timestamp
- restaurants/{id}/ratings: rating, text, user_id, timestamp
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

RESTAURANTS = "restaurants"
RATINGS = "ratings"

AGGREGATE_FIELDS: tuple[str, ...] = ("num_ratings", "sum_rating", "avg_rating")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RatingsError(Exception):
    """Base class for kernel errors."""

    pass


class InvalidInput(RatingsError, ValueError):
    """Missing or malformed identifier, filter, review, or observer."""

    pass


class StorageTransactionFailed(RatingsError):
    """The aggregate transaction could not commit."""

    pass


class MediaStoreError(RatingsError):
    """The media store could not accept an upload."""

    pass


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def ratings_path(restaurant_id: str) -> str:
    """Collection path of a restaurant's review sub-collection."""
    return f"{RESTAURANTS}/{restaurant_id}/{RATINGS}"


def parent_id(collection: str) -> str | None:
    """Restaurant id owning a ratings sub-collection, None for top level."""
    parts = collection.split("/")
    if len(parts) == 3 and parts[0] == RESTAURANTS and parts[2] == RATINGS:
        return parts[1]
    return None


@dataclass(frozen=True)
class DocumentRef:
    """Address of one record: collection path + document id."""

    collection: str
    id: str

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"

    @classmethod
    def from_path(cls, path: str) -> DocumentRef:
        collection, _, doc_id = path.rpartition("/")
        if not collection or not doc_id:
            raise InvalidInput(f"Not a document path: {path!r}")
        return cls(collection=collection, id=doc_id)


def restaurant_ref(restaurant_id: str) -> DocumentRef:
    return DocumentRef(RESTAURANTS, restaurant_id)


# ---------------------------------------------------------------------------
# Store-native timestamp
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class Timestamp:
    """
    Store-native point in time. Never handed to observers directly:
    the read layer converts it with to_datetime().
    """

    seconds: int
    nanoseconds: int = 0

    @classmethod
    def from_datetime(cls, value: datetime) -> Timestamp:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        micros = (value - _EPOCH) // timedelta(microseconds=1)
        seconds, rem = divmod(micros, 1_000_000)
        return cls(seconds=seconds, nanoseconds=rem * 1000)

    def to_datetime(self) -> datetime:
        return _EPOCH + timedelta(seconds=self.seconds, microseconds=self.nanoseconds // 1000)


def now_utc() -> datetime:
    return datetime.now(UTC)


def to_datetime(value: Any) -> datetime | None:
    """Normalize a stored timestamp value to an aware datetime."""
    if value is None:
        return None
    if isinstance(value, Timestamp):
        return value.to_datetime()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    raise TypeError(f"Unsupported timestamp value: {value!r}")


# ---------------------------------------------------------------------------
# Query specification
# ---------------------------------------------------------------------------

FILTER_OPS: set[str] = {"==", "<", "<=", ">", ">="}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class OrderBy:
    field: str
    direction: str = "desc"

    @property
    def descending(self) -> bool:
        return self.direction == "desc"


@dataclass(frozen=True)
class QuerySpec:
    """
    Pure description of a filtered + sorted read over one collection.
    Filters are kept sorted by field so equal inputs compare equal.
    """

    collection: str
    filters: tuple[Filter, ...] = ()
    order_by: OrderBy = field(default_factory=lambda: OrderBy("avg_rating", "desc"))


# ---------------------------------------------------------------------------
# Entities delivered to callers
# ---------------------------------------------------------------------------


@dataclass
class Restaurant:
    id: str
    name: str = ""
    category: str = ""
    city: str = ""
    price: int = 0
    photo: str | None = None
    num_ratings: int = 0
    sum_rating: float = 0.0
    avg_rating: float = 0.0
    timestamp: datetime | None = None

    @classmethod
    def from_record(cls, doc_id: str, data: dict[str, Any]) -> Restaurant:
        return cls(
            id=doc_id,
            name=data.get("name") or "",
            category=data.get("category") or "",
            city=data.get("city") or "",
            price=int(data.get("price") or 0),
            photo=data.get("photo"),
            num_ratings=int(data.get("num_ratings") or 0),
            sum_rating=float(data.get("sum_rating") or 0),
            avg_rating=float(data.get("avg_rating") or 0),
            timestamp=to_datetime(data.get("timestamp")),
        )


@dataclass
class Review:
    id: str
    restaurant_id: str
    rating: int
    text: str = ""
    user_id: str | None = None
    timestamp: datetime | None = None

    @classmethod
    def from_record(cls, restaurant_id: str, doc_id: str, data: dict[str, Any]) -> Review:
        return cls(
            id=doc_id,
            restaurant_id=restaurant_id,
            rating=int(data.get("rating") or 0),
            text=data.get("text") or "",
            user_id=data.get("user_id"),
            timestamp=to_datetime(data.get("timestamp")),
        )


@dataclass(frozen=True)
class NotFound:
    """Delivered by watch_document when the target does not exist."""

    id: str


@dataclass
class NewReview:
    """What a caller submits. The timestamp is assigned by the store."""

    rating: int
    text: str = ""
    user_id: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {"rating": self.rating, "text": self.text, "user_id": self.user_id}


@dataclass
class NewRestaurant:
    name: str
    category: str
    city: str
    price: int
    photo: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "city": self.city,
            "price": self.price,
            "photo": self.photo,
        }


def to_entity(ref: DocumentRef, data: dict[str, Any]) -> Restaurant | Review | dict[str, Any]:
    """Materialize a stored record as the entity for its collection."""
    if ref.collection == RESTAURANTS:
        return Restaurant.from_record(ref.id, data)
    owner = parent_id(ref.collection)
    if owner is not None:
        return Review.from_record(owner, ref.id, data)
    out = dict(data)
    out["id"] = ref.id
    if "timestamp" in out:
        out["timestamp"] = to_datetime(out["timestamp"])
    return out
