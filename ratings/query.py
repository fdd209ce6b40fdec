"""
Ratings Kernel — Query Composer

build_query turns a filters mapping into a QuerySpec. Pure: no IO,
identical inputs give identical (equal, hashable) specs.

apply_filter / apply_sort / evaluate run a QuerySpec over in-memory
records. The memory store uses them; the Postgres store compiles the
same spec to SQL.
"""

from __future__ import annotations

import operator
from collections.abc import Iterable, Mapping
from typing import Any

from ratings.types import (
    FILTER_OPS,
    RESTAURANTS,
    Filter,
    InvalidInput,
    OrderBy,
    QuerySpec,
    ratings_path,
)

# Filter options recognized by build_query, in the order they are stored.
FILTER_FIELDS: tuple[str, ...] = ("category", "city", "price")

SORT_FIELDS: dict[str, str] = {
    "Rating": "avg_rating",
    "Review": "num_ratings",
}
DEFAULT_SORT_FIELD = "avg_rating"

_OPS = {
    "==": operator.eq,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def build_query(base_collection: str, filters: Mapping[str, Any] | None = None) -> QuerySpec:
    """
    Compose a filtered, sorted read over base_collection.

    Recognized options: category, city, price (equality filters, skipped
    when falsy) and sort ("Rating" -> avg_rating desc, "Review" ->
    num_ratings desc, anything else -> avg_rating desc).
    """
    if not base_collection:
        raise InvalidInput("A collection name is required.")
    if filters is None:
        filters = {}
    if not isinstance(filters, Mapping):
        raise InvalidInput(f"Filters must be a mapping, got {type(filters).__name__}.")

    clauses = tuple(Filter(name, "==", filters[name]) for name in FILTER_FIELDS if filters.get(name))
    sort = filters.get("sort")
    sort_field = SORT_FIELDS.get(sort, DEFAULT_SORT_FIELD) if isinstance(sort, str) else DEFAULT_SORT_FIELD

    return QuerySpec(
        collection=base_collection,
        filters=clauses,
        order_by=OrderBy(sort_field, "desc"),
    )


def restaurants_query(filters: Mapping[str, Any] | None = None) -> QuerySpec:
    return build_query(RESTAURANTS, filters)


def reviews_query(restaurant_id: str) -> QuerySpec:
    """A restaurant's reviews, newest first."""
    if not restaurant_id:
        raise InvalidInput("No restaurant ID has been provided.")
    return QuerySpec(collection=ratings_path(restaurant_id), order_by=OrderBy("timestamp", "desc"))


# ---------------------------------------------------------------------------
# In-memory evaluation
# ---------------------------------------------------------------------------


def _matches(data: Mapping[str, Any], clause: Filter) -> bool:
    if clause.op not in FILTER_OPS:
        raise InvalidInput(f"Unsupported filter operator: {clause.op!r}")
    if clause.field not in data:
        return False
    value = data[clause.field]
    try:
        return _OPS[clause.op](value, clause.value)
    except TypeError:
        return False


def apply_filter(
    records: Iterable[tuple[str, Mapping[str, Any]]],
    filters: Iterable[Filter],
) -> list[tuple[str, Mapping[str, Any]]]:
    """Keep (id, data) records that satisfy every clause."""
    clauses = list(filters)
    return [(doc_id, data) for doc_id, data in records if all(_matches(data, c) for c in clauses)]


def apply_sort(
    records: Iterable[tuple[str, Mapping[str, Any]]],
    order_by: OrderBy,
) -> list[tuple[str, Mapping[str, Any]]]:
    """
    Order records by one field. Records without the field are dropped,
    ties break on document id ascending.
    """
    present = [(doc_id, data) for doc_id, data in records if data.get(order_by.field) is not None]
    # Two stable passes: id ascending, then the key in the requested direction.
    present.sort(key=lambda r: r[0])
    present.sort(key=lambda r: r[1][order_by.field], reverse=order_by.descending)
    return present


def evaluate(
    records: Iterable[tuple[str, Mapping[str, Any]]],
    spec: QuerySpec,
) -> list[tuple[str, Mapping[str, Any]]]:
    return apply_sort(apply_filter(records, spec.filters), spec.order_by)
