"""
Pydantic models for the restaurant API.

All request/response shapes defined here. No imports from db or routes.
"""

from server.models.restaurant import (
    CreateRestaurantRequest,
    NotFoundMessage,
    PhotoResponse,
    RestaurantFilters,
    RestaurantResponse,
    ReviewResponse,
    SnapshotMessage,
    SubmitReviewRequest,
    SubmitReviewResponse,
)

__all__ = [
    "RestaurantFilters",
    "CreateRestaurantRequest",
    "RestaurantResponse",
    "SubmitReviewRequest",
    "SubmitReviewResponse",
    "ReviewResponse",
    "PhotoResponse",
    "SnapshotMessage",
    "NotFoundMessage",
]
