"""Restaurant and review models for the HTTP and WebSocket surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from ratings.types import NewRestaurant, NewReview, Restaurant, Review


class RestaurantFilters(BaseModel):
    """Query-string filters for listing and watching restaurants."""

    model_config = {"extra": "ignore"}

    category: str | None = None
    city: str | None = None
    price: int | None = None
    sort: str | None = None

    def to_filters(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CreateRestaurantRequest(BaseModel):
    """What the client sends to create a restaurant."""

    model_config = {"extra": "forbid"}

    name: str = Field(min_length=1, max_length=200)
    category: str = Field(min_length=1, max_length=100)
    city: str = Field(min_length=1, max_length=100)
    price: int = Field(ge=1, le=4)
    photo: str | None = None

    def to_new(self) -> NewRestaurant:
        return NewRestaurant(**self.model_dump())


class SubmitReviewRequest(BaseModel):
    """What the client sends to review a restaurant."""

    model_config = {"extra": "forbid"}

    rating: int = Field(ge=1, le=5)
    text: str = Field(min_length=1, max_length=5000)
    user_id: str | None = Field(default=None, max_length=128)

    def to_new(self) -> NewReview:
        return NewReview(rating=self.rating, text=self.text, user_id=self.user_id)


class RestaurantResponse(BaseModel):
    """What the API returns for a restaurant."""

    id: str
    name: str
    category: str
    city: str
    price: int
    photo: str | None
    num_ratings: int
    sum_rating: float
    avg_rating: float
    timestamp: datetime | None

    @classmethod
    def from_entity(cls, restaurant: Restaurant) -> RestaurantResponse:
        return cls(
            id=restaurant.id,
            name=restaurant.name,
            category=restaurant.category,
            city=restaurant.city,
            price=restaurant.price,
            photo=restaurant.photo,
            num_ratings=restaurant.num_ratings,
            sum_rating=restaurant.sum_rating,
            avg_rating=restaurant.avg_rating,
            timestamp=restaurant.timestamp,
        )


class ReviewResponse(BaseModel):
    """What the API returns for a review."""

    id: str
    restaurant_id: str
    rating: int
    text: str
    user_id: str | None
    timestamp: datetime | None

    @classmethod
    def from_entity(cls, review: Review) -> ReviewResponse:
        return cls(
            id=review.id,
            restaurant_id=review.restaurant_id,
            rating=review.rating,
            text=review.text,
            user_id=review.user_id,
            timestamp=review.timestamp,
        )


class SubmitReviewResponse(BaseModel):
    review_id: str
    restaurant_id: str


class PhotoResponse(BaseModel):
    photo: str


class SnapshotMessage(BaseModel):
    """WebSocket frame carrying a delivered snapshot."""

    type: Literal["snapshot"] = "snapshot"
    data: list[RestaurantResponse] | list[ReviewResponse] | RestaurantResponse


class NotFoundMessage(BaseModel):
    """WebSocket frame for a watched restaurant that does not exist."""

    type: Literal["not_found"] = "not_found"
    id: str
