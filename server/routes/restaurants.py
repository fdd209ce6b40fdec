"""Restaurant routes: list, create, get, reviews, photo."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from ratings.aggregate import add_restaurant, submit_review, update_restaurant_image
from ratings.realtime import get_restaurant, get_restaurants, get_reviews
from ratings.store import ReviewStore
from ratings.types import InvalidInput, MediaStoreError, StorageTransactionFailed
from server.db import get_store
from server.models.restaurant import (
    CreateRestaurantRequest,
    PhotoResponse,
    RestaurantFilters,
    RestaurantResponse,
    ReviewResponse,
    SubmitReviewRequest,
    SubmitReviewResponse,
)
from server.services.media import get_media_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/restaurants", tags=["restaurants"])


async def _require_restaurant(store: ReviewStore, restaurant_id: str):
    restaurant = await get_restaurant(store, restaurant_id)
    if restaurant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Restaurant not found.")
    return restaurant


@router.get("", status_code=200)
async def list_restaurants(
    filters: RestaurantFilters = Depends(),
    store: ReviewStore = Depends(get_store),
) -> list[RestaurantResponse]:
    """List restaurants filtered by category, city, price; sorted by rating or review count."""
    restaurants = await get_restaurants(store, filters.to_filters())
    return [RestaurantResponse.from_entity(r) for r in restaurants]


@router.post("", status_code=201)
async def create_restaurant(
    req: CreateRestaurantRequest,
    store: ReviewStore = Depends(get_store),
) -> RestaurantResponse:
    """Create a restaurant with no ratings yet."""
    restaurant_id = await add_restaurant(store, req.to_new())
    return RestaurantResponse.from_entity(await _require_restaurant(store, restaurant_id))


@router.get("/{restaurant_id}", status_code=200)
async def get_restaurant_by_id(
    restaurant_id: str,
    store: ReviewStore = Depends(get_store),
) -> RestaurantResponse:
    """Get a single restaurant by ID."""
    return RestaurantResponse.from_entity(await _require_restaurant(store, restaurant_id))


@router.get("/{restaurant_id}/reviews", status_code=200)
async def list_reviews(
    restaurant_id: str,
    store: ReviewStore = Depends(get_store),
) -> list[ReviewResponse]:
    """List a restaurant's reviews, newest first."""
    await _require_restaurant(store, restaurant_id)
    reviews = await get_reviews(store, restaurant_id)
    return [ReviewResponse.from_entity(r) for r in reviews]


@router.post("/{restaurant_id}/reviews", status_code=201)
async def create_review(
    restaurant_id: str,
    req: SubmitReviewRequest,
    store: ReviewStore = Depends(get_store),
) -> SubmitReviewResponse:
    """
    Submit a review. The restaurant's aggregate rating is updated in the
    same transaction.
    """
    try:
        review_id = await submit_review(store, restaurant_id, req.to_new())
    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except StorageTransactionFailed as e:
        logger.error("restaurants: review not saved for restaurant_id=%s: %s", restaurant_id, e)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return SubmitReviewResponse(review_id=review_id, restaurant_id=restaurant_id)


@router.put("/{restaurant_id}/photo", status_code=200)
async def upload_photo(
    restaurant_id: str,
    file: UploadFile = File(...),
    store: ReviewStore = Depends(get_store),
    media=Depends(get_media_store),
) -> PhotoResponse:
    """Upload a restaurant photo and point the restaurant at it."""
    await _require_restaurant(store, restaurant_id)
    content = await file.read()
    try:
        uri = await update_restaurant_image(store, media, restaurant_id, file.filename or "", content)
    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except MediaStoreError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    return PhotoResponse(photo=uri)
