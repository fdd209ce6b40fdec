"""
WebSocket endpoints for realtime restaurant and review data.

Each connection owns one Subscription. Every delivery is sent as a frame:
  {"type": "snapshot", "data": [...] | {...}}
  {"type": "not_found", "id": "..."}

Connections:
  /ws/restaurants?category=&city=&price=&sort=   filtered restaurant list
  /ws/restaurants/{restaurant_id}                one restaurant
  /ws/restaurants/{restaurant_id}/reviews        its reviews, newest first
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from ratings.query import restaurants_query
from ratings.realtime import Observer, Subscription, watch_collection, watch_document, watch_reviews
from ratings.types import InvalidInput, NotFound, Restaurant, Review
from server.config import settings
from server.db import get_ws_store
from server.models.restaurant import (
    NotFoundMessage,
    RestaurantFilters,
    RestaurantResponse,
    ReviewResponse,
    SnapshotMessage,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


def _entity_response(entity: Restaurant | Review) -> RestaurantResponse | ReviewResponse:
    if isinstance(entity, Restaurant):
        return RestaurantResponse.from_entity(entity)
    return ReviewResponse.from_entity(entity)


def make_frame(result: Any) -> str:
    """Serialize one delivered result as a WebSocket frame."""
    if isinstance(result, NotFound):
        return NotFoundMessage(id=result.id).model_dump_json()
    if isinstance(result, Restaurant):
        return SnapshotMessage(data=RestaurantResponse.from_entity(result)).model_dump_json()
    return SnapshotMessage(data=[_entity_response(e) for e in result]).model_dump_json()


async def _serve(
    websocket: WebSocket,
    label: str,
    subscribe: Callable[[Observer], Awaitable[Subscription]],
) -> None:
    """Accept, subscribe, and hold the connection until the client leaves."""
    await websocket.accept()

    async def send(result: Any) -> None:
        await websocket.send_text(make_frame(result))

    try:
        subscription = await subscribe(send)
    except InvalidInput as e:
        logger.warning("ws: rejected %s: %s", label, e)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
        return

    logger.info("ws: watching %s", label)
    receiving = asyncio.create_task(_receive_until_disconnect(websocket, label))
    closed = asyncio.create_task(subscription.wait_closed())
    try:
        done, _ = await asyncio.wait({receiving, closed}, return_when=asyncio.FIRST_COMPLETED)
        if receiving not in done:
            # Subscription ended while the client is still connected.
            receiving.cancel()
            error = closed.result()
            if error is not None:
                await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Subscription failed.")
            else:
                await websocket.close(code=status.WS_1001_GOING_AWAY, reason="Subscription closed.")
            logger.warning("ws: closed %s, subscription ended (error=%s)", label, error)
    finally:
        receiving.cancel()
        closed.cancel()
        subscription.unsubscribe()


async def _receive_until_disconnect(websocket: WebSocket, label: str) -> None:
    try:
        while True:
            # Client frames carry nothing; reading detects disconnects.
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("ws: disconnected %s", label)


@router.websocket("/ws/restaurants")
async def watch_restaurants_ws(websocket: WebSocket) -> None:
    store = get_ws_store(websocket)
    try:
        filters = RestaurantFilters.model_validate(dict(websocket.query_params))
    except ValidationError as e:
        await websocket.accept()
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid filters.")
        logger.warning("ws: invalid restaurant filters: %s", e)
        return

    spec = restaurants_query(filters.to_filters())
    await _serve(
        websocket,
        f"restaurants filters={filters.to_filters()}",
        lambda observer: watch_collection(store, spec, observer, buffer_size=settings.WATCH_BUFFER_SIZE),
    )


@router.websocket("/ws/restaurants/{restaurant_id}")
async def watch_restaurant_ws(websocket: WebSocket, restaurant_id: str) -> None:
    store = get_ws_store(websocket)
    await _serve(
        websocket,
        f"restaurant_id={restaurant_id}",
        lambda observer: watch_document(store, restaurant_id, observer, buffer_size=settings.WATCH_BUFFER_SIZE),
    )


@router.websocket("/ws/restaurants/{restaurant_id}/reviews")
async def watch_reviews_ws(websocket: WebSocket, restaurant_id: str) -> None:
    store = get_ws_store(websocket)
    await _serve(
        websocket,
        f"reviews restaurant_id={restaurant_id}",
        lambda observer: watch_reviews(store, restaurant_id, observer, buffer_size=settings.WATCH_BUFFER_SIZE),
    )
