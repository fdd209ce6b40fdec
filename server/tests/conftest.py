"""
Pytest configuration and fixtures for the restaurant API tests.

The API runs against MemoryStore; no database is needed.
"""

from __future__ import annotations

import os

# Set test environment variables before importing config
os.environ["STORE_BACKEND"] = "memory"
os.environ.setdefault("LOG_LEVEL", "WARNING")
for _name in ("R2_ENDPOINT", "R2_ACCESS_KEY", "R2_SECRET_KEY"):
    os.environ.pop(_name, None)

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from ratings.store import MemoryStore  # noqa: E402
from server.main import app  # noqa: E402


class FakeMediaStore:
    """Records uploads instead of sending them to R2."""

    def __init__(self) -> None:
        self.uploads: list[tuple[str, str, bytes]] = []
        self.fail = False

    async def upload_image(self, restaurant_id: str, filename: str, content: bytes) -> str:
        if self.fail:
            raise ConnectionError("media store unavailable")
        self.uploads.append((restaurant_id, filename, content))
        return f"https://media.test/images/{restaurant_id}/{filename}"


@pytest.fixture
def store():
    """Fresh MemoryStore installed on the app."""
    store = MemoryStore()
    app.state.store = store
    app.state.media_store = None
    yield store
    del app.state.store
    del app.state.media_store


@pytest.fixture
def media_store(store):
    media = FakeMediaStore()
    app.state.media_store = media
    return media


@pytest_asyncio.fixture
async def async_client(store):
    """Async HTTP client against the ASGI app."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
