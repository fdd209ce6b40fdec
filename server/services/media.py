"""Cloudflare R2 media storage for restaurant photos."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import posixpath

import aioboto3
from botocore.exceptions import ClientError
from fastapi import HTTPException, Request, status

from ratings.aggregate import MediaStore
from server.config import settings

logger = logging.getLogger(__name__)

# Retryable S3 error codes
_RETRYABLE_CODES = {"RequestTimeout", "ServiceUnavailable", "ThrottlingException", "Throttling"}


class R2MediaStore:
    """Restaurant photo uploads to R2 using the S3-compatible API."""

    def __init__(self) -> None:
        """Initialize R2 client session with credentials from settings."""
        self.session = aioboto3.Session()
        self.endpoint = settings.R2_ENDPOINT
        self.access_key = settings.R2_ACCESS_KEY
        self.secret_key = settings.R2_SECRET_KEY
        self.bucket = settings.R2_MEDIA_BUCKET
        self.public_url = (settings.R2_PUBLIC_URL or settings.R2_ENDPOINT).rstrip("/")

    async def upload_image(self, restaurant_id: str, filename: str, content: bytes, max_retries: int = 1) -> str:
        """
        Upload a restaurant photo with retry on transient failures.

        Args:
            restaurant_id: Restaurant the photo belongs to
            filename: Original file name (directory parts are dropped)
            content: Image bytes
            max_retries: Number of retries on transient failures (default 1)

        Returns:
            Public URL of the uploaded image
        """
        key = f"images/{restaurant_id}/{posixpath.basename(filename)}"
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            try:
                async with self.session.client(
                    "s3",
                    endpoint_url=self.endpoint,
                    aws_access_key_id=self.access_key,
                    aws_secret_access_key=self.secret_key,
                ) as s3:
                    await s3.put_object(
                        Bucket=self.bucket,
                        Key=key,
                        Body=content,
                        ContentType=content_type,
                    )
                return f"{self.public_url}/{key}"
            except ClientError as e:
                error_code = e.response.get("Error", {}).get("Code", "")
                if error_code in _RETRYABLE_CODES and attempt < max_retries:
                    wait_time = 2**attempt
                    logger.warning("media: R2 upload error (attempt %d), retrying in %ds: %s", attempt + 1, wait_time, e)
                    await asyncio.sleep(wait_time)
                    last_error = e
                else:
                    raise
            except Exception as e:
                # Network errors, timeouts, etc.
                if attempt < max_retries:
                    wait_time = 2**attempt
                    logger.warning("media: R2 upload error (attempt %d), retrying in %ds: %s", attempt + 1, wait_time, e)
                    await asyncio.sleep(wait_time)
                    last_error = e
                else:
                    raise

        raise last_error  # type: ignore[misc]


def open_media_store() -> MediaStore | None:
    """The configured media store, or None when R2 is not set up."""
    if not settings.media_configured:
        logger.info("media: R2 not configured, photo uploads disabled")
        return None
    return R2MediaStore()


def get_media_store(request: Request) -> MediaStore:
    """FastAPI dependency: the media store, 503 if none is configured."""
    media = getattr(request.app.state, "media_store", None)
    if media is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Photo uploads are not configured.")
    return media
