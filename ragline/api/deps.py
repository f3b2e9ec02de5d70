"""FastAPI dependencies for sessions, collaborators and rate limiting."""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Request
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ragline.core.config import get_settings
from ragline.core.database import get_session, get_session_factory
from ragline.core.errors import RateLimitError
from ragline.core.rate_limit import NoopRateLimiter, RateLimiter, RedisRateLimiter
from ragline.services.blob_store import BlobStore, build_blob_store
from ragline.services.embedding import EmbeddingClient, build_embedding_client
from ragline.services.pipeline import IngestionPipeline, build_ingestion_pipeline

logger = logging.getLogger(__name__)


def get_blob_store() -> BlobStore:
    return build_blob_store()


def get_embedding_client() -> EmbeddingClient:
    return build_embedding_client()


def get_ingestion_pipeline(
    session_factory: Annotated[sessionmaker, Depends(get_session_factory)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
) -> IngestionPipeline:
    return build_ingestion_pipeline(session_factory, blob_store)


@lru_cache
def get_rate_limiter() -> RateLimiter:
    """Shared limiter for the process; disabled when the limit is 0."""
    settings = get_settings()
    if settings.rate_limit_per_minute <= 0:
        return NoopRateLimiter()
    return RedisRateLimiter.from_url(settings.redis_url, settings.rate_limit_per_minute)


def client_ip(request: Request) -> str:
    """First address in X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


async def enforce_rate_limit(
    request: Request,
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
) -> None:
    key = client_ip(request)
    try:
        allowed = await limiter.allow(key)
    except RedisError:
        # Limiter outage: serve the request rather than fail it
        logger.exception("Rate limiter unavailable; allowing request from %s", key)
        return
    if not allowed:
        raise RateLimitError("Rate limit exceeded. Try again in a minute.")


# Typed shorthand for use in route signatures
Session = Annotated[AsyncSession, Depends(get_session)]
Blobs = Annotated[BlobStore, Depends(get_blob_store)]
Embedder = Annotated[EmbeddingClient, Depends(get_embedding_client)]
Pipeline = Annotated[IngestionPipeline, Depends(get_ingestion_pipeline)]
RateLimited = Depends(enforce_rate_limit)
