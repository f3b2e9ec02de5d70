"""Qdrant vector store service — collection management, upsert, search, delete."""

from __future__ import annotations

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from ragline.core.config import get_settings

COLLECTION_NAME = "ragline_chunks"

_client: AsyncQdrantClient | None = None


async def get_qdrant_client() -> AsyncQdrantClient:
    """Lazy-init a shared async Qdrant client."""
    global _client
    if _client is None:
        settings = get_settings()
        if settings.qdrant_url == ":memory:":
            _client = AsyncQdrantClient(location=":memory:")
        else:
            _client = AsyncQdrantClient(url=settings.qdrant_url, check_compatibility=False)
    return _client


async def ensure_collection(dimensions: int | None = None) -> None:
    """Create the chunk collection if it doesn't exist."""
    client = await get_qdrant_client()
    if await client.collection_exists(COLLECTION_NAME):
        return
    dims = dimensions or get_settings().embedding_dimensions
    await client.create_collection(
        collection_name=COLLECTION_NAME,
        vectors_config=VectorParams(size=dims, distance=Distance.COSINE),
    )


async def upsert_chunks(points: list[dict]) -> None:
    """Upsert chunk vectors into Qdrant.

    Each point dict must have:
        id: int (the chunk row id)
        vector: list[float]
        payload: dict with at least chunk_id, document_id, doc_id,
                 chunk_index, content
    """
    if not points:
        return
    client = await get_qdrant_client()
    qdrant_points = [
        PointStruct(
            id=p["id"],
            vector=p["vector"],
            payload=p["payload"],
        )
        for p in points
    ]
    await client.upsert(collection_name=COLLECTION_NAME, points=qdrant_points)


async def search_chunks(
    query_vector: list[float],
    doc_id: str | None = None,
    limit: int = 5,
) -> list[dict]:
    """Return the nearest chunks by cosine similarity, best first.

    Returns list of dicts with id, score, and payload.
    """
    client = await get_qdrant_client()
    if not await client.collection_exists(COLLECTION_NAME):
        return []

    query_filter = None
    if doc_id:
        query_filter = Filter(
            must=[FieldCondition(key="doc_id", match=MatchValue(value=doc_id))]
        )
    response = await client.query_points(
        collection_name=COLLECTION_NAME,
        query=query_vector,
        query_filter=query_filter,
        limit=limit,
        with_payload=True,
    )
    return [
        {
            "id": hit.id,
            "score": hit.score,
            "payload": hit.payload or {},
        }
        for hit in response.points
    ]


async def delete_points(point_ids: list[int]) -> None:
    """Delete vectors by chunk id."""
    if not point_ids:
        return
    client = await get_qdrant_client()
    if not await client.collection_exists(COLLECTION_NAME):
        return
    await client.delete(
        collection_name=COLLECTION_NAME,
        points_selector=PointIdsList(points=point_ids),
    )
