"""Vector search over ingested chunks, annotated with document titles."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from ragline.core.errors import ValidationError
from ragline.models.document import Document
from ragline.services.vector_store import search_chunks

DEFAULT_TOP_K = 5
MAX_TOP_K = 20
DISPLAY_CHARS = 200


@dataclass
class RetrievedChunk:
    """A chunk retrieved from vector search."""
    id: int
    content: str
    chunk_index: int
    similarity: float
    document_title: str

    def to_display(self) -> dict:
        return {
            "id": self.id,
            "content": self.content[:DISPLAY_CHARS] + "...",
            "chunk_index": self.chunk_index,
            "similarity": self.similarity,
            "document_title": self.document_title,
        }


async def search_similar_chunks(
    session: AsyncSession,
    query_vector: list[float],
    doc_id: str | None = None,
    top_k: int = DEFAULT_TOP_K,
) -> list[RetrievedChunk]:
    """Return up to ``top_k`` chunks, most similar first.

    Similarity is cosine similarity (1 - cosine distance). When ``doc_id`` is
    given only that document's chunks are considered.
    """
    if not 1 <= top_k <= MAX_TOP_K:
        raise ValidationError(f"top_k must be between 1 and {MAX_TOP_K}")

    hits = await search_chunks(query_vector, doc_id=doc_id, limit=top_k)
    if not hits:
        return []

    document_ids = {hit["payload"].get("document_id") for hit in hits}
    result = await session.execute(
        select(Document.id, Document.title).where(
            Document.id.in_(document_ids)  # type: ignore[union-attr]
        )
    )
    titles = {row[0]: row[1] for row in result.all()}

    chunks = [
        RetrievedChunk(
            id=int(hit["id"]),
            content=hit["payload"].get("content", ""),
            chunk_index=hit["payload"].get("chunk_index", 0),
            similarity=float(hit["score"]),
            document_title=titles.get(hit["payload"].get("document_id"), ""),
        )
        for hit in hits
    ]
    chunks.sort(key=lambda c: c.similarity, reverse=True)
    return chunks
