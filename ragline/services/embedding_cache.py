"""Content-addressed embedding cache backed by the chunks table.

A chunk's SHA-256 content hash is its identity: identical text in any document
maps to one row and one embedding. Writes are upserts on the hash, so two
ingestions racing on the same text cannot corrupt the cache. The first
writer's embedding is kept; later writers only take over the row's
``document_id`` / ``chunk_index``.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from ragline.models.base import utcnow
from ragline.models.chunk import Chunk


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class StoredChunk:
    """The row that owns a content hash after an upsert."""
    id: int
    embedding: list[float]


class EmbeddingCache:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def lookup(self, hashes: Iterable[str]) -> dict[str, list[float]]:
        """Return cached embeddings for every known hash."""
        wanted = list(set(hashes))
        if not wanted:
            return {}
        stmt = select(Chunk.content_hash, Chunk.embedding).where(
            Chunk.content_hash.in_(wanted)  # type: ignore[attr-defined]
        )
        result = await self._session.execute(stmt)
        return {row[0]: list(row[1]) for row in result.all()}

    async def store(
        self,
        *,
        document_id: int,
        chunk_index: int,
        content: str,
        token_count: int,
        embedding: list[float],
        hash_: str | None = None,
    ) -> StoredChunk:
        """Upsert a chunk keyed on its content hash.

        Returns the id and the authoritative (first stored) embedding.
        """
        insert = _dialect_insert(self._session)
        now = utcnow()
        stmt = insert(Chunk).values(
            document_id=document_id,
            chunk_index=chunk_index,
            content=content,
            content_hash=hash_ or content_hash(content),
            token_count=token_count,
            embedding=embedding,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["content_hash"],
            set_={
                "document_id": stmt.excluded.document_id,
                "chunk_index": stmt.excluded.chunk_index,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(Chunk.id, Chunk.embedding)

        result = await self._session.execute(stmt)
        row = result.one()
        return StoredChunk(id=row[0], embedding=list(row[1]))


def _dialect_insert(session: AsyncSession):
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite.insert
    return postgresql.insert
