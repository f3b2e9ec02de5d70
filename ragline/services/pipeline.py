"""Ingestion pipeline — turns a stored document into embedded, searchable chunks.

Flow:
  1. Resolve the document reference and mark it PROCESSING
  2. Fetch raw bytes (blob store, or HTTP for URL-backed documents)
  3. Extract and clean the text; refuse documents with no usable text
  4. Chunk the text into overlapping word windows
  5. Embed chunks in bounded-concurrency batches (cache first, then the API)
  6. Upsert chunk rows by content hash, then their Qdrant points
  7. Mark the document READY with preview, counts and timestamp

Failures are handled in two phases: the primary run is isolated in its own
session, and only after it has failed does a fresh session mark the document
ERROR. The marking is best-effort and never replaces the original error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from ragline.core.config import get_settings
from ragline.core.errors import (
    CancelledOperationError,
    EmbeddingError,
    EmptyContentError,
    NotFoundError,
    PersistenceError,
    RagError,
    StorageError,
    ValidationError,
)
from ragline.models.base import utcnow
from ragline.models.chunk import Chunk
from ragline.models.document import PREVIEW_MAX_CHARS, Document, DocumentStatus
from ragline.services.blob_store import BlobStore, fetch_url
from ragline.services.chunking import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_OVERLAP_TOKENS,
    TextChunk,
    chunk_text,
    clean_text,
)
from ragline.services.embedding import EmbeddingClient, EmbeddingStrategy, build_embedding_client
from ragline.services.embedding_cache import EmbeddingCache, content_hash
from ragline.services.extract import extract_text
from ragline.services.vector_store import delete_points, ensure_collection, upsert_chunks

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY = 1.0  # seconds between embedding batches


@dataclass
class DocumentRef:
    """Exactly one way of pointing at a document."""
    doc_id: str | None = None
    blob_key: str | None = None
    blob_url: str | None = None

    def __post_init__(self) -> None:
        given = [v for v in (self.doc_id, self.blob_key, self.blob_url) if v]
        if len(given) != 1:
            raise ValidationError("Provide exactly one of doc_id, blob_key or blob_url")

    def __str__(self) -> str:
        if self.doc_id:
            return f"doc_id={self.doc_id}"
        if self.blob_key:
            return f"blob_key={self.blob_key}"
        return f"blob_url={self.blob_url}"


@dataclass
class IngestionResult:
    doc_id: str
    chunks_processed: int
    failed_chunks: int
    total_tokens: int
    status: DocumentStatus


@dataclass
class _PersistedChunk:
    id: int
    index: int
    token_count: int


@dataclass
class _RunState:
    """What the failure path needs to know about a run that blew up."""
    document_id: int | None = None


class IngestionPipeline:
    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: BlobStore,
        embedder: EmbeddingClient,
        strategy: EmbeddingStrategy = EmbeddingStrategy.CACHED_WITH_RETRY,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        allow_partial: bool = True,
        fetch: Callable[[str], Awaitable[bytes]] = fetch_url,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._embedder = embedder
        self.strategy = strategy
        self._max_tokens = max_tokens
        self._overlap_tokens = overlap_tokens
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._allow_partial = allow_partial
        self._fetch = fetch
        self._sleep = sleep

    async def ingest(self, ref: DocumentRef) -> IngestionResult:
        """Run the pipeline for one document.

        Raises:
            RagError: The primary failure, after the document was marked ERROR.
        """
        state = _RunState()
        logger.info("Starting ingestion for %s (%s)", ref, self.strategy)
        try:
            return await self._run(ref, state)
        except asyncio.CancelledError:
            logger.warning("Ingestion cancelled for %s", ref)
            await asyncio.shield(self._mark_error(ref, state, "Ingestion cancelled"))
            raise
        except Exception as exc:
            logger.exception("Ingestion failed for %s", ref)
            message = exc.message if isinstance(exc, RagError) else str(exc)
            await self._mark_error(ref, state, message)
            raise

    # ── Primary phase ────────────────────────────────────────

    async def _run(self, ref: DocumentRef, state: _RunState) -> IngestionResult:
        async with self._session_factory() as session:
            document = await self._resolve(session, ref)
            state.document_id = document.id
            metadata = json.loads(document.metadata_json or "{}")

            document.status = DocumentStatus.PROCESSING
            document.error_message = None
            document.updated_at = utcnow()
            session.add(document)
            await session.commit()

            raw = await self._fetch_bytes(document, ref)
            text = extract_text(
                raw,
                filename=metadata.get("original_filename") or document.blob_key or "",
                media_type=metadata.get("mimetype", ""),
            )
            cleaned = clean_text(text)
            if not cleaned:
                raise EmptyContentError("No text content extracted from document")

            chunks = chunk_text(
                cleaned,
                max_tokens=self._max_tokens,
                overlap_tokens=self._overlap_tokens,
            )
            logger.info("Generated %d chunks for document %s", len(chunks), document.doc_id)

            persisted, failed = await self._embed_and_persist(session, document, chunks)
            if not persisted:
                raise EmbeddingError(f"All {len(chunks)} chunks failed to embed")
            if failed and not self._allow_partial:
                await self._discard_chunks(session, document, {p.id for p in persisted})
                raise EmbeddingError(f"{failed} of {len(chunks)} chunks failed to embed")

            await self._prune_stale_chunks(session, document, {p.id for p in persisted})

            total_tokens = sum(p.token_count for p in persisted)
            processed_at = utcnow()
            metadata.update({
                "chunks_count": len(persisted),
                "failed_chunks": failed,
                "total_tokens": total_tokens,
                "processed_at": processed_at.isoformat(),
            })
            document.status = DocumentStatus.READY
            document.content_preview = cleaned[:PREVIEW_MAX_CHARS]
            document.chunk_count = len(persisted)
            document.total_tokens = total_tokens
            document.processed_at = processed_at
            document.metadata_json = json.dumps(metadata)
            document.updated_at = processed_at
            session.add(document)
            try:
                await session.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Failed to finalize document: {exc}") from exc

            if failed:
                logger.warning(
                    "Document %s ready with %d failed chunks", document.doc_id, failed
                )
            logger.info(
                "Successfully processed document %s with %d chunks",
                document.doc_id,
                len(persisted),
            )
            return IngestionResult(
                doc_id=document.doc_id,
                chunks_processed=len(persisted),
                failed_chunks=failed,
                total_tokens=total_tokens,
                status=DocumentStatus.READY,
            )

    async def _resolve(self, session: AsyncSession, ref: DocumentRef) -> Document:
        stmt = select(Document)
        if ref.doc_id:
            stmt = stmt.where(Document.doc_id == ref.doc_id)
        elif ref.blob_key:
            stmt = stmt.where(Document.blob_key == ref.blob_key)
        else:
            stmt = stmt.where(Document.source_url == ref.blob_url)

        try:
            result = await session.execute(stmt.limit(2))
        except SQLAlchemyError as exc:
            raise StorageError(f"Document lookup failed: {exc}") from exc
        documents = result.scalars().all()

        if not documents:
            raise NotFoundError(f"Document not found: {ref}")
        if len(documents) > 1:
            raise ValidationError(f"Reference {ref} matches more than one document")
        return documents[0]

    async def _fetch_bytes(self, document: Document, ref: DocumentRef) -> bytes:
        if document.blob_key:
            try:
                data = await self._blob_store.get(document.blob_key)
            except StorageError:
                raise
            except OSError as exc:
                raise StorageError(f"Blob storage read failed: {exc}") from exc
            if data is None:
                raise StorageError(f"File not found in blob storage: {document.blob_key}")
            return data

        url = document.source_url or ref.blob_url
        if not url:
            raise StorageError(f"Document {document.doc_id} has no storage location")
        return await self._fetch(url)

    async def _embed_and_persist(
        self,
        session: AsyncSession,
        document: Document,
        chunks: list[TextChunk],
    ) -> tuple[list[_PersistedChunk], int]:
        """Embed and store chunks batch by batch.

        Text repeated within the document maps to one row, owned by its
        first occurrence; later repeats are skipped rather than counted.

        Returns the persisted chunks and the number of chunks whose
        embedding failed.
        """
        cache = EmbeddingCache(session)
        persisted: list[_PersistedChunk] = []
        seen: set[str] = set()
        failed = 0

        for start in range(0, len(chunks), self._batch_size):
            if start and self._batch_delay:
                await self._sleep(self._batch_delay)
            batch = chunks[start : start + self._batch_size]

            vectors = await self._resolve_embeddings(cache, batch)
            points: list[dict] = []
            try:
                for chunk in batch:
                    digest = content_hash(chunk.content)
                    if digest in seen:
                        continue
                    seen.add(digest)
                    if digest not in vectors:
                        failed += 1
                        continue
                    stored = await cache.store(
                        document_id=document.id,
                        chunk_index=chunk.index,
                        content=chunk.content,
                        token_count=chunk.token_count,
                        embedding=vectors[digest],
                        hash_=digest,
                    )
                    persisted.append(_PersistedChunk(stored.id, chunk.index, chunk.token_count))
                    points.append({
                        "id": stored.id,
                        "vector": stored.embedding,
                        "payload": {
                            "chunk_id": stored.id,
                            "document_id": document.id,
                            "doc_id": document.doc_id,
                            "chunk_index": chunk.index,
                            "content": chunk.content,
                        },
                    })
                await session.commit()

                if points:
                    await ensure_collection(len(points[0]["vector"]))
                    await upsert_chunks(points)
            except RagError:
                raise
            except Exception as exc:
                await session.rollback()
                raise PersistenceError(f"Failed to persist chunks: {exc}") from exc

            logger.debug(
                "Batch %d persisted %d/%d chunks for %s",
                start // self._batch_size,
                len(points),
                len(batch),
                document.doc_id,
            )

        return persisted, failed

    async def _resolve_embeddings(
        self,
        cache: EmbeddingCache,
        batch: list[TextChunk],
    ) -> dict[str, list[float]]:
        """Map content hash → embedding for every chunk in the batch that succeeded."""
        texts = {content_hash(c.content): c.content for c in batch}

        vectors: dict[str, list[float]] = {}
        if self.strategy is EmbeddingStrategy.CACHED_WITH_RETRY:
            vectors = await cache.lookup(texts)
            embed = self._embedder.embed_with_retry
        else:
            embed = self._embedder.embed

        pending = [digest for digest in texts if digest not in vectors]
        results = await asyncio.gather(
            *(embed(texts[digest]) for digest in pending),
            return_exceptions=True,
        )
        for digest, outcome in zip(pending, results):
            if isinstance(outcome, asyncio.CancelledError):
                raise CancelledOperationError("Embedding request was cancelled") from outcome
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                logger.error("Embedding failed for chunk %s: %s", digest[:12], outcome)
                continue
            vectors[digest] = outcome

        if pending:
            logger.debug(
                "Embedded %d chunks (%d cache hits)", len(pending), len(texts) - len(pending)
            )
        return vectors

    async def _prune_stale_chunks(
        self,
        session: AsyncSession,
        document: Document,
        keep_ids: set[int],
    ) -> None:
        """Drop chunks left over from an earlier ingestion of this document."""
        stale = await self._delete_owned_chunks(
            session,
            document,
            Chunk.id.not_in(keep_ids),  # type: ignore[union-attr]
        )
        if stale:
            logger.info("Removed %d stale chunks from document %s", stale, document.doc_id)

    async def _discard_chunks(
        self,
        session: AsyncSession,
        document: Document,
        chunk_ids: set[int],
    ) -> None:
        """Withdraw a failed run's chunks so an ERROR document is not searchable.

        Failing to clean up is logged; the caller still raises the run's error.
        """
        if not chunk_ids:
            return
        try:
            removed = await self._delete_owned_chunks(
                session,
                document,
                Chunk.id.in_(chunk_ids),  # type: ignore[union-attr]
            )
        except PersistenceError:
            logger.exception("Failed to discard chunks of document %s", document.doc_id)
            return
        logger.info("Discarded %d chunks of failed document %s", removed, document.doc_id)

    async def _delete_owned_chunks(self, session: AsyncSession, document: Document, condition) -> int:
        """Delete this document's chunks matching ``condition`` from SQL, then Qdrant."""
        stmt = select(Chunk.id).where(Chunk.document_id == document.id, condition)
        try:
            ids = list((await session.execute(stmt)).scalars().all())
            if not ids:
                return 0
            await session.execute(delete(Chunk).where(Chunk.id.in_(ids)))  # type: ignore[union-attr]
            await session.commit()
            await delete_points(ids)
        except Exception as exc:
            raise PersistenceError(f"Failed to remove chunks: {exc}") from exc
        return len(ids)

    # ── Secondary phase ──────────────────────────────────────

    async def _mark_error(self, ref: DocumentRef, state: _RunState, message: str) -> None:
        """Best-effort ERROR marking in a fresh session. Never raises."""
        try:
            async with self._session_factory() as session:
                if state.document_id is not None:
                    document = await session.get(Document, state.document_id)
                else:
                    try:
                        document = await self._resolve(session, ref)
                    except RagError:
                        document = None
                if document is None:
                    return
                document.status = DocumentStatus.ERROR
                document.error_message = message[:2000]
                document.updated_at = utcnow()
                session.add(document)
                await session.commit()
        except Exception:
            logger.exception("Failed to mark document %s as errored", ref)


def build_ingestion_pipeline(
    session_factory: sessionmaker,
    blob_store: BlobStore,
    api_key: str | None = None,
) -> IngestionPipeline:
    """Construct the pipeline from application settings."""
    settings = get_settings()
    return IngestionPipeline(
        session_factory=session_factory,
        blob_store=blob_store,
        embedder=build_embedding_client(api_key),
        strategy=EmbeddingStrategy(settings.embedding_strategy),
        max_tokens=settings.chunk_max_tokens,
        overlap_tokens=settings.chunk_overlap_tokens,
        batch_size=settings.embedding_batch_size,
        batch_delay=settings.embedding_batch_delay,
        allow_partial=settings.allow_partial_ingest,
    )
