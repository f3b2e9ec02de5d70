"""Ingestion endpoints — run the pipeline inline or hand it to the worker."""

import logging

from arq.connections import ArqRedis, create_pool
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from sqlmodel import select

from ragline.api.deps import Pipeline, RateLimited, Session
from ragline.core.errors import InternalError, NotFoundError, RagError, StorageError
from ragline.models.document import Document, DocumentStatus
from ragline.services.pipeline import DocumentRef
from ragline.workers.main import redis_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingest", tags=["ingest"], dependencies=[RateLimited])


# ── Request / Response schemas ────────────────────────────────

class IngestRequest(BaseModel):
    doc_id: str | None = Field(default=None, max_length=100)
    blob_key: str | None = Field(default=None, max_length=1000)
    blob_url: str | None = Field(default=None, max_length=1000)


class IngestResponse(BaseModel):
    success: bool = True
    doc_id: str
    chunks_processed: int
    failed_chunks: int = 0
    status: DocumentStatus


class AsyncIngestRequest(BaseModel):
    doc_id: str = Field(min_length=1, max_length=100)


class AsyncIngestResponse(BaseModel):
    status: str
    doc_id: str


# ── Routes ────────────────────────────────────────────────────

@router.post("", response_model=IngestResponse)
async def ingest(body: IngestRequest, pipeline: Pipeline):
    """Run the ingestion pipeline for one document and wait for the result.

    Failures are reported as ``{"success": false, "error", "code"}``.
    """
    try:
        ref = DocumentRef(doc_id=body.doc_id, blob_key=body.blob_key, blob_url=body.blob_url)
        result = await pipeline.ingest(ref)
    except RagError as exc:
        return _failure(exc)
    except Exception:
        logger.exception("Unexpected ingestion failure")
        return _failure(InternalError("Internal server error"))

    return IngestResponse(
        doc_id=result.doc_id,
        chunks_processed=result.chunks_processed,
        failed_chunks=result.failed_chunks,
        status=result.status,
    )


@router.post(
    "/async",
    response_model=AsyncIngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_async(body: AsyncIngestRequest, session: Session) -> AsyncIngestResponse:
    """Queue ingestion on the ARQ worker and return immediately."""
    result = await session.execute(select(Document.id).where(Document.doc_id == body.doc_id))
    if result.scalar_one_or_none() is None:
        raise NotFoundError(f"Document not found: doc_id={body.doc_id}")

    await _enqueue_ingest(body.doc_id)
    return AsyncIngestResponse(status="accepted", doc_id=body.doc_id)


async def _enqueue_ingest(doc_id: str) -> None:
    try:
        redis: ArqRedis = await create_pool(redis_settings())
    except (RedisError, OSError) as exc:
        raise StorageError(f"Job queue unavailable: {exc}") from exc
    try:
        await redis.enqueue_job("ingest_document", doc_id=doc_id)
    finally:
        await redis.aclose()
    logger.info("Queued ingestion for %s", doc_id)


def _failure(exc: RagError) -> JSONResponse:
    # Client errors keep their status; everything else is a 500
    status_code = exc.status_code if exc.status_code < 500 else 500
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )
