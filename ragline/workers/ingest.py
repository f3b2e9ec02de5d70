"""Ingestion worker task — runs the pipeline for one queued document."""

from __future__ import annotations

import logging

from ragline.core.database import async_session_factory
from ragline.core.errors import RagError
from ragline.services.blob_store import build_blob_store
from ragline.services.pipeline import DocumentRef, build_ingestion_pipeline

logger = logging.getLogger(__name__)


async def ingest_document(ctx: dict, doc_id: str) -> dict:
    """ARQ task: ingest a document — extract, chunk, embed, store.

    Args:
        ctx: ARQ worker context.
        doc_id: Caller-visible id of the Document to process.

    Returns:
        dict with the outcome; failures are reported, not raised, so ARQ
        does not retry a document that has already been marked ERROR.
    """
    pipeline = build_ingestion_pipeline(async_session_factory, build_blob_store())
    try:
        result = await pipeline.ingest(DocumentRef(doc_id=doc_id))
    except RagError as exc:
        logger.error("Ingestion job for %s failed: [%s] %s", doc_id, exc.code, exc.message)
        return {"doc_id": doc_id, "status": "ERROR", "code": exc.code, "error": exc.message}

    return {
        "doc_id": result.doc_id,
        "status": result.status.value,
        "chunks_processed": result.chunks_processed,
        "failed_chunks": result.failed_chunks,
    }
