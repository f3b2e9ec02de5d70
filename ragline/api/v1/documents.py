"""Document upload and status endpoints."""

import json
import logging
import secrets
import string
import time
from pathlib import Path

from fastapi import APIRouter, Form, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from ragline.api.deps import Blobs, RateLimited, Session
from ragline.core.config import get_settings
from ragline.core.errors import NotFoundError, PersistenceError, ValidationError
from ragline.models.document import Document, DocumentRead, DocumentStatus, DocumentUploaded

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"], dependencies=[RateLimited])

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_doc_id() -> str:
    """Caller-visible id: ``doc_<epoch ms>_<9 random base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"doc_{int(time.time() * 1000)}_{suffix}"


@router.post("/upload", response_model=DocumentUploaded)
async def upload_document(
    file: UploadFile,
    session: Session,
    blobs: Blobs,
    title: str = Form(..., min_length=1, max_length=500),
    document_type: str = Form(..., alias="type", min_length=1, max_length=100),
    tenant_id: str = Form(..., min_length=1, max_length=100),
) -> DocumentUploaded:
    """Store an uploaded file and register it as an UPLOADED document.

    Text extraction happens later, when the document is ingested.
    """
    content = await file.read()
    max_size = get_settings().max_upload_size
    if len(content) > max_size:
        raise ValidationError(
            f"File too large. Maximum size is {max_size // (1024 * 1024)} MB.",
            details={"file_size": len(content), "max_size": max_size},
        )

    filename = file.filename or "upload"
    ext = Path(filename).suffix.lstrip(".").lower() or "bin"
    doc_id = new_doc_id()
    blob_path = f"{tenant_id}/{doc_id}/original.{ext}"
    await blobs.put(blob_path, content)

    doc = Document(
        doc_id=doc_id,
        title=title,
        document_type=document_type,
        status=DocumentStatus.UPLOADED,
        blob_key=blob_path,
        metadata_json=json.dumps({
            "original_filename": filename,
            "mimetype": file.content_type or "",
            "tenant_id": tenant_id,
            "file_size": len(content),
        }),
    )
    session.add(doc)
    try:
        await session.commit()
        await session.refresh(doc)
    except SQLAlchemyError as exc:
        await session.rollback()
        # Nothing references the blob without its document row
        await blobs.delete(blob_path)
        raise PersistenceError("Failed to register document") from exc

    logger.info("Uploaded %s (%d bytes) as %s", filename, len(content), doc_id)
    return DocumentUploaded(
        doc_id=doc_id,
        db_id=doc.id,
        blob_path=blob_path,
        file_size=len(content),
        status=doc.status,
    )


@router.get("/{doc_id}", response_model=DocumentRead)
async def get_document(doc_id: str, session: Session) -> DocumentRead:
    result = await session.execute(select(Document).where(Document.doc_id == doc_id))
    doc = result.scalar_one_or_none()
    if doc is None:
        raise NotFoundError(f"Document not found: {doc_id}")
    return _to_read(doc)


def _to_read(doc: Document) -> DocumentRead:
    metadata = json.loads(doc.metadata_json or "{}")
    return DocumentRead(
        doc_id=doc.doc_id,
        db_id=doc.id,
        title=doc.title,
        status=doc.status,
        document_type=doc.document_type,
        chunks_count=doc.chunk_count,
        total_tokens=doc.total_tokens,
        file_size=metadata.get("file_size", 0),
        original_filename=metadata.get("original_filename"),
        tenant_id=metadata.get("tenant_id"),
        error_message=doc.error_message,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
        processed_at=doc.processed_at,
    )
