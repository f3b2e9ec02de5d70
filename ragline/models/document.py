"""Document model — one uploaded file and its processing state."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from ragline.models.base import TimestampMixin, timestamp_field

PREVIEW_MAX_CHARS = 10_000


class DocumentStatus(StrEnum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    READY = "READY"
    ERROR = "ERROR"


class Document(TimestampMixin, SQLModel, table=True):
    __tablename__ = "documents"

    id: int | None = Field(default=None, primary_key=True)
    # Caller-visible identifier, e.g. "doc_1718000000000_k3j9x0a1b"
    doc_id: str = Field(max_length=100, nullable=False, unique=True, index=True)

    title: str = Field(default="", max_length=500)
    document_type: str = Field(default="text", max_length=100)
    status: DocumentStatus = Field(default=DocumentStatus.UPLOADED)

    # Where the raw bytes live: a blob store key, or a URL fetched at ingest time
    blob_key: str | None = Field(default=None, max_length=1000, index=True)
    source_url: str | None = Field(default=None, max_length=1000, index=True)

    content_preview: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))

    # Open map: original_filename, mimetype, file_size, tenant_id, failed_chunks ...
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))

    chunk_count: int = Field(default=0)
    total_tokens: int = Field(default=0)
    error_message: str | None = Field(default=None, max_length=2000)
    processed_at: datetime | None = timestamp_field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class DocumentRead(SQLModel):
    doc_id: str
    db_id: int
    title: str
    status: DocumentStatus
    document_type: str
    chunks_count: int
    total_tokens: int
    file_size: int = 0
    original_filename: str | None = None
    tenant_id: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None = None


class DocumentUploaded(SQLModel):
    doc_id: str
    db_id: int
    blob_path: str
    file_size: int
    status: DocumentStatus
