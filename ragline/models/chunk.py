"""Chunk model — an embedded text segment, deduplicated by content hash."""

from sqlalchemy import JSON, Text
from sqlmodel import Column, Field, SQLModel

from ragline.models.base import TimestampMixin


class Chunk(TimestampMixin, SQLModel, table=True):
    __tablename__ = "chunks"

    # Also used as the Qdrant point id
    id: int | None = Field(default=None, primary_key=True)
    # Last writer wins: a cache hit from another document reassigns ownership
    document_id: int = Field(foreign_key="documents.id", nullable=False, index=True)

    # Position within the owning document
    chunk_index: int = Field(nullable=False)

    content: str = Field(sa_column=Column(Text, nullable=False))
    content_hash: str = Field(max_length=64, nullable=False, unique=True, index=True)
    token_count: int = Field(default=0)

    # Written once on first insert; authoritative for every later reuse
    embedding: list[float] = Field(sa_column=Column(JSON, nullable=False))
