"""RetrievalLog model — one append-only record per query."""

from sqlalchemy import JSON, Text
from sqlmodel import Column, Field, SQLModel

from ragline.models.base import TimestampMixin


class RetrievalLog(TimestampMixin, SQLModel, table=True):
    __tablename__ = "retrieval_logs"

    id: int | None = Field(default=None, primary_key=True)
    request_id: str = Field(max_length=64, nullable=False, unique=True, index=True)
    query_text: str = Field(sa_column=Column(Text, nullable=False))
    # Ranked chunk ids, best match first
    chunk_ids: list[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    latency_ms: int = Field(default=0)
    doc_id: str | None = Field(default=None, max_length=100, index=True)
    top_k: int = Field(default=5)
