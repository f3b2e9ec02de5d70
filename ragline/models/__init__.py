"""Import all models so SQLModel.metadata picks them up."""

from ragline.models.chunk import Chunk
from ragline.models.document import (
    PREVIEW_MAX_CHARS,
    Document,
    DocumentRead,
    DocumentStatus,
    DocumentUploaded,
)
from ragline.models.retrieval_log import RetrievalLog

__all__ = [
    "PREVIEW_MAX_CHARS",
    "Chunk",
    "Document",
    "DocumentRead",
    "DocumentStatus",
    "DocumentUploaded",
    "RetrievalLog",
]
