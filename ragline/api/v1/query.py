"""Query endpoint — retrieval plus answer synthesis, as SSE or JSON."""

from collections.abc import AsyncGenerator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from ragline.api.deps import Embedder, RateLimited, Session
from ragline.services.orchestrator import (
    RetrievalResult,
    collect_answer,
    retrieve,
    synthesize_answer,
)
from ragline.services.retrieval import DEFAULT_TOP_K, MAX_TOP_K

router = APIRouter(prefix="/query", tags=["query"], dependencies=[RateLimited])


# ── Request / Response schemas ────────────────────────────────

class QueryRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=2000)
    doc_id: str | None = Field(default=None, max_length=100)
    top_k: int = Field(default=DEFAULT_TOP_K, ge=1, le=MAX_TOP_K)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Missing prompt")
        return value


class ChunkView(BaseModel):
    id: int
    content: str
    chunk_index: int
    similarity: float
    document_title: str


class QueryResponse(BaseModel):
    request_id: str
    chunks: list[ChunkView]
    answer: str
    streaming: bool = False
    latency_ms: int


# ── Route ─────────────────────────────────────────────────────

@router.post("", response_model=QueryResponse)
async def query(
    body: QueryRequest,
    request: Request,
    session: Session,
    embedder: Embedder,
):
    """Answer a prompt from the knowledge base.

    With ``Accept: text/event-stream`` the answer is streamed as SSE
    ``data:`` events (metadata, chunks, token..., end or error). Otherwise
    the complete answer is returned as JSON.
    """
    # Embedding and search run before the response starts, so their
    # failures surface as ordinary JSON errors in both modes.
    retrieval = await retrieve(
        session,
        body.prompt,
        embedder,
        doc_id=body.doc_id,
        top_k=body.top_k,
    )

    if "text/event-stream" in request.headers.get("accept", ""):
        return StreamingResponse(
            _stream_sse(retrieval),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    answer = await collect_answer(synthesize_answer(retrieval, stream=False))
    return QueryResponse(
        request_id=retrieval.request_id,
        chunks=[ChunkView(**c.to_display()) for c in retrieval.chunks],
        answer=answer,
        latency_ms=retrieval.latency_ms,
    )


async def _stream_sse(retrieval: RetrievalResult) -> AsyncGenerator[str, None]:
    async for event in synthesize_answer(retrieval, stream=True):
        yield event.to_sse()
