"""Query orchestrator — retrieval-augmented answer synthesis.

Flow:
  1. Embed the query prompt
  2. Search Qdrant for the most similar chunks (optionally one document)
  3. Record the retrieval in retrieval_logs (best-effort)
  4. Pack the chunks into a citation-numbered system prompt
  5. Call the LLM via LiteLLM (streaming or non-streaming) and emit events

Both delivery modes share one event sequence:
    metadata → chunks → token* → (end | error)
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from litellm import acompletion
from sqlalchemy.ext.asyncio import AsyncSession

from ragline.core.config import get_settings
from ragline.core.errors import ExternalAPIError, RagError, StorageError
from ragline.models.retrieval_log import RetrievalLog
from ragline.services.embedding import EmbeddingClient
from ragline.services.retrieval import DEFAULT_TOP_K, RetrievedChunk, search_similar_chunks

logger = logging.getLogger(__name__)

NO_RESULTS_ANSWER = "No relevant information found in the knowledge base."
EMPTY_COMPLETION_ANSWER = "No response generated."


@dataclass
class RetrievalResult:
    """Everything known about a query once search has finished."""
    request_id: str
    prompt: str
    chunks: list[RetrievedChunk] = field(default_factory=list)
    latency_ms: int = 0
    doc_id: str | None = None
    top_k: int = DEFAULT_TOP_K


@dataclass
class AnswerEvent:
    """A single event in the answer sequence."""
    type: str  # "metadata", "chunks", "token", "end", "error"
    data: dict = field(default_factory=dict)

    def to_sse(self) -> str:
        return f"data: {json.dumps({'type': self.type, **self.data})}\n\n"


async def retrieve(
    session: AsyncSession,
    prompt: str,
    embedder: EmbeddingClient,
    doc_id: str | None = None,
    top_k: int = DEFAULT_TOP_K,
) -> RetrievalResult:
    """Embed the prompt, search for similar chunks and log the retrieval.

    Raises:
        ExternalAPIError: The query embedding could not be generated.
        StorageError: The vector search failed.
    """
    request_id = str(uuid.uuid4())
    start = time.monotonic()
    logger.info(
        "Query %s: %r %s",
        request_id,
        prompt[:80],
        f"for doc {doc_id}" if doc_id else "across all documents",
    )

    try:
        query_vector = await embedder.embed(prompt)
    except Exception as exc:
        raise ExternalAPIError(f"Query embedding failed: {exc}") from exc

    try:
        chunks = await search_similar_chunks(session, query_vector, doc_id=doc_id, top_k=top_k)
    except RagError:
        raise
    except Exception as exc:
        raise StorageError(f"Vector search failed: {exc}") from exc

    latency_ms = int((time.monotonic() - start) * 1000)
    await _log_retrieval(session, request_id, prompt, chunks, latency_ms, doc_id, top_k)

    logger.info("Query %s found %d chunks in %dms", request_id, len(chunks), latency_ms)
    return RetrievalResult(
        request_id=request_id,
        prompt=prompt,
        chunks=chunks,
        latency_ms=latency_ms,
        doc_id=doc_id,
        top_k=top_k,
    )


async def _log_retrieval(
    session: AsyncSession,
    request_id: str,
    prompt: str,
    chunks: list[RetrievedChunk],
    latency_ms: int,
    doc_id: str | None,
    top_k: int,
) -> None:
    # Logging failures must never break the query
    try:
        session.add(RetrievalLog(
            request_id=request_id,
            query_text=prompt,
            chunk_ids=[c.id for c in chunks],
            latency_ms=latency_ms,
            doc_id=doc_id,
            top_k=top_k,
        ))
        await session.commit()
    except Exception:
        logger.exception("Failed to log retrieval %s", request_id)
        await session.rollback()


def pack_context(chunks: list[RetrievedChunk]) -> str:
    """Assemble the citation-numbered system prompt for the LLM."""
    parts = [
        "Answer the user's question using only the information below. "
        "Cite your sources with bracketed numbers.\n\n"
        "Based on the following information:\n\n"
    ]
    for i, chunk in enumerate(chunks, 1):
        parts.append(f"[{i}] {chunk.content}\n\n")
    parts.append(
        "Please answer the user's question using the information above. "
        "Include citations in your response using the format [1], [2], etc. "
        "If the information doesn't contain relevant details to answer the question, "
        "say so clearly."
    )
    return "".join(parts)


async def synthesize_answer(
    retrieval: RetrievalResult,
    stream: bool = True,
    model: str | None = None,
    api_key: str | None = None,
) -> AsyncIterator[AnswerEvent]:
    """Yield the answer event sequence for a finished retrieval.

    Generation failures end the sequence with a single ``error`` event
    instead of raising.
    """
    yield AnswerEvent("metadata", {
        "request_id": retrieval.request_id,
        "latency_ms": retrieval.latency_ms,
    })
    yield AnswerEvent("chunks", {"chunks": [c.to_display() for c in retrieval.chunks]})

    if not retrieval.chunks:
        yield AnswerEvent("token", {"content": NO_RESULTS_ANSWER})
        yield AnswerEvent("end")
        return

    settings = get_settings()
    kwargs: dict = {
        "model": model or settings.default_llm_model,
        "messages": [
            {"role": "system", "content": pack_context(retrieval.chunks)},
            {"role": "user", "content": retrieval.prompt},
        ],
        "temperature": settings.llm_temperature,
        "max_tokens": settings.llm_max_tokens,
        "timeout": settings.request_timeout,
    }
    if api_key:
        kwargs["api_key"] = api_key

    try:
        if stream:
            response = await acompletion(stream=True, **kwargs)
            async for part in response:
                delta = part.choices[0].delta if part.choices else None
                if delta and delta.content:
                    yield AnswerEvent("token", {"content": delta.content})
        else:
            response = await acompletion(**kwargs)
            content = response.choices[0].message.content if response.choices else None
            yield AnswerEvent("token", {"content": content or EMPTY_COMPLETION_ANSWER})
    except Exception as exc:
        logger.error("Answer generation failed for %s: %s", retrieval.request_id, exc)
        yield AnswerEvent("error", {"error": str(exc) or "Streaming failed"})
        return

    yield AnswerEvent("end")


async def collect_answer(events: AsyncIterator[AnswerEvent]) -> str:
    """Drain an event sequence into the complete answer text.

    Raises:
        ExternalAPIError: The sequence ended with an ``error`` event.
    """
    tokens: list[str] = []
    async for event in events:
        if event.type == "token":
            tokens.append(event.data.get("content", ""))
        elif event.type == "error":
            raise ExternalAPIError(f"Answer generation failed: {event.data.get('error', '')}")
    return "".join(tokens)
