"""Ingest-then-query tests: pipeline output read back through retrieval and the query endpoint."""

from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlmodel import select

from helpers import completion_response, embedding_response, unit_vector
from ragline.api.deps import get_ingestion_pipeline
from ragline.main import app
from ragline.models.document import Document, DocumentStatus
from ragline.services.embedding import EmbeddingClient
from ragline.services.orchestrator import retrieve
from ragline.services.pipeline import DocumentRef

HELLO_TEXT = b"Hello world. This is chunk text."
# 4-word windows sharing 2 words: "Hello world. This is" / "This is chunk text."
TWO_CHUNKS = {"max_tokens": 6, "overlap_tokens": 3}

VECTORS = {
    "Hello world. This is": unit_vector(1.0, 0.0),
    "This is chunk text.": unit_vector(0.6, 0.8),
}


async def _embed(**kwargs):
    return embedding_response(VECTORS.get(kwargs["input"][0], unit_vector(0.0, 1.0)))


@pytest.mark.asyncio
async def test_ingest_then_retrieve_best_chunk(
    make_pipeline, create_document, test_session_factory, session, qdrant
):
    doc = await create_document("doc_hello", HELLO_TEXT)
    assert doc.status == DocumentStatus.UPLOADED
    statuses: list[DocumentStatus] = []

    async def _embed_and_watch(**kwargs):
        async with test_session_factory() as sess:
            current = await sess.execute(select(Document).where(Document.doc_id == "doc_hello"))
            statuses.append(current.scalar_one().status)
        return await _embed(**kwargs)

    with patch("ragline.services.embedding.aembedding", AsyncMock(side_effect=_embed_and_watch)):
        result = await make_pipeline(**TWO_CHUNKS).ingest(DocumentRef(doc_id="doc_hello"))

    assert statuses == [DocumentStatus.PROCESSING, DocumentStatus.PROCESSING]
    assert result.status == DocumentStatus.READY
    assert result.chunks_processed == 2

    embedder = EmbeddingClient(model="test-embedding")
    with patch("ragline.services.embedding.aembedding", AsyncMock(side_effect=_embed)):
        best = await retrieve(session, "Hello world. This is", embedder, doc_id="doc_hello", top_k=1)
        both = await retrieve(session, "Hello world. This is", embedder, doc_id="doc_hello", top_k=2)

    assert len(best.chunks) == 1
    top = best.chunks[0]
    assert top.chunk_index == 0
    assert top.document_title == "Test Document"
    assert top.similarity == pytest.approx(1.0)
    assert top.similarity == max(c.similarity for c in both.chunks)
    assert [c.chunk_index for c in both.chunks] == [0, 1]


@pytest.mark.asyncio
async def test_retrieval_is_scoped_to_ingested_document(
    make_pipeline, create_document, session, qdrant
):
    await create_document("doc_hello", HELLO_TEXT)
    await create_document("doc_other", b"Completely different words here.", title="Other")

    pipeline = make_pipeline(**TWO_CHUNKS)
    with patch("ragline.services.embedding.aembedding", AsyncMock(side_effect=_embed)):
        await pipeline.ingest(DocumentRef(doc_id="doc_hello"))
        await pipeline.ingest(DocumentRef(doc_id="doc_other"))
        result = await retrieve(
            session,
            "This is chunk text.",
            EmbeddingClient(model="test-embedding"),
            doc_id="doc_other",
            top_k=5,
        )

    assert [c.document_title for c in result.chunks] == ["Other"]
    assert [c.chunk_index for c in result.chunks] == [0]


@pytest.mark.asyncio
async def test_ingest_endpoint_then_query_endpoint(
    client: AsyncClient, make_pipeline, create_document
):
    await create_document("doc_hello", HELLO_TEXT)
    app.dependency_overrides[get_ingestion_pipeline] = lambda: make_pipeline(**TWO_CHUNKS)

    with (
        patch("ragline.services.embedding.aembedding", AsyncMock(side_effect=_embed)),
        patch(
            "ragline.services.orchestrator.acompletion",
            AsyncMock(return_value=completion_response("Hello world [1].")),
        ),
    ):
        ingest_resp = await client.post("/v1/ingest", json={"doc_id": "doc_hello"})
        query_resp = await client.post(
            "/v1/query",
            json={"prompt": "Hello world. This is", "doc_id": "doc_hello", "top_k": 1},
        )

    assert ingest_resp.status_code == 200
    assert ingest_resp.json()["chunks_processed"] == 2
    assert ingest_resp.json()["status"] == "READY"

    assert query_resp.status_code == 200
    data = query_resp.json()
    assert [c["chunk_index"] for c in data["chunks"]] == [0]
    assert data["chunks"][0]["similarity"] == pytest.approx(1.0)
    assert data["chunks"][0]["document_title"] == "Test Document"
    assert data["answer"] == "Hello world [1]."
