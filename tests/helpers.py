"""Vector, LiteLLM response and seed-data builders shared by the tests."""

import math
from unittest.mock import MagicMock

from ragline.models.document import Document
from ragline.services.vector_store import ensure_collection, upsert_chunks

DIMS = 1536


def unit_vector(*weights: float) -> list[float]:
    """A normalized 1536-dim vector whose leading components are ``weights``."""
    vec = [0.0] * DIMS
    for i, w in enumerate(weights):
        vec[i] = w
    if not any(weights):
        vec[-1] = 1.0
    norm = math.sqrt(sum(v * v for v in vec))
    return [v / norm for v in vec]


def embedding_response(vector: list[float]):
    """Shape of a LiteLLM aembedding response for one input."""
    response = MagicMock()
    response.data = [{"embedding": vector}]
    return response


def completion_response(content: str | None):
    """Shape of a non-streaming LiteLLM acompletion response."""
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]
    return response


class MockStreamChunk:
    """Simulate a single LiteLLM streaming chunk."""

    def __init__(self, content: str | None = None):
        delta = MagicMock()
        delta.content = content
        choice = MagicMock()
        choice.delta = delta
        self.choices = [choice]


class MockStream:
    """Async iterator over streaming chunks; optionally fails after ``fail_after`` chunks."""

    def __init__(self, tokens: list[str], fail_after: int | None = None):
        self._tokens = tokens
        self._fail_after = fail_after

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for i, token in enumerate(self._tokens):
            if self._fail_after is not None and i == self._fail_after:
                raise RuntimeError("provider connection reset")
            yield MockStreamChunk(token)


async def seed_chunks(session) -> dict[str, Document]:
    """Two documents, three chunks with known geometry around the x axis."""
    alpha = Document(doc_id="doc_alpha", title="Alpha Manual")
    beta = Document(doc_id="doc_beta", title="Beta Notes")
    session.add(alpha)
    session.add(beta)
    await session.commit()
    await session.refresh(alpha)
    await session.refresh(beta)

    def _point(point_id: int, doc: Document, index: int, vector: list[float], content: str):
        return {
            "id": point_id,
            "vector": vector,
            "payload": {
                "chunk_id": point_id,
                "document_id": doc.id,
                "doc_id": doc.doc_id,
                "chunk_index": index,
                "content": content,
            },
        }

    await ensure_collection(len(unit_vector(1.0)))
    await upsert_chunks([
        _point(1, alpha, 0, unit_vector(1.0, 0.0), "Alpha installs with one command."),
        _point(2, alpha, 1, unit_vector(0.8, 0.6), "Alpha config lives in settings."),
        _point(3, beta, 0, unit_vector(0.0, 1.0), "Beta is unrelated."),
    ])
    return {"alpha": alpha, "beta": beta}
