"""Shared test fixtures — async SQLite file DB, in-memory Qdrant, temp blob store, test client."""

import json
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from qdrant_client import AsyncQdrantClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

# Import all models so metadata is populated
import ragline.models  # noqa: F401
from ragline.api.deps import get_blob_store, get_ingestion_pipeline, get_rate_limiter
from ragline.core.database import get_session, get_session_factory
from ragline.core.rate_limit import NoopRateLimiter
from ragline.main import app
from ragline.models.document import Document, DocumentStatus
from ragline.services import vector_store
from ragline.services.blob_store import FileSystemBlobStore
from ragline.services.embedding import EmbeddingClient, EmbeddingStrategy
from ragline.services.pipeline import IngestionPipeline


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture
async def qdrant(monkeypatch) -> AsyncGenerator[AsyncQdrantClient, None]:
    """Embedded Qdrant shared by every vector_store call in the test."""
    client = AsyncQdrantClient(location=":memory:")
    monkeypatch.setattr(vector_store, "_client", client)
    yield client
    await client.close()


@pytest.fixture
def blob_store(tmp_path) -> FileSystemBlobStore:
    return FileSystemBlobStore(tmp_path / "blobs")


@pytest.fixture
def make_pipeline(test_session_factory, blob_store):
    """Build a pipeline over the test stores with no inter-batch or retry delays."""

    def _make(**overrides) -> IngestionPipeline:
        options = {
            "session_factory": test_session_factory,
            "blob_store": blob_store,
            "embedder": EmbeddingClient(model="test-embedding", sleep=_no_sleep),
            "strategy": EmbeddingStrategy.CACHED_WITH_RETRY,
            "batch_size": 10,
            "batch_delay": 0,
            "sleep": _no_sleep,
        }
        options.update(overrides)
        return IngestionPipeline(**options)

    return _make


@pytest.fixture
def create_document(test_session_factory, blob_store):
    """Store ``content`` in the blob store and register an UPLOADED document."""

    async def _create(
        doc_id: str,
        content: bytes,
        title: str = "Test Document",
        filename: str = "doc.txt",
        mimetype: str = "text/plain",
    ) -> Document:
        blob_key = f"tenant-1/{doc_id}/original.{filename.rsplit('.', 1)[-1]}"
        await blob_store.put(blob_key, content)
        async with test_session_factory() as sess:
            doc = Document(
                doc_id=doc_id,
                title=title,
                status=DocumentStatus.UPLOADED,
                blob_key=blob_key,
                metadata_json=json.dumps({
                    "original_filename": filename,
                    "mimetype": mimetype,
                    "tenant_id": "tenant-1",
                    "file_size": len(content),
                }),
            )
            sess.add(doc)
            await sess.commit()
            await sess.refresh(doc)
            return doc

    return _create


@pytest.fixture
async def client(
    session, test_session_factory, blob_store, make_pipeline, qdrant
) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with DB, blob store and limiter overrides."""

    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_session_factory] = lambda: test_session_factory
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_ingestion_pipeline] = lambda: make_pipeline()
    app.dependency_overrides[get_rate_limiter] = lambda: NoopRateLimiter()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
