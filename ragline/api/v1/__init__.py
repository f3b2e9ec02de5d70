"""V1 API router aggregation."""

from fastapi import APIRouter

from ragline.api.v1.documents import router as documents_router
from ragline.api.v1.ingest import router as ingest_router
from ragline.api.v1.query import router as query_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(documents_router)
v1_router.include_router(ingest_router)
v1_router.include_router(query_router)
