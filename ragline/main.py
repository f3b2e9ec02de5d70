"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import ragline.models  # noqa: F401  (register tables before init_db)
from ragline.api.v1 import v1_router
from ragline.core.config import get_settings
from ragline.core.database import init_db
from ragline.core.errors import register_exception_handlers
from ragline.models.base import utcnow

_settings = get_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: ensure tables exist
    await init_db()
    yield
    # Shutdown: nothing to clean up yet


app = FastAPI(
    title="RAGLine",
    version="0.1.0",
    description="Document ingestion and retrieval-augmented question answering",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Accept"],
)

# ── Errors ───────────────────────────────────────────────────
register_exception_handlers(app)

# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok", "time": utcnow().isoformat()}
