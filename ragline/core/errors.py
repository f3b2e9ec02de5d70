"""Error taxonomy and FastAPI exception handlers.

Every failure the service reports carries a stable machine ``code`` and a
human-readable ``message``. Handlers render them as::

    {"error": "<message>", "code": "<CODE>", "details": {...}}

Unexpected exceptions are logged with their traceback and rendered as a
generic ``INTERNAL_ERROR`` so internals never leak to clients.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class RagError(Exception):
    """Base class for all service errors."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(RagError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(RagError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class StorageError(RagError):
    """Blob or relational store unavailable."""

    code = "STORAGE_ERROR"


class ExtractionError(RagError):
    code = "EXTRACTION_ERROR"


class EmptyContentError(RagError):
    code = "EMPTY_CONTENT"


class EmbeddingError(RagError):
    """Embedding retries exhausted."""

    code = "EMBEDDING_ERROR"


class PersistenceError(RagError):
    code = "PERSISTENCE_ERROR"


class RateLimitError(RagError):
    code = "RATE_LIMITED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class ExternalAPIError(RagError):
    """Language-model or embedding provider call failed."""

    code = "EXTERNAL_API_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY


class InternalError(RagError):
    code = "INTERNAL_ERROR"


class CancelledOperationError(RagError):
    code = "CANCELLED"
    status_code = 499


# ── Handlers ─────────────────────────────────────────────────


async def rag_error_handler(request: Request, exc: RagError) -> JSONResponse:
    logger.warning("%s %s failed: [%s] %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    error = ValidationError("Validation failed", details={"issues": _jsonable_issues(exc)})
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalError("Internal server error")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RagError, rag_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)


def _jsonable_issues(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]
