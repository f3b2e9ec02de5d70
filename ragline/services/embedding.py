"""Embedding service — wraps LiteLLM for provider-agnostic vector generation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum

from litellm import aembedding
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ragline.core.config import get_settings
from ragline.core.errors import EmbeddingError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 1.0  # seconds; waits are base * 2^(attempt-1)


class EmbeddingStrategy(StrEnum):
    """How the ingestion pipeline resolves chunk embeddings."""

    DIRECT = "direct"
    CACHED_WITH_RETRY = "cached_with_retry"


class EmbeddingClient:
    """Calls the remote embedding API, one text per request.

    ``embed`` makes a single attempt. ``embed_with_retry`` retries failures
    with exponential backoff (1s, 2s, 4s, ...) and raises ``EmbeddingError``
    once every attempt has failed.
    """

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self.model = model or settings.default_embedding_model
        self._api_key = api_key
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._timeout = timeout
        self._sleep = sleep

    async def embed(self, text: str) -> list[float]:
        """Generate the embedding vector for one text."""
        kwargs: dict = {"model": self.model, "input": [text]}
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._timeout:
            kwargs["timeout"] = self._timeout

        response = await aembedding(**kwargs)
        return list(response.data[0]["embedding"])

    async def embed_with_retry(self, text: str) -> list[float]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff_base, exp_base=2, min=0, max=60),
            retry=retry_if_exception_type(Exception),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self.embed(text)
        except Exception as exc:
            raise EmbeddingError(
                f"Embedding failed after {self._max_attempts} attempts: {exc}"
            ) from exc
        raise EmbeddingError("Embedding produced no result")  # pragma: no cover


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        "Embedding attempt %d failed (%s); retrying in %.1fs",
        retry_state.attempt_number,
        exc,
        wait,
    )


def build_embedding_client(api_key: str | None = None) -> EmbeddingClient:
    """Construct an EmbeddingClient from application settings."""
    settings = get_settings()
    return EmbeddingClient(
        model=settings.default_embedding_model,
        api_key=api_key,
        max_attempts=settings.embedding_max_attempts,
        backoff_base=settings.embedding_backoff_base,
        timeout=settings.request_timeout,
    )
