"""
Embedding Batcher  —  Sequential Batches with Retry & Progress Callbacks
═════════════════════════════════════════════════════════════════════════

Design goals:
  • Bounded requests: one API call per `batch_size` chunks (default 3, well
    under the per-request token ceiling even for 150-word windows)
  • Order preserved: vectors are matched to inputs by the response `index`
  • Incremental persistence: after every batch the caller's `on_batch`
    callback runs (persist the batch, then bump progress) before the next
    batch is requested, so a crash mid-document keeps the finished batches
  • Retry: each call goes through call_with_retry(); only RateLimited,
    NetworkError and ProviderTimeout are re-attempted

Error mapping (see app.core.errors.classify_provider_error):
  401 / AuthenticationError → InvalidCredentials   (fatal)
  429 / RateLimitError      → RateLimited          (retried, then surfaced)
  connection failure        → NetworkError         (retried)
  timeout                   → ProviderTimeout      (retried)
  any other status          → EmbeddingFailed(status_code)

Progress for a batch starting at chunk `start` of `total`:
  embedding_start + floor(start / total × (embedding_end − embedding_start))
  = 50 + floor(start / total × 45) with the default checkpoints.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Awaitable, Callable, Sequence

from openai import AsyncOpenAI

from app.core.config import RAGConfig, ProgressStages, settings
from app.core.errors import EmbeddingFailed
from app.core.retry import call_with_retry

logger = logging.getLogger(__name__)

# on_batch(batch_start, vectors): vectors align with texts[batch_start:batch_start+len]
BatchCallback = Callable[[int, list[list[float]]], Awaitable[None]]


def batch_progress(batch_start: int, total: int, stages: ProgressStages) -> int:
    """Progress value to report once the batch starting at `batch_start` is stored."""
    if total <= 0:
        return stages.embedding_start
    span = stages.embedding_end - stages.embedding_start
    return stages.embedding_start + math.floor(batch_start / total * span)


class EmbeddingBatcher:
    """
    Usage:
        batcher = EmbeddingBatcher(config)
        vectors = await batcher.embed(texts, on_batch=persist_and_report)
        query_vector = await batcher.embed_query("what is our roadmap?")
    """

    def __init__(self, config: RAGConfig, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        self._model  = config.embedding.model
        self._batch_size = config.embedding.batch_size
        self._client = client or AsyncOpenAI(api_key=settings.openai_api_key or None, max_retries=0)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def embed(
        self,
        texts:    Sequence[str],
        on_batch: BatchCallback | None = None,
    ) -> list[list[float]]:
        """One vector per text, in input order. Raises a typed RAGServiceError."""
        if not texts:
            return []

        t0 = time.monotonic()
        total = len(texts)
        vectors: list[list[float]] = []
        batches = math.ceil(total / self._batch_size)

        logger.info(
            "EmbeddingBatcher | chunks=%d batches=%d batch_size=%d model=%s",
            total, batches, self._batch_size, self._model,
        )

        for batch_idx, start in enumerate(range(0, total, self._batch_size)):
            batch = list(texts[start:start + self._batch_size])
            batch_vectors = await call_with_retry(
                lambda: self._call_openai(batch),
                self._config.retry,
                label=f"embeddings batch={batch_idx}",
            )
            vectors.extend(batch_vectors)
            if on_batch is not None:
                await on_batch(start, batch_vectors)

        logger.info(
            "EmbeddingBatcher done | vectors=%d elapsed_ms=%.0f",
            len(vectors), (time.monotonic() - t0) * 1000,
        )
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """Embed one string with the ingestion model (dimension-compatible)."""
        vectors = await call_with_retry(
            lambda: self._call_openai([text]),
            self._config.retry,
            label="embeddings query",
        )
        return vectors[0]

    # ------------------------------------------------------------------
    # Single API call
    # ------------------------------------------------------------------

    async def _call_openai(self, texts: list[str]) -> list[list[float]]:
        kwargs: dict = {"model": self._model, "input": texts}
        # `dimensions` is only accepted by text-embedding-3-* models
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._config.embedding.dimensions

        t_api = time.monotonic()
        response = await self._client.embeddings.create(**kwargs)

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise EmbeddingFailed(
                user_message=(
                    f"Failed to generate embeddings: expected {len(texts)} vectors, "
                    f"got {len(data)}"
                ),
            )

        logger.debug(
            "OpenAI embeddings | size=%d tokens=%s api_ms=%.0f",
            len(texts),
            response.usage.total_tokens if response.usage else "n/a",
            (time.monotonic() - t_api) * 1000,
        )
        return [list(item.embedding) for item in data]
