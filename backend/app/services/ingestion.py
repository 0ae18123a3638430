"""
Document Ingestion Service

Per-document state machine:

  pending ──► extracting (10) ──► chunking (33) ──► embedding (50 → 95) ──► complete (100)
     │              │                  │                    │
     └──────────────┴──────────────────┴────────────────────┴──► error (absorbing)

Run steps:
  1. Claim: atomic pending → extracting. A document that is not pending is a
     duplicate trigger and is skipped; a missing document aborts.
  2. Delete any chunks left by an earlier run (delete-then-reinsert).
  3. Extract text (or fetch the URL), truncate, classify into a folder.
  4. Chunk into word windows.
  5. Embed in batches; each batch is inserted and progress bumped before the
     next batch is requested.
  6. Mark ready with chunk_count / text_length / folder.

Guarantees:
  - No exception escapes run(): failures become status=error with a
    normalized message, progress is left where it was.
  - Every write is its own transaction; none spans an OpenAI call.
  - Every write checks the row still exists. A document deleted mid-run stops
    the run without further writes (outcome "deleted").
  - Every write carries the run_token from the claim. Once the row has been
    swept or claimed again by a retry, this run stops (outcome "skipped").

TaskPublisher (bottom of module) hands jobs to Celery or to the in-process
JobRegistry depending on settings.ingestion_executor.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable

from app.core.config import RAGConfig, get_rag_config, settings
from app.core.errors import (
    DocumentDeleted,
    EmptyExtraction,
    RAGServiceError,
    RunSuperseded,
    normalize_error_message,
)
from app.db.repository import ClaimedDocument, DocumentRepository
from app.processing.chunking import WordWindowChunker
from app.processing.classifier import TopicClassifier
from app.processing.embeddings import EmbeddingBatcher, batch_progress
from app.processing.extractor import TEXT_EMPTY_MESSAGE, TextExtractor, truncate_text
from app.services.url_ingestion import UrlFetcher
from app.vectorstore.base import VectorRecord, VectorStoreBase
from app.vectorstore.pgvector_store import get_vector_store

logger = logging.getLogger(__name__)

TextSource = Callable[[ClaimedDocument], Awaitable[str]]


@dataclass
class IngestionOutcome:
    """
    status: "ready" | "error" | "skipped" (duplicate trigger) |
            "deleted" (document removed mid-run) | "missing" (never existed)
    """
    document_id: uuid.UUID
    status:      str
    chunk_count: int = 0
    text_length: int = 0
    folder:      str | None = None
    error:       str | None = None
    elapsed_ms:  float = 0.0


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class IngestionOrchestrator:
    """
    Stateless between runs; one instance can process many documents.
    All collaborators are injected (tests pass fakes).
    """

    def __init__(
        self,
        config:        RAGConfig,
        documents:     DocumentRepository,
        extractor:     TextExtractor,
        classifier:    TopicClassifier,
        chunker:       WordWindowChunker,
        embedder:      EmbeddingBatcher,
        store_factory: Callable[[uuid.UUID], VectorStoreBase] = get_vector_store,
        url_fetcher:   UrlFetcher | None = None,
    ) -> None:
        self._config     = config
        self._stages     = config.progress
        self._documents  = documents
        self._extractor  = extractor
        self._classifier = classifier
        self._chunker    = chunker
        self._embedder   = embedder
        self._store_for  = store_factory
        self._fetcher    = url_fetcher or UrlFetcher()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        document_id:  uuid.UUID,
        content:      bytes,
        content_type: str | None,
    ) -> IngestionOutcome:
        """Full pipeline for an uploaded file."""
        async def source(doc: ClaimedDocument) -> str:
            result = await self._extractor.extract(content, content_type or doc.file_type)
            return result.text

        return await self._run(document_id, source)

    async def run_url(self, document_id: uuid.UUID, url: str) -> IngestionOutcome:
        """Fetch a web page, then continue like run()."""
        async def source(doc: ClaimedDocument) -> str:
            return await self._fetcher.fetch_text(url)

        return await self._run(document_id, source)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run(self, document_id: uuid.UUID, source: TextSource) -> IngestionOutcome:
        t0 = time.monotonic()

        try:
            claimed = await self._documents.claim(document_id, self._stages.extracting)
            if claimed is None:
                if not await self._documents.exists(document_id):
                    logger.warning("Ingestion | doc=%s not found, nothing to do", document_id)
                    return IngestionOutcome(document_id, "missing", error="Document not found")
                logger.warning("Ingestion | doc=%s is not pending, duplicate trigger skipped", document_id)
                return IngestionOutcome(document_id, "skipped")
        except Exception as exc:
            return await self._fail(document_id, exc, t0)

        logger.info(
            "Ingestion start | doc=%s user=%s file=%s type=%s",
            document_id, claimed.user_id, claimed.file_name, claimed.file_type,
        )
        store = self._store_for(claimed.user_id)

        try:
            removed = await store.delete_by_document(document_id)
            if removed:
                logger.info("Ingestion | doc=%s removed %d chunk(s) from an earlier run", document_id, removed)

            # ── Extract + classify ───────────────────────────────────────
            raw_text = await source(claimed)
            text, truncated = truncate_text(raw_text, self._config.processing.max_text_length)
            if not text.strip():
                raise EmptyExtraction(TEXT_EMPTY_MESSAGE)

            folders = await self._documents.existing_folders(claimed.user_id)
            folder = await self._classifier.classify(text, claimed.file_name, folders)

            # ── Chunk ────────────────────────────────────────────────────
            await self._advance(claimed, "chunking", self._stages.chunking)
            chunks = self._chunker.chunk(
                text, metadata={"file_name": claimed.file_name, "folder": folder},
            )
            if not chunks:
                raise EmptyExtraction(TEXT_EMPTY_MESSAGE)

            # ── Embed + persist per batch ────────────────────────────────
            await self._advance(claimed, "embedding", self._stages.embedding_start)
            total = len(chunks)

            async def persist_batch(start: int, vectors: list[list[float]]) -> None:
                batch = chunks[start:start + len(vectors)]
                await store.insert([
                    VectorRecord(
                        document_id=document_id,
                        user_id=claimed.user_id,
                        chunk_index=chunk.chunk_index,
                        text=chunk.text,
                        vector=vector,
                        token_count=chunk.token_count,
                        folder=folder,
                        metadata=chunk.metadata,
                    )
                    for chunk, vector in zip(batch, vectors)
                ], run_token=claimed.run_token)
                await self._advance(
                    claimed, "embedding", batch_progress(start, total, self._stages),
                )

            await self._embedder.embed([c.text for c in chunks], on_batch=persist_batch)

            # ── Complete ─────────────────────────────────────────────────
            marked = await self._documents.mark_ready(
                document_id,
                claimed.run_token,
                chunk_count=total,
                text_length=len(text),
                folder=folder,
                progress=self._stages.complete,
            )
            if not marked:
                await self._raise_stopped(document_id)

        except DocumentDeleted:
            logger.info("Ingestion | doc=%s deleted during processing, run stopped", document_id)
            return IngestionOutcome(
                document_id, "deleted", elapsed_ms=(time.monotonic() - t0) * 1000,
            )
        except RunSuperseded:
            logger.warning("Ingestion | doc=%s no longer processing, run stopped", document_id)
            return IngestionOutcome(
                document_id, "skipped", elapsed_ms=(time.monotonic() - t0) * 1000,
            )
        except Exception as exc:
            return await self._fail(document_id, exc, t0, run_token=claimed.run_token)

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Ingestion complete | doc=%s chunks=%d chars=%d truncated=%s folder=%s elapsed_ms=%.0f",
            document_id, total, len(text), truncated, folder, elapsed_ms,
        )
        return IngestionOutcome(
            document_id,
            "ready",
            chunk_count=total,
            text_length=len(text),
            folder=folder,
            elapsed_ms=elapsed_ms,
        )

    async def _advance(self, claimed: ClaimedDocument, stage: str, progress: int) -> None:
        if await self._documents.update_progress(claimed.id, claimed.run_token, stage, progress):
            return
        await self._raise_stopped(claimed.id)

    async def _raise_stopped(self, document_id: uuid.UUID) -> None:
        """A guarded write matched no row: the document is gone or another run owns it."""
        if not await self._documents.exists(document_id):
            raise DocumentDeleted()
        raise RunSuperseded()

    async def _fail(
        self,
        document_id: uuid.UUID,
        exc:         Exception,
        t0:          float,
        run_token:   uuid.UUID | None = None,
    ) -> IngestionOutcome:
        message = normalize_error_message(exc)
        logger.error(
            "Ingestion failed | doc=%s error=%s message=%s",
            document_id, type(exc).__name__, message,
            exc_info=not isinstance(exc, RAGServiceError),
        )
        try:
            await self._documents.mark_error(document_id, message, run_token)
        except Exception:
            logger.exception("Ingestion | doc=%s could not record failure", document_id)
        return IngestionOutcome(
            document_id, "error", error=message, elapsed_ms=(time.monotonic() - t0) * 1000,
        )


# ---------------------------------------------------------------------------
# Wiring helpers (used by Celery tasks and the inline executor)
# ---------------------------------------------------------------------------

def build_orchestrator(config: RAGConfig | None = None) -> IngestionOrchestrator:
    config = config or get_rag_config()
    return IngestionOrchestrator(
        config=config,
        documents=DocumentRepository(),
        extractor=TextExtractor(config),
        classifier=TopicClassifier(config),
        chunker=WordWindowChunker(config.processing),
        embedder=EmbeddingBatcher(config),
    )


async def run_document_ingestion(
    document_id:  uuid.UUID,
    content:      bytes,
    content_type: str | None,
) -> IngestionOutcome:
    return await build_orchestrator().run(document_id, content, content_type)


async def run_url_ingestion(document_id: uuid.UUID, url: str) -> IngestionOutcome:
    return await build_orchestrator().run_url(document_id, url)


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery / the in-process registry
# Injected into the API routes so it can be mocked in tests.
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    executor="celery" : apply_async() on the worker queue (content travels
                        base64-encoded in the task payload)
    executor="inline" : JobRegistry.submit() in this process

    Imports are deferred so the broker is not needed at module load time.
    """

    def __init__(self, executor: str | None = None, registry=None) -> None:
        self._executor = (executor or settings.ingestion_executor).lower()
        self._registry = registry

    @property
    def executor(self) -> str:
        return self._executor

    def _get_registry(self):
        if self._registry is None:
            from app.workers.registry import get_job_registry
            self._registry = get_job_registry()
        return self._registry

    async def publish_document(
        self,
        document_id:  uuid.UUID,
        content:      bytes,
        content_type: str | None,
    ) -> None:
        if self._executor == "inline":
            self._get_registry().submit(
                document_id,
                lambda: run_document_ingestion(document_id, content, content_type),
            )
        else:
            from app.workers.tasks import process_document
            await self._apply_async(
                process_document,
                {
                    "document_id":    str(document_id),
                    "content_b64":    base64.b64encode(content).decode("ascii"),
                    "content_type":   content_type,
                },
            )
        logger.info(
            "Processing task published | doc=%s executor=%s size=%d",
            document_id, self._executor, len(content),
        )

    async def publish_url(self, document_id: uuid.UUID, url: str) -> None:
        if self._executor == "inline":
            self._get_registry().submit(
                document_id, lambda: run_url_ingestion(document_id, url),
            )
        else:
            from app.workers.tasks import process_url
            await self._apply_async(process_url, {"document_id": str(document_id), "url": url})
        logger.info("URL task published | doc=%s executor=%s", document_id, self._executor)

    @staticmethod
    async def _apply_async(task, kwargs: dict) -> None:
        """Runs in a thread executor to avoid blocking the event loop on the broker."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: task.apply_async(kwargs=kwargs))
