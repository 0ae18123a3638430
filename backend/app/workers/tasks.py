"""
Celery Tasks — Document Ingestion

Task: process_document
  Decode the base64 payload and run IngestionOrchestrator.run(). The
  orchestrator records success or failure on the document row itself, so the
  task never raises for a pipeline failure and is not auto-retried (a retry
  is an explicit user action that resets the document to pending).

Task: process_url
  Fetch a web page and run the pipeline from classification onward.

Task: mark_stalled_documents
  Beat task. A worker that crashed mid-run leaves its document in
  status=processing forever. Documents stuck in extracting/chunking/embedding
  longer than settings.stalled_processing_minutes are moved to error.

Task: health_check
  Broker round-trip probe.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import asdict
from typing import Any

from celery import Task

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

STALLED_MESSAGE = "Processing timeout - file may be too large"


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


def _outcome_dict(outcome) -> dict[str, Any]:
    data = asdict(outcome)
    data["document_id"] = str(outcome.document_id)
    return data


# ---------------------------------------------------------------------------
# Ingestion tasks
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.process_document",
    bind=True,
    soft_time_limit=600,
    time_limit=660,
)
def process_document(
    self: Task,
    *,
    document_id:  str,
    content_b64:  str,
    content_type: str | None = None,
) -> dict[str, Any]:
    from app.services.ingestion import run_document_ingestion

    content = base64.b64decode(content_b64)
    outcome = run_async(
        run_document_ingestion(uuid.UUID(document_id), content, content_type)
    )
    logger.info(
        "Processing done | doc=%s status=%s chunks=%d",
        document_id, outcome.status, outcome.chunk_count,
    )
    return _outcome_dict(outcome)


@celery_app.task(
    name="app.workers.tasks.process_url",
    bind=True,
    soft_time_limit=600,
    time_limit=660,
)
def process_url(self: Task, *, document_id: str, url: str) -> dict[str, Any]:
    from app.services.ingestion import run_url_ingestion

    outcome = run_async(run_url_ingestion(uuid.UUID(document_id), url))
    logger.info(
        "URL processing done | doc=%s status=%s chunks=%d",
        document_id, outcome.status, outcome.chunk_count,
    )
    return _outcome_dict(outcome)


# ---------------------------------------------------------------------------
# Stall sweeper
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.tasks.mark_stalled_documents")
def mark_stalled_documents() -> dict[str, Any]:
    return run_async(_mark_stalled_async())


async def _mark_stalled_async() -> dict[str, Any]:
    from app.core.config import settings
    from app.db.repository import DocumentRepository

    stalled = await DocumentRepository().mark_stalled(
        settings.stalled_processing_minutes, STALLED_MESSAGE,
    )
    for document_id in stalled:
        logger.warning(
            "Stalled document failed | doc=%s after=%dmin",
            document_id, settings.stalled_processing_minutes,
        )
    return {"stalled": len(stalled)}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
