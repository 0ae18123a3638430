"""
In-process job registry — supervised asyncio tasks keyed by document id.

Used when INGESTION_EXECUTOR=inline (local development, single-process
deployments, tests). Each submission becomes one asyncio.Task:

  - a second submission for a document whose job is still running raises
    JobAlreadyRunning
  - join(document_id) awaits the job and returns its result
  - a crashed job is logged with its traceback and its exception is kept
    for join(); it never disappears silently

Only running jobs live in the main table. A finished job moves to a small
table of recent results (the last `keep_finished`), so memory stays bounded
however many documents the process ingests.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable
from uuid import UUID

from app.core.errors import JobAlreadyRunning

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[Any]]

DEFAULT_KEEP_FINISHED = 256


class JobRegistry:

    def __init__(self, keep_finished: int = DEFAULT_KEEP_FINISHED) -> None:
        self._running:  dict[str, asyncio.Task] = {}
        self._finished: OrderedDict[str, asyncio.Task] = OrderedDict()
        self._keep_finished = keep_finished

    def submit(self, document_id: UUID | str, job: JobFactory) -> asyncio.Task:
        key = str(document_id)
        current = self._running.get(key)
        if current is not None and not current.done():
            raise JobAlreadyRunning()

        task = asyncio.create_task(job(), name=f"ingest:{key}")
        task.add_done_callback(lambda t: self._on_done(key, t))
        self._running[key] = task
        self._finished.pop(key, None)
        logger.info("JobRegistry | submitted doc=%s running=%d", key, self.running_count)
        return task

    def is_running(self, document_id: UUID | str) -> bool:
        task = self._running.get(str(document_id))
        return task is not None and not task.done()

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def finished_count(self) -> int:
        return len(self._finished)

    async def join(self, document_id: UUID | str, timeout: float | None = None) -> Any:
        """Wait for the document's latest job; re-raises the job's exception."""
        key = str(document_id)
        task = self._running.get(key) or self._finished.get(key)
        if task is None:
            raise KeyError(f"no job for document {document_id}")
        return await asyncio.wait_for(asyncio.shield(task), timeout)

    async def shutdown(self) -> None:
        """Cancel unfinished jobs (application shutdown)."""
        pending = list(self._running.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("JobRegistry | cancelled %d unfinished job(s)", len(pending))

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        if self._running.get(key) is task:
            del self._running[key]
            self._finished[key] = task
            while len(self._finished) > self._keep_finished:
                self._finished.popitem(last=False)

        if task.cancelled():
            logger.warning("JobRegistry | job cancelled doc=%s", key)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "JobRegistry | job crashed doc=%s error=%s", key, exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        else:
            logger.info("JobRegistry | job finished doc=%s result=%s", key, task.result())


_registry: JobRegistry | None = None


def get_job_registry() -> JobRegistry:
    global _registry
    if _registry is None:
        _registry = JobRegistry()
    return _registry
