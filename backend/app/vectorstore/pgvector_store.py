"""
pgvector-backed chunk store.

Similarity search is the SQL equivalent of:

    SELECT id, document_id, chunk_text, chunk_index, metadata,
           1 - (embedding <=> :query) AS similarity
    FROM document_chunks
    WHERE user_id = :user_id
      AND 1 - (embedding <=> :query) > :threshold
    ORDER BY embedding <=> :query
    LIMIT :limit

Ordering by the raw distance expression lets PostgreSQL use the HNSW index.

Inserts lock the parent document row first. A missing row means the document
was deleted; a row whose run_token differs means a newer run owns it.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from typing import Callable
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DocumentDeleted, RunSuperseded
from app.db.session import get_admin_db
from app.models.documents import Chunk, Document
from app.vectorstore.base import QueryResult, VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

FOREIGN_KEY_VIOLATION = "23503"


def _sqlstate(exc: IntegrityError) -> str | None:
    """SQLSTATE of the driver error (asyncpg exposes sqlstate, psycopg pgcode)."""
    return getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)


class PgVectorStore(VectorStoreBase):

    def __init__(self, user_id: UUID, session_factory: SessionFactory = get_admin_db) -> None:
        super().__init__(user_id)
        self._session = session_factory

    async def insert(self, records: list[VectorRecord], run_token: UUID | None = None) -> int:
        if not records:
            return 0
        self._check_owner(records)

        document_ids = {r.document_id for r in records}
        try:
            async with self._session() as db:
                # Lock the parent rows so a concurrent delete or claim waits for this batch
                found = await db.execute(
                    select(Document.id, Document.status, Document.run_token)
                    .where(Document.id.in_(document_ids), Document.user_id == self._user_id)
                    .with_for_update()
                )
                parents = found.all()
                if document_ids - {row.id for row in parents}:
                    raise DocumentDeleted()
                if run_token is not None and any(
                    row.status != "processing" or row.run_token != run_token for row in parents
                ):
                    raise RunSuperseded()

                db.add_all([
                    Chunk(
                        document_id=r.document_id,
                        user_id=r.user_id,
                        chunk_index=r.chunk_index,
                        chunk_text=r.text,
                        token_count=r.token_count,
                        embedding=r.vector,
                        folder=r.folder,
                        parent_folder=r.parent_folder,
                        chunk_metadata=r.metadata,
                    )
                    for r in records
                ])
        except IntegrityError as exc:
            if _sqlstate(exc) != FOREIGN_KEY_VIOLATION:
                raise
            # the document was deleted between lock and flush
            logger.warning("PgVectorStore | insert rejected: %s", exc.orig)
            raise DocumentDeleted() from exc

        logger.debug(
            "PgVectorStore | inserted=%d user=%s", len(records), self._user_id,
        )
        return len(records)

    async def query(
        self,
        vector:    list[float],
        threshold: float,
        limit:     int,
    ) -> list[QueryResult]:
        distance   = Chunk.embedding.cosine_distance(vector)
        similarity = (1 - distance).label("similarity")

        stmt = (
            select(
                Chunk.id,
                Chunk.document_id,
                Chunk.chunk_text,
                Chunk.chunk_index,
                Chunk.chunk_metadata,
                similarity,
            )
            .where(Chunk.user_id == self._user_id, (1 - distance) > threshold)
            .order_by(distance)
            .limit(limit)
        )

        async with self._session() as db:
            rows = (await db.execute(stmt)).all()

        results = [
            QueryResult(
                id=str(row.id),
                document_id=str(row.document_id),
                chunk_index=row.chunk_index,
                text=row.chunk_text,
                similarity=float(row.similarity),
                metadata=dict(row.chunk_metadata or {}),
            )
            for row in rows
        ]
        logger.debug(
            "PgVectorStore | query user=%s threshold=%.2f limit=%d hits=%d",
            self._user_id, threshold, limit, len(results),
        )
        return results

    async def delete_by_document(self, document_id: UUID) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(Chunk).where(
                    Chunk.document_id == document_id,
                    Chunk.user_id == self._user_id,
                )
            )
        return result.rowcount or 0


def get_vector_store(user_id: UUID) -> VectorStoreBase:
    """Return a user-scoped vector store for the configured database."""
    return PgVectorStore(user_id=user_id)
