"""
Repositories — every document, folder and transcript write the service makes.

Each public method opens its own get_admin_db() block, so every progress
update is an independent, immediately visible transaction. Nothing here calls
an external service.

Progress writes are monotonic: processing_progress is updated with
GREATEST(current, new), so a late or duplicate write can never move the bar
backwards while a run is in flight. reset_for_retry() is the only path that
lowers it (back to 0, stage pending).

Each claim() stamps a new run_token on the row. Progress, completion and
chunk inserts from a run match on that token, so a run that was swept and
then replaced by a retry can no longer write.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_admin_db
from app.models.documents import Chunk, Conversation, Document, Message

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

UNCATEGORIZED = "Uncategorized"


@dataclass(frozen=True)
class ClaimedDocument:
    """Snapshot of a document row taken when a pipeline run claims it."""
    id:        uuid.UUID
    user_id:   uuid.UUID
    file_name: str
    file_type: str
    run_token: uuid.UUID


@dataclass(frozen=True)
class DocumentLabel:
    file_name: str
    folder:    Optional[str]


def _folder_filter(column, folders: Iterable[str]):
    """Match a set of folder labels; 'Uncategorized' matches NULL."""
    folders = list(folders)
    named = [f for f in folders if f != UNCATEGORIZED]
    clauses = []
    if named:
        clauses.append(column.in_(named))
    if UNCATEGORIZED in folders:
        clauses.append(column.is_(None))
    return or_(*clauses) if clauses else column.in_([])


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentRepository:

    def __init__(self, session_factory: SessionFactory = get_admin_db) -> None:
        self._session = session_factory

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        user_id:     uuid.UUID,
        file_name:   str,
        file_type:   str,
        file_size:   int,
        source_type: str = "upload",
        content_url: str | None = None,
        metadata:    dict | None = None,
    ) -> Document:
        """Insert a document in status=processing / stage=pending / progress=0."""
        doc = Document(
            id=uuid.uuid4(),
            user_id=user_id,
            file_name=file_name,
            file_type=file_type,
            file_size=file_size,
            source_type=source_type,
            content_url=content_url,
            status="processing",
            processing_stage="pending",
            processing_progress=0,
            doc_metadata=metadata or {},
        )
        async with self._session() as db:
            db.add(doc)
        logger.info(
            "Document created | doc=%s user=%s type=%s size=%d",
            doc.id, user_id, file_type, file_size,
        )
        return doc

    async def get(self, document_id: uuid.UUID) -> Document | None:
        async with self._session() as db:
            result = await db.execute(select(Document).where(Document.id == document_id))
            return result.scalars().first()

    async def exists(self, document_id: uuid.UUID) -> bool:
        async with self._session() as db:
            result = await db.execute(select(Document.id).where(Document.id == document_id))
            return result.scalar_one_or_none() is not None

    async def list_for_user(self, user_id: uuid.UUID) -> list[Document]:
        async with self._session() as db:
            result = await db.execute(
                select(Document)
                .where(Document.user_id == user_id)
                .order_by(Document.created_at.desc())
            )
            return list(result.scalars().all())

    async def existing_folders(self, user_id: uuid.UUID) -> list[str]:
        """Distinct non-null folder labels already used by this user."""
        async with self._session() as db:
            result = await db.execute(
                select(Document.folder)
                .where(Document.user_id == user_id, Document.folder.is_not(None))
                .distinct()
                .order_by(Document.folder)
            )
            return [f for f in result.scalars().all() if f]

    async def labels(self, document_ids: Iterable[uuid.UUID]) -> dict[str, DocumentLabel]:
        """Display name + folder per document id (keys are str UUIDs)."""
        ids = list({uuid.UUID(str(d)) for d in document_ids})
        if not ids:
            return {}
        async with self._session() as db:
            result = await db.execute(
                select(Document.id, Document.file_name, Document.folder)
                .where(Document.id.in_(ids))
            )
            return {
                str(row.id): DocumentLabel(file_name=row.file_name, folder=row.folder)
                for row in result.all()
            }

    # ------------------------------------------------------------------
    # Pipeline state machine writes
    # ------------------------------------------------------------------

    async def claim(self, document_id: uuid.UUID, progress: int) -> ClaimedDocument | None:
        """
        Atomically move a pending document to 'extracting' and stamp a fresh
        run_token on it.

        Returns None when the document is not pending (already claimed by
        another run, finished, or failed); the caller treats that as a
        duplicate trigger.
        """
        token = uuid.uuid4()
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.status == "processing",
                    Document.processing_stage == "pending",
                )
                .values(processing_stage="extracting", processing_progress=progress, run_token=token)
                .returning(
                    Document.id, Document.user_id, Document.file_name, Document.file_type,
                    Document.run_token,
                )
            )
            row = result.first()
        if row is None:
            return None
        return ClaimedDocument(
            id=row.id,
            user_id=row.user_id,
            file_name=row.file_name,
            file_type=row.file_type,
            run_token=row.run_token,
        )

    async def update_progress(
        self,
        document_id: uuid.UUID,
        run_token:   uuid.UUID,
        stage:       str,
        progress:    int,
    ) -> bool:
        """
        Set stage + progress (never lowering it). False if the row is gone or
        no longer belongs to this run.
        """
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.status == "processing",
                    Document.run_token == run_token,
                )
                .values(
                    processing_stage=stage,
                    processing_progress=func.greatest(Document.processing_progress, progress),
                )
            )
        return (result.rowcount or 0) > 0

    async def mark_ready(
        self,
        document_id: uuid.UUID,
        run_token:   uuid.UUID,
        *,
        chunk_count: int,
        text_length: int,
        folder:      str | None,
        progress:    int,
    ) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.status == "processing",
                    Document.run_token == run_token,
                )
                .values(
                    status="ready",
                    processing_stage="complete",
                    processing_progress=progress,
                    chunk_count=chunk_count,
                    text_length=text_length,
                    folder=folder,
                    error_message=None,
                )
            )
        return (result.rowcount or 0) > 0

    async def mark_error(
        self,
        document_id: uuid.UUID,
        message:     str,
        run_token:   uuid.UUID | None = None,
    ) -> bool:
        """
        status=error; processing_progress is left at its last value.
        With run_token, only the run that holds the claim can fail the row.
        """
        stmt = update(Document).where(Document.id == document_id)
        if run_token is not None:
            stmt = stmt.where(Document.status == "processing", Document.run_token == run_token)
        async with self._session() as db:
            result = await db.execute(stmt.values(status="error", error_message=message))
        return (result.rowcount or 0) > 0

    async def reset_for_retry(self, document_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Put a failed document back to pending so a new run can claim it."""
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.user_id == user_id,
                    Document.status == "error",
                )
                .values(
                    status="processing",
                    processing_stage="pending",
                    processing_progress=0,
                    error_message=None,
                    run_token=None,
                )
            )
        return (result.rowcount or 0) > 0

    async def mark_stalled(self, older_than_minutes: int, message: str) -> list[uuid.UUID]:
        """Fail documents stuck mid-pipeline with no update for the given time."""
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.status == "processing",
                    Document.processing_stage.in_(("extracting", "chunking", "embedding")),
                    Document.updated_at < func.now() - func.make_interval(0, 0, 0, 0, 0, older_than_minutes),
                )
                .values(status="error", error_message=message, run_token=None)
                .returning(Document.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def delete(self, document_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Delete the document's chunks, then the document, in one transaction."""
        async with self._session() as db:
            await db.execute(
                delete(Chunk).where(Chunk.document_id == document_id, Chunk.user_id == user_id)
            )
            result = await db.execute(
                delete(Document).where(Document.id == document_id, Document.user_id == user_id)
            )
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info("Document deleted | doc=%s user=%s", document_id, user_id)
        return deleted

    async def merge_folders(
        self,
        user_id:        uuid.UUID,
        source_folders: list[str],
        target_folder:  str,
    ) -> int:
        """Relabel documents (and their chunks) from source folders to target."""
        target = None if target_folder == UNCATEGORIZED else target_folder
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(Document.user_id == user_id, _folder_filter(Document.folder, source_folders))
                .values(folder=target)
            )
            await db.execute(
                update(Chunk)
                .where(Chunk.user_id == user_id, _folder_filter(Chunk.folder, source_folders))
                .values(folder=target)
            )
        return result.rowcount or 0

    async def set_parent_folder(
        self,
        user_id:       uuid.UUID,
        folders:       list[str],
        parent_folder: str | None,
    ) -> int:
        """Group folders under a parent (None clears the grouping)."""
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(Document.user_id == user_id, _folder_filter(Document.folder, folders))
                .values(parent_folder=parent_folder)
            )
            await db.execute(
                update(Chunk)
                .where(Chunk.user_id == user_id, _folder_filter(Chunk.folder, folders))
                .values(parent_folder=parent_folder)
            )
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

class ConversationRepository:

    def __init__(self, session_factory: SessionFactory = get_admin_db) -> None:
        self._session = session_factory

    async def create(self, user_id: uuid.UUID, title: str | None = None) -> Conversation:
        conversation = Conversation(id=uuid.uuid4(), user_id=user_id, title=title)
        async with self._session() as db:
            db.add(conversation)
        return conversation

    async def get_owner(self, conversation_id: uuid.UUID) -> uuid.UUID | None:
        async with self._session() as db:
            result = await db.execute(
                select(Conversation.user_id).where(Conversation.id == conversation_id)
            )
            return result.scalar_one_or_none()

    async def list_messages(self, conversation_id: uuid.UUID) -> list[Message]:
        async with self._session() as db:
            result = await db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.seq)
            )
            return list(result.scalars().all())

    async def append_messages(
        self,
        conversation_id: uuid.UUID,
        user_id:         uuid.UUID,
        messages:        list[tuple[str, str, list[dict]]],
    ) -> None:
        """Append (role, content, sources) rows in order, in one transaction."""
        async with self._session() as db:
            for role, content, sources in messages:
                db.add(Message(
                    conversation_id=conversation_id,
                    user_id=user_id,
                    role=role,
                    content=content,
                    sources=sources,
                ))
                # flush per row so seq follows list order
                await db.flush()
            await db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(updated_at=func.now())
            )
