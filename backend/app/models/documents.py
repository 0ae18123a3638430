"""
SQLAlchemy ORM Models — Documents, Chunks, Conversations & Messages

Using SQLAlchemy 2.x mapped classes for full async support.

Ownership: every row carries user_id. Chunks copy user_id from their parent
document at insert time, so similarity search can filter on a single indexed
column without joining documents.

Vector column: pgvector `vector(1536)` with an HNSW index on cosine distance.
The dimension must match the embedding model (text-embedding-3-small).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

EMBEDDING_DIMENSIONS = 1536


# ---------------------------------------------------------------------------
# Declarative base, shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file or URL from creation → chunking → indexing.

    Lifecycle (status column):
        processing : created, queued or running through the pipeline
        ready      : chunks + embeddings stored, available for retrieval
        error      : pipeline failed (see error_message)

    Pipeline stage (processing_stage column), exposed with a 0–100 progress:
        pending → extracting → chunking → embedding → complete
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'ready', 'error')",
            name="documents_status_check",
        ),
        CheckConstraint(
            "processing_stage IN ('pending', 'extracting', 'chunking', 'embedding', 'complete')",
            name="documents_stage_check",
        ),
        CheckConstraint(
            "processing_progress BETWEEN 0 AND 100",
            name="documents_progress_check",
        ),
        Index("idx_documents_user_id",     "user_id"),
        Index("idx_documents_user_folder", "user_id", "folder"),
        Index("idx_documents_status",      "status", "processing_stage"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Declared MIME type, or 'url' for web pages",
    )
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    content_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="upload",
        server_default="upload",
        comment="upload | url",
    )

    # Ingestion state machine
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="processing", server_default="processing",
    )
    processing_stage: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending",
    )
    processing_progress: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='error'",
    )
    run_token: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="Set by each claim; pipeline writes must carry the current value",
    )

    # Organisation
    folder:        Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parent_folder: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Results
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    text_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    chunks: Mapped[list["Chunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} user={self.user_id} "
            f"status={self.status} stage={self.processing_stage} file={self.file_name!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model — document_chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """One word-window of a Document with its embedding. Immutable once written."""

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_position"),
        Index("idx_chunks_document_id", "document_id"),
        Index("idx_chunks_user_id",     "user_id"),
        Index(
            "idx_chunks_embedding_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    chunk_text:  Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    embedding:   Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)

    folder:        Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parent_folder: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="{file_name, folder} at creation time",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="chunks")


# ---------------------------------------------------------------------------
# Conversation / Message — chat transcript
# ---------------------------------------------------------------------------

class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index("idx_conversations_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    user_id: Mapped[uuid.UUID]   = mapped_column(UUID(as_uuid=True), nullable=False)
    title:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Message(Base):
    """
    Append-only transcript row.
    sources: [{document_id, document_name, folder, chunk_index, similarity}, ...]
    """

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'assistant', 'system')",
            name="messages_role_check",
        ),
        Index("idx_messages_conversation", "conversation_id", "seq"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    # insertion order; created_at ties within one transaction
    seq: Mapped[int] = mapped_column(BigInteger, Identity(), nullable=False)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    role:    Mapped[str]       = mapped_column(Text, nullable=False)
    content: Mapped[str]       = mapped_column(Text, nullable=False)
    sources: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default="[]",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Message id={self.id} conversation={self.conversation_id} role={self.role}>"
