"""
Composed FastAPI Dependencies

Route handlers import their collaborators from here and never construct
repositories, publishers or pipelines inline. Tests replace any of these
through `app.dependency_overrides`.

This is the single wiring point for the request context.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from app.db.repository import ConversationRepository, DocumentRepository
from app.processing.classifier import TopicClassifier
from app.rag.pipeline import QueryPipeline, build_query_pipeline
from app.services.ingestion import TaskPublisher
from app.core.config import get_rag_config

# ---------------------------------------------------------------------------
# Shared singletons (built lazily on first request)
# ---------------------------------------------------------------------------

_documents:     DocumentRepository | None     = None
_conversations: ConversationRepository | None = None
_publisher:     TaskPublisher | None          = None
_pipeline:      QueryPipeline | None          = None
_classifier:    TopicClassifier | None        = None


def get_document_repository() -> DocumentRepository:
    global _documents
    if _documents is None:
        _documents = DocumentRepository()
    return _documents


def get_conversation_repository() -> ConversationRepository:
    global _conversations
    if _conversations is None:
        _conversations = ConversationRepository()
    return _conversations


def get_task_publisher() -> TaskPublisher:
    global _publisher
    if _publisher is None:
        _publisher = TaskPublisher()
    return _publisher


def get_query_pipeline() -> QueryPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_query_pipeline()
    return _pipeline


def get_classifier() -> TopicClassifier:
    global _classifier
    if _classifier is None:
        _classifier = TopicClassifier(get_rag_config())
    return _classifier


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Documents     = Annotated[DocumentRepository,     Depends(get_document_repository)]
Conversations = Annotated[ConversationRepository, Depends(get_conversation_repository)]
Publisher     = Annotated[TaskPublisher,          Depends(get_task_publisher)]
Pipeline      = Annotated[QueryPipeline,          Depends(get_query_pipeline)]
Classifier    = Annotated[TopicClassifier,        Depends(get_classifier)]
