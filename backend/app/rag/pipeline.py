"""
RAG Query Pipeline

  Question + conversation_id
    │
    ▼
  ConversationRepository.get_owner()   ← conversation decides the user scope
    │
    ▼
  UserScopedRetriever                  ← embed question, similarity > 0.25, ≤ 15
    │            └── no candidates ──► fixed no-information answer
    ▼
  ScoreThresholdReranker               ← similarity ≥ 0.28, top 8
    │            └── nothing left ──► fixed no-information answer
    ▼
  ContextBuilder                       ← "[Source i] (From: folder / name)" blocks
    │
    ▼
  AnswerGenerator                      ← one completion call
    │
    ▼
  append_messages(user, assistant)     ← one transaction, in order

User guarantee:
  - The retriever is bound to a store scoped to the conversation owner.
  - The LLM never receives chunks from another user.

Failure of any step before persistence raises; nothing is written, so a
failed query leaves the transcript unchanged.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

from app.core.config import RAGConfig, get_rag_config
from app.core.errors import ConversationNotFound
from app.db.repository import ConversationRepository, DocumentRepository
from app.processing.embeddings import EmbeddingBatcher
from app.rag.answer import AnswerGenerator
from app.rag.context_builder import ContextBuilder
from app.rag.reranker import ScoreThresholdReranker
from app.rag.retriever import UserScopedRetriever
from app.vectorstore.base import VectorStoreBase
from app.vectorstore.pgvector_store import get_vector_store

logger = logging.getLogger(__name__)


@dataclass
class QueryAnswer:
    answer:          str
    sources:         list[dict] = field(default_factory=list)
    conversation_id: uuid.UUID | None = None


class QueryPipeline:

    def __init__(
        self,
        config:           RAGConfig,
        conversations:    ConversationRepository,
        context_builder:  ContextBuilder,
        answer_generator: AnswerGenerator,
        embedder:         EmbeddingBatcher,
        store_factory:    Callable[[uuid.UUID], VectorStoreBase] = get_vector_store,
    ) -> None:
        self._config        = config
        self._conversations = conversations
        self._context       = context_builder
        self._answers       = answer_generator
        self._embedder      = embedder
        self._store_for     = store_factory
        self._reranker      = ScoreThresholdReranker(config.retrieval)

    def retriever_for(self, user_id: uuid.UUID) -> UserScopedRetriever:
        return UserScopedRetriever.from_config(
            self._store_for(user_id), self._embedder, self._config.retrieval,
        )

    async def answer(self, question: str, conversation_id: uuid.UUID) -> QueryAnswer:
        t0 = time.monotonic()

        user_id = await self._conversations.get_owner(conversation_id)
        if user_id is None:
            raise ConversationNotFound()

        candidates = await self.retriever_for(user_id).ainvoke(question)
        fragments = self._reranker.rerank(candidates)

        if not fragments:
            answer = self._config.prompts.no_results_response
            await self._conversations.append_messages(
                conversation_id, user_id,
                [("user", question, []), ("assistant", answer, [])],
            )
            logger.info(
                "Query | conversation=%s candidates=%d no usable context",
                conversation_id, len(candidates),
            )
            return QueryAnswer(answer=answer, sources=[], conversation_id=conversation_id)

        context = await self._context.build(fragments)
        answer = await self._answers.generate(question, context.text)

        await self._conversations.append_messages(
            conversation_id, user_id,
            [("user", question, []), ("assistant", answer, context.sources)],
        )

        logger.info(
            "Query | conversation=%s candidates=%d used=%d elapsed_ms=%.0f",
            conversation_id, len(candidates), len(fragments), (time.monotonic() - t0) * 1000,
        )
        return QueryAnswer(answer=answer, sources=context.sources, conversation_id=conversation_id)


def build_query_pipeline(config: RAGConfig | None = None) -> QueryPipeline:
    config = config or get_rag_config()
    return QueryPipeline(
        config=config,
        conversations=ConversationRepository(),
        context_builder=ContextBuilder(DocumentRepository()),
        answer_generator=AnswerGenerator(config),
        embedder=EmbeddingBatcher(config),
    )
