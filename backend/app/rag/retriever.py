"""
RAG Retriever — LangChain Integration

Wraps the user-scoped VectorStoreBase inside a LangChain BaseRetriever, so
the query path can call `await retriever.ainvoke(question)` and receive
LangChain Documents.

Step 1: embed the question with the ingestion model (same dimensions).
Step 2: similarity search with the initial recall threshold and candidate cap.

User isolation is inherited from VectorStoreBase: the retriever can ONLY
return chunks owned by the user the store was built for.
"""

from __future__ import annotations

import asyncio
import logging

from langchain_core.callbacks import (
    AsyncCallbackManagerForRetrieverRun,
    CallbackManagerForRetrieverRun,
)
from langchain_core.documents import Document
from langchain_core.retrievers import BaseRetriever
from pydantic import ConfigDict

from app.core.config import RetrievalConfig
from app.processing.embeddings import EmbeddingBatcher
from app.vectorstore.base import VectorStoreBase

logger = logging.getLogger(__name__)


class UserScopedRetriever(BaseRetriever):
    """
    Document.metadata carries: similarity, document_id, chunk_index, chunk_id
    plus the chunk's cached metadata (file_name, folder).
    Results are ordered by similarity, highest first.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)   # VectorStoreBase, EmbeddingBatcher

    vector_store:    VectorStoreBase
    embedder:        EmbeddingBatcher
    match_threshold: float = 0.25
    match_count:     int   = 15

    @classmethod
    def from_config(
        cls,
        vector_store: VectorStoreBase,
        embedder:     EmbeddingBatcher,
        config:       RetrievalConfig,
    ) -> "UserScopedRetriever":
        return cls(
            vector_store=vector_store,
            embedder=embedder,
            match_threshold=config.initial_match_threshold,
            match_count=config.initial_match_count,
        )

    def _get_relevant_documents(
        self,
        query: str,
        *,
        run_manager: CallbackManagerForRetrieverRun,
    ) -> list[Document]:
        """Sync entrypoint (LangChain calls this in non-async contexts)."""
        return asyncio.run(self._search(query))

    async def _aget_relevant_documents(
        self,
        query: str,
        *,
        run_manager: AsyncCallbackManagerForRetrieverRun,
    ) -> list[Document]:
        return await self._search(query)

    async def _search(self, query: str) -> list[Document]:
        query_vector = await self.embedder.embed_query(query)
        results = await self.vector_store.query(
            vector=query_vector,
            threshold=self.match_threshold,
            limit=self.match_count,
        )

        docs = [
            Document(
                page_content=result.text,
                metadata={
                    **result.metadata,
                    "similarity":  result.similarity,
                    "document_id": result.document_id,
                    "chunk_index": result.chunk_index,
                    "chunk_id":    result.id,
                },
            )
            for result in results
        ]
        logger.debug(
            "Retriever | user=%s threshold=%.2f limit=%d hits=%d",
            self.vector_store.user_id, self.match_threshold, self.match_count, len(docs),
        )
        return docs
