"""
Score-Threshold Re-Ranking

Second, stricter pass over the retriever's candidates:

  1. keep candidates with similarity ≥ rerank_threshold (0.28)
  2. sort by similarity, highest first (stable: ties keep retrieval order)
  3. keep the top `top_chunks_to_use` (8)

Operates on the bi-encoder scores the store already returned; no extra API
call is made on the query path.
"""

from __future__ import annotations

import logging

from langchain_core.documents import Document

from app.core.config import RetrievalConfig

logger = logging.getLogger(__name__)


def similarity_of(doc: Document) -> float:
    return float(doc.metadata.get("similarity", 0.0))


class ScoreThresholdReranker:

    def __init__(self, config: RetrievalConfig) -> None:
        self._threshold = config.rerank_threshold
        self._top_k     = config.top_chunks_to_use

    def rerank(self, candidates: list[Document]) -> list[Document]:
        kept = [doc for doc in candidates if similarity_of(doc) >= self._threshold]
        # sorted() is stable, so equal scores keep their retrieval order
        ranked = sorted(kept, key=similarity_of, reverse=True)[: self._top_k]

        logger.info(
            "Reranker | candidates=%d above_threshold=%d returned=%d threshold=%.2f",
            len(candidates), len(kept), len(ranked), self._threshold,
        )
        return ranked
