"""
RAG package — query-time retrieval and answering.

    from app.rag.pipeline import build_query_pipeline

    pipeline = build_query_pipeline()
    result = await pipeline.answer("What is on the roadmap?", conversation_id)
"""

from app.rag.reranker import ScoreThresholdReranker
from app.rag.retriever import UserScopedRetriever

__all__ = [
    "ScoreThresholdReranker",
    "UserScopedRetriever",
    # QueryPipeline, ContextBuilder and AnswerGenerator: import from their modules
]
