from app.vectorstore.base import QueryResult, VectorRecord, VectorStoreBase
from app.vectorstore.pgvector_store import PgVectorStore, get_vector_store

__all__ = ["PgVectorStore", "VectorStoreBase", "VectorRecord", "QueryResult", "get_vector_store"]
