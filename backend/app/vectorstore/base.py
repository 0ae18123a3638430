"""
Vector Store — Abstract Base

Chunk storage + similarity search. The rest of the application only speaks
this protocol, so the backend (pgvector today) is swappable without changing
ingestion or RAG code.

User isolation contract (enforced by ALL implementations):
  - Each instance is bound to a single user_id at construction time.
  - Inserted records MUST carry that user_id.
  - Similarity search only ever returns that user's chunks.
  - Cross-user operations are not exposed on this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from uuid import UUID


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single chunk + embedding to insert."""
    document_id:   UUID
    user_id:       UUID
    chunk_index:   int
    text:          str
    vector:        list[float]
    token_count:   int
    folder:        str | None = None
    parent_folder: str | None = None
    metadata:      dict = field(default_factory=dict)   # {file_name, folder}


@dataclass
class QueryResult:
    """One row returned from a similarity search (similarity = 1 − cosine distance)."""
    id:          str
    document_id: str
    chunk_index: int
    text:        str
    similarity:  float
    metadata:    dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorStoreBase(ABC):
    """
    User-scoped chunk store.

    There is no method to query across users — that operation does not exist.
    """

    def __init__(self, user_id: UUID) -> None:
        self._user_id = user_id

    @property
    def user_id(self) -> UUID:
        return self._user_id

    def _check_owner(self, records: list[VectorRecord]) -> None:
        foreign = [r for r in records if r.user_id != self._user_id]
        if foreign:
            raise ValueError(
                f"{len(foreign)} record(s) belong to another user; store is bound to {self._user_id}"
            )

    @abstractmethod
    async def insert(self, records: list[VectorRecord], run_token: UUID | None = None) -> int:
        """
        Insert chunk records for one document in a single transaction.
        Returns the number inserted.
        Raises DocumentDeleted if the parent document no longer exists, and
        RunSuperseded if run_token is given and no longer matches the document.
        """

    @abstractmethod
    async def query(
        self,
        vector:    list[float],
        threshold: float,
        limit:     int,
    ) -> list[QueryResult]:
        """
        Nearest-neighbour search within this user's chunks.
        Returns rows with similarity > threshold, most similar first, at most `limit`.
        """

    @abstractmethod
    async def delete_by_document(self, document_id: UUID) -> int:
        """Delete ALL chunks belonging to a document. Returns rows removed."""
