"""
Context Builder — turns reranked chunks into the prompt's context block.

Each fragment is rendered as:

    [Source 1] (From: Strategy / roadmap.pdf)
    <chunk text>

with a blank line between fragments. Display names and folders are resolved
from the documents table (current values, so a merged or renamed folder shows
its new label); when the lookup fails the chunk's cached metadata is used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from langchain_core.documents import Document

from app.db.repository import DocumentLabel, DocumentRepository
from app.rag.reranker import similarity_of

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
UNKNOWN_DOCUMENT = "Unknown document"


@dataclass
class BuiltContext:
    """
    text    : context block for the prompt ("" when there are no fragments)
    sources : [{document_id, document_name, folder, chunk_index, similarity}, ...]
              in fragment order
    """
    text:    str
    sources: list[dict] = field(default_factory=list)


class ContextBuilder:

    def __init__(self, documents: DocumentRepository) -> None:
        self._documents = documents

    async def build(self, fragments: list[Document]) -> BuiltContext:
        if not fragments:
            return BuiltContext(text="")

        labels = await self._resolve_labels(fragments)

        blocks: list[str] = []
        sources: list[dict] = []
        for i, doc in enumerate(fragments, start=1):
            document_id = str(doc.metadata.get("document_id", ""))
            label = labels.get(document_id)
            name = (label.file_name if label else None) or doc.metadata.get("file_name") or UNKNOWN_DOCUMENT
            folder = (label.folder if label else doc.metadata.get("folder")) or UNCATEGORIZED

            blocks.append(f"[Source {i}] (From: {folder} / {name})\n{doc.page_content}")
            sources.append({
                "document_id":   document_id,
                "document_name": name,
                "folder":        folder,
                "chunk_index":   doc.metadata.get("chunk_index"),
                "similarity":    round(similarity_of(doc), 4),
            })

        return BuiltContext(text="\n\n".join(blocks), sources=sources)

    async def _resolve_labels(self, fragments: list[Document]) -> dict[str, DocumentLabel]:
        ids = [doc.metadata["document_id"] for doc in fragments if doc.metadata.get("document_id")]
        try:
            return await self._documents.labels(ids)
        except Exception as exc:
            logger.warning("ContextBuilder | document lookup failed, using chunk metadata: %s", exc)
            return {}
