"""
Document Processing Package
════════════════════════════

Building blocks of the ingestion pipeline:

  Text Extraction → Classification → Word-Window Chunking → Embedding

Modules
───────
  ocr.py         PDF text strategies (PyMuPDF → pypdf) and the vision fallback
  extractor.py   Format dispatch, scanned-PDF detection, truncation
  classifier.py  Folder label from a text sample + existing folders
  chunking.py    Overlapping word windows
  embeddings.py  Sequential embedding batches with retry and progress callbacks

Every component takes a RAGConfig (or one of its sections) in its
constructor and holds no per-document state.
"""

from app.processing.chunking import ChunkResult, WordWindowChunker
from app.processing.classifier import TopicClassifier
from app.processing.embeddings import EmbeddingBatcher
from app.processing.extractor import ExtractionResult, TextExtractor

__all__ = [
    "ChunkResult",
    "EmbeddingBatcher",
    "ExtractionResult",
    "TextExtractor",
    "TopicClassifier",
    "WordWindowChunker",
]
