"""
Word-Window Chunker
═══════════════════

Splits normalized text into fixed-size, overlapping word windows.

Algorithm
─────────
  words = text.split()
  i = 0
  while i < len(words):
      emit " ".join(words[i : i + W])      (skipped if empty)
      i += W - O

  - N words produce ceil(N / (W - O)) chunks.
  - Consecutive chunks share min(O, remaining) words, so a sentence cut at a
    window boundary still appears whole in one of the two neighbours.
  - Defaults W=150, O=30: ~200 tokens per chunk, comfortably under the
    embedding model's per-input limit.

Token counts are estimated as ceil(len(text) / 4) (≈ 4 chars per token for
English), which avoids a tokenizer dependency.
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field

from app.core.config import ProcessingConfig

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN_EST = 4

_INVISIBLE_RE  = re.compile(r"[\u00a0\u200b\u200c\u200d\ufeff]")
_CONTROL_RE    = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"[ \t]+")


@dataclass
class ChunkResult:
    """A single word window ready for embedding."""
    chunk_index: int    # 0-based, contiguous
    text:        str
    token_count: int
    metadata:    dict = field(default_factory=dict)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN_EST)


def normalize_text(text: str) -> str:
    """
    NFC-normalize, drop control and zero-width characters, collapse runs of
    spaces/tabs and 3+ newlines. Paragraph breaks are preserved.
    """
    text = unicodedata.normalize("NFC", text)
    text = _INVISIBLE_RE.sub(" ", text)
    text = _CONTROL_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(lines).strip()


def split_word_windows(text: str, window: int, overlap: int) -> list[str]:
    """Raw windowing step; `overlap` must be smaller than `window`."""
    if window <= 0 or not 0 <= overlap < window:
        raise ValueError(f"invalid window={window} overlap={overlap}")

    words = text.split()
    step = window - overlap
    windows: list[str] = []
    i = 0
    while i < len(words):
        piece = " ".join(words[i:i + window]).strip()
        if piece:
            windows.append(piece)
        i += step
    return windows


class WordWindowChunker:
    """
    Usage:
        chunker = WordWindowChunker(config.processing)
        chunks = chunker.chunk(text, metadata={"file_name": ..., "folder": ...})
    """

    def __init__(self, config: ProcessingConfig) -> None:
        self._window  = config.chunk_size
        self._overlap = config.chunk_overlap

    def chunk(self, text: str, metadata: dict | None = None) -> list[ChunkResult]:
        """
        Ordered chunks for `text`; empty list only when the text has no words.
        Every chunk carries a copy of `metadata`.
        """
        normalized = normalize_text(text)
        pieces = split_word_windows(normalized, self._window, self._overlap)

        results = [
            ChunkResult(
                chunk_index=idx,
                text=piece,
                token_count=estimate_tokens(piece),
                metadata=dict(metadata or {}),
            )
            for idx, piece in enumerate(pieces)
        ]
        logger.info(
            "WordWindowChunker | window=%d overlap=%d words=%d chunks=%d",
            self._window, self._overlap, len(normalized.split()), len(results),
        )
        return results
