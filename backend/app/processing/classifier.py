"""
Topic Classifier — assigns one folder label per document.

The model sees the file/URL label plus the first `classification_sample_chars`
characters of text. When the user already has folders, the system prompt
lists them and asks the model to reuse one unless the document clearly fits
none; otherwise a default vocabulary is offered.

Classification never fails ingestion: any error (provider failure, empty or
unusable answer) yields UNCATEGORIZED.
"""

from __future__ import annotations

import logging
import re
from typing import Sequence

from app.core.config import RAGConfig, settings
from app.core.errors import ClassificationFailed
from app.llm.gateway import LLMGateway

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"

MAX_FOLDER_LENGTH = 50

DEFAULT_CATEGORIES: tuple[str, ...] = (
    "Work Notes", "Research", "AI & ML", "Product Management", "User Research",
    "Engineering", "Design", "Marketing", "Sales", "Finance", "Legal", "HR",
    "Personal", "Meeting Notes", "Projects", "Ideas", "Learning", "Reference",
    "Documentation", "Reports", "Strategy", "Planning", "Templates", "OS", "Misc",
)

_BASE_PROMPT = (
    "You are a document classifier. Analyze the document and assign it to ONE "
    "folder category. Return ONLY the folder name, nothing else."
)


def build_system_prompt(existing_folders: Sequence[str]) -> str:
    if existing_folders:
        return (
            f"{_BASE_PROMPT}\n\n"
            "IMPORTANT: The user already has these folders - PREFER matching to one "
            f"of these if relevant:\n{', '.join(existing_folders)}\n\n"
            "Only create a new folder name if the document clearly does not fit any "
            "existing folder."
        )
    return f"{_BASE_PROMPT} Common categories: {', '.join(DEFAULT_CATEGORIES)}."


def build_user_prompt(file_name: str, sample: str) -> str:
    return f"Document name: {file_name}\n\nDocument content:\n{sample}"


def clean_label(raw: str, existing_folders: Sequence[str]) -> str:
    """
    First line of the answer, without quotes, "Folder:" prefixes or trailing
    punctuation, capped in length. A case-insensitive match to an existing
    folder returns that folder's spelling.
    """
    lines = [line.strip() for line in (raw or "").strip().splitlines() if line.strip()]
    if not lines:
        raise ClassificationFailed("empty classification response")

    label = re.sub(r"^(folder|category)\s*:\s*", "", lines[0], flags=re.IGNORECASE)
    label = label.strip().strip("\"'`*").rstrip(".!").strip()
    if not label:
        raise ClassificationFailed("unusable classification response")

    label = label[:MAX_FOLDER_LENGTH].strip()
    for folder in existing_folders:
        if folder.lower() == label.lower():
            return folder
    return label


class TopicClassifier:
    """
    Usage:
        classifier = TopicClassifier(config)
        folder = await classifier.classify(text, "roadmap.pdf", ["Strategy", "Research"])
    """

    def __init__(self, config: RAGConfig, gateway: LLMGateway | None = None) -> None:
        self._sample_chars = config.processing.classification_sample_chars
        self._gateway = gateway or LLMGateway(
            config, model=settings.classification_model, max_tokens=50,
        )

    async def classify(
        self,
        text:             str,
        file_name:        str,
        existing_folders: Sequence[str] = (),
    ) -> str:
        folders = [f for f in dict.fromkeys(existing_folders) if f and f.strip()]
        messages = LLMGateway.build_messages(
            build_system_prompt(folders),
            build_user_prompt(file_name, (text or "")[:self._sample_chars]),
        )
        try:
            response = await self._gateway.invoke(messages, label="classify")
            folder = clean_label(response.content, folders)
        except Exception as exc:
            logger.warning(
                "TopicClassifier | falling back to %s file=%s error=%s",
                UNCATEGORIZED, file_name, exc,
            )
            return UNCATEGORIZED

        logger.info(
            "TopicClassifier | file=%s folder=%s reused=%s",
            file_name, folder, folder in folders,
        )
        return folder
