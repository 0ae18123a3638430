"""
Answer Generator — one completion call per question.

Messages sent to the chat model:

  system : PromptConfig.query_system (answer only from context, decline when
           the context is irrelevant, cite folder / document)
  human  : "Context from documents:\\n\\n<context>\\n\\nQuestion: <question>"

A failed completion propagates; there is no partial answer.
"""

from __future__ import annotations

import logging

from app.core.config import RAGConfig
from app.llm.gateway import LLMGateway

logger = logging.getLogger(__name__)


def build_user_turn(context: str, question: str) -> str:
    return f"Context from documents:\n\n{context}\n\nQuestion: {question}"


class AnswerGenerator:

    def __init__(self, config: RAGConfig, gateway: LLMGateway | None = None) -> None:
        self._system_prompt = config.prompts.query_system
        self._gateway = gateway or LLMGateway(config)

    async def generate(self, question: str, context: str) -> str:
        messages = LLMGateway.build_messages(
            self._system_prompt, build_user_turn(context, question),
        )
        response = await self._gateway.invoke(messages, label="answer")
        return response.content.strip()
