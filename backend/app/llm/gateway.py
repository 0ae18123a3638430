"""
LLM Gateway — single call site for chat-model requests

Used by the topic classifier and the answer generator:

  ┌─────────────────────────────────────────────────────┐
  │  LLMGateway.invoke(messages, label)                 │
  │       │                                             │
  │       ▼                                             │
  │  call_with_retry()    ← back-off on 429 / network   │
  │       │                                             │
  │       ▼                                             │
  │  ChatOpenAI.ainvoke() ← langchain-openai            │
  │       │                                             │
  │       ▼                                             │
  │  GatewayResponse (content, model, tokens, latency)  │
  └─────────────────────────────────────────────────────┘

The underlying client is built with max_retries=0 so the retry policy in
RAGConfig is the only one in effect. Non-auth, non-rate-limit provider status
errors surface as CompletionFailed (not EmbeddingFailed).
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from app.core.config import RAGConfig, settings
from app.core.errors import CompletionFailed, EmbeddingFailed
from app.core.retry import call_with_retry

logger = logging.getLogger(__name__)


def _estimate_tokens(messages: list[BaseMessage]) -> int:
    """4 chars ≈ 1 token; used only when the provider reports no usage."""
    total_chars = sum(len(m.content) for m in messages if isinstance(m.content, str))
    return max(1, total_chars // 4)


def build_chat_model(
    model:      str | None = None,
    max_tokens: int | None = None,
    temperature: float | None = None,
) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(
        model=model or settings.llm_model,
        api_key=settings.openai_api_key or None,
        temperature=settings.llm_temperature if temperature is None else temperature,
        max_tokens=max_tokens or settings.llm_max_tokens,
        timeout=settings.llm_timeout_seconds,
        max_retries=0,
    )


@dataclass
class GatewayResponse:
    """The result of a single LLM gateway call."""
    content:       str
    model_used:    str
    input_tokens:  int
    output_tokens: int
    latency_ms:    float
    request_id:    str


class LLMGateway:
    """
    Thin async wrapper around one chat model.

    Instantiate per purpose (answering vs. classifying use different models
    and token limits). Safe for concurrent use.
    """

    def __init__(
        self,
        config:     RAGConfig,
        llm:        BaseChatModel | None = None,
        model:      str | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._config = config
        self._model  = model or settings.llm_model
        self._llm    = llm or build_chat_model(model=self._model, max_tokens=max_tokens)

    @property
    def model(self) -> str:
        return self._model

    async def invoke(self, messages: list[BaseMessage], label: str = "chat") -> GatewayResponse:
        """
        Run the chat model once (with retry on transient errors).

        Raises InvalidCredentials, RateLimited, NetworkError, ProviderTimeout
        or CompletionFailed.
        """
        t0 = time.perf_counter()
        try:
            message = await call_with_retry(
                lambda: self._llm.ainvoke(messages),
                self._config.retry,
                label=label,
            )
        except EmbeddingFailed as exc:
            raise CompletionFailed(f"Failed to generate answer: {exc.status_code}") from exc
        latency = (time.perf_counter() - t0) * 1000

        content = message.content if isinstance(message.content, str) else str(message.content)
        usage = getattr(message, "usage_metadata", None) or {}

        response = GatewayResponse(
            content=content,
            model_used=self._model,
            input_tokens=usage.get("input_tokens") or _estimate_tokens(messages),
            output_tokens=usage.get("output_tokens") or max(1, len(content) // 4),
            latency_ms=latency,
            request_id=str(uuid.uuid4()),
        )
        logger.info(
            "LLMGateway | call=%s model=%s tokens_in=%d tokens_out=%d latency_ms=%.1f",
            label, response.model_used, response.input_tokens,
            response.output_tokens, response.latency_ms,
        )
        return response

    @staticmethod
    def build_messages(system_prompt: str, user_content: str) -> list[BaseMessage]:
        """Standard [SystemMessage, HumanMessage] list."""
        return [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_content),
        ]
