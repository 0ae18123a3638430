"""
Query API — RAG Q&A and Conversations

POST /api/v1/conversations                  → create a conversation
GET  /api/v1/conversations/{id}/messages    → transcript, oldest first
POST /api/v1/query                          → answer a question (JSON)

Query flow (see app.rag.pipeline):
  owner lookup → similarity search (user-scoped) → threshold rerank
  → context block → one completion → user + assistant messages appended

Error mapping (handled centrally in app.main):
  ConversationNotFound → 404
  RateLimited          → 429
  InvalidCredentials   → 502
  other provider error → 502
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from app.api.dependencies import Conversations, Pipeline
from app.core.errors import ConversationNotFound
from app.schemas.documents import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Query"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class QueryRequest(BaseModel):
    """Incoming query payload."""
    query: str = Field(
        ...,
        min_length=1,
        max_length=4_000,
        description="The user's natural-language question.",
        examples=["What does the roadmap say about Q3?"],
    )
    conversation_id: UUID = Field(..., description="Conversation that scopes retrieval to its owner.")


class SourceItem(BaseModel):
    """One context fragment that was shown to the model."""
    document_id:   str
    document_name: str
    folder:        str
    chunk_index:   int | None = None
    similarity:    float


class QueryResponse(BaseModel):
    answer:  str
    sources: list[SourceItem]


class ConversationCreateRequest(BaseModel):
    user_id: UUID
    title:   str | None = Field(None, max_length=255)


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:      UUID
    user_id: UUID
    title:   str | None = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:         UUID
    role:       str
    content:    str
    sources:    list[dict] = Field(default_factory=list)
    created_at: datetime | None = None


class MessageListResponse(BaseModel):
    conversation_id: UUID
    messages:        list[MessageResponse]


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@router.post(
    "/conversations",
    response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a conversation",
)
async def create_conversation(
    body:          ConversationCreateRequest,
    conversations: Conversations,
) -> ConversationResponse:
    conversation = await conversations.create(body.user_id, body.title)
    return ConversationResponse.model_validate(conversation)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessageListResponse,
    summary="List conversation messages in insertion order",
    responses={404: {"model": ErrorResponse}},
)
async def list_messages(conversation_id: UUID, conversations: Conversations) -> MessageListResponse:
    if await conversations.get_owner(conversation_id) is None:
        raise ConversationNotFound(f"Conversation '{conversation_id}' was not found.")
    messages = await conversations.list_messages(conversation_id)
    return MessageListResponse(
        conversation_id=conversation_id,
        messages=[MessageResponse.model_validate(m) for m in messages],
    )


# ---------------------------------------------------------------------------
# POST /api/v1/query
# ---------------------------------------------------------------------------

@router.post(
    "/query",
    response_model=QueryResponse,
    summary="Ask a question",
    description=(
        "Retrieves the conversation owner's most similar chunks, answers from "
        "them and appends the question and answer to the conversation."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Unknown conversation"},
        429: {"model": ErrorResponse, "description": "Provider rate limit"},
        502: {"model": ErrorResponse, "description": "Provider failure"},
    },
)
async def query(body: QueryRequest, pipeline: Pipeline) -> QueryResponse:
    t0         = time.perf_counter()
    request_id = str(uuid.uuid4())

    result = await pipeline.answer(body.query, body.conversation_id)

    logger.info(
        "Query answered | conversation=%s sources=%d latency_ms=%.1f request_id=%s",
        body.conversation_id, len(result.sources), (time.perf_counter() - t0) * 1000, request_id,
    )
    return QueryResponse(
        answer=result.answer,
        sources=[SourceItem(**s) for s in result.sources],
    )
