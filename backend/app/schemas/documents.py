"""
Documents & Folders — Pydantic Request/Response Schemas

Covers:
  - Two-phase ingestion: create the record (201), then submit content (202)
  - URL ingestion (202)
  - Status polling (the progress contract consumed by any UI)
  - Folder operations and the classify helper
  - Structured error bodies (ErrorResponse) and the route-level factories

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - status is the lifecycle (processing | ready | error); processing_stage
    and processing_progress describe where a processing run currently is.
  - All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# 50 MB hard ceiling, enforced in the route before the pipeline sees the bytes
MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: processing → ready | error;  error → processing (user retry)
    """
    PROCESSING = "processing"
    READY      = "ready"
    ERROR      = "error"


class ProcessingStage(str, Enum):
    """Maps to documents.processing_stage (with processing_progress 0–100)."""
    PENDING    = "pending"      # 0
    EXTRACTING = "extracting"   # 10
    CHUNKING   = "chunking"     # 33
    EMBEDDING  = "embedding"    # 50 → 95
    COMPLETE   = "complete"     # 100


# ---------------------------------------------------------------------------
# Create / process
# ---------------------------------------------------------------------------

class DocumentCreateRequest(BaseModel):
    file_name: str  = Field(..., min_length=1, max_length=255)
    file_type: str  = Field(..., min_length=1, max_length=255, description="Declared MIME type")
    file_size: int  = Field(..., ge=0, le=MAX_FILE_SIZE_BYTES)
    user_id:   UUID

    @field_validator("file_name")
    @classmethod
    def _strip_path(cls, value: str) -> str:
        name = value.replace("\\", "/").rsplit("/", 1)[-1].strip()
        if not name:
            raise ValueError("file_name must not be empty")
        return name


class DocumentCreateResponse(BaseModel):
    document_id: UUID


class ProcessAcceptedResponse(BaseModel):
    """HTTP 202 — content accepted; the pipeline runs in the background."""
    accepted:    bool = True
    document_id: UUID


class UrlIngestRequest(BaseModel):
    url:     str = Field(..., min_length=1, max_length=2048)
    user_id: UUID


# ---------------------------------------------------------------------------
# Status / listing
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    """Polled by clients to track processing progress."""
    model_config = ConfigDict(from_attributes=True)

    document_id:         UUID             = Field(..., validation_alias="id")
    status:              ProcessingStatus
    processing_stage:    ProcessingStage
    processing_progress: int              = Field(..., ge=0, le=100)
    error_message:       str | None       = None
    folder:              str | None       = None
    chunk_count:         int              = 0
    text_length:         int              = 0
    updated_at:          datetime


class DocumentSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                  UUID
    file_name:           str
    file_type:           str
    file_size:           int
    source_type:         str
    content_url:         str | None = None
    status:              ProcessingStatus
    processing_stage:    ProcessingStage
    processing_progress: int
    error_message:       str | None = None
    folder:              str | None = None
    parent_folder:       str | None = None
    chunk_count:         int
    created_at:          datetime


class DocumentListResponse(BaseModel):
    documents: list[DocumentSummary]


# ---------------------------------------------------------------------------
# Folders / classification
# ---------------------------------------------------------------------------

class ClassifyRequest(BaseModel):
    text:             str       = Field(..., description="Document text; only the first 2,000 chars are used")
    file_name:        str       = Field("", max_length=2048)
    existing_folders: list[str] = Field(default_factory=list)


class ClassifyResponse(BaseModel):
    folder: str


class FolderListResponse(BaseModel):
    folders: list[str]


class MergeFoldersRequest(BaseModel):
    user_id:        UUID
    source_folders: list[str] = Field(..., min_length=1)
    target_folder:  str       = Field(..., min_length=1, max_length=255)


class ParentFolderRequest(BaseModel):
    user_id:       UUID
    folders:       list[str]  = Field(..., min_length=1)
    parent_folder: str | None = Field(None, max_length=255, description="null clears the grouping")


class FolderUpdateResponse(BaseModel):
    documents_updated: int


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class ApiErrors:
    """Error bodies returned directly by route handlers (400, 409, 413)."""

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int) -> ErrorResponse:
        max_mb = MAX_FILE_SIZE_BYTES // (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {max_mb} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {MAX_FILE_SIZE_BYTES:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def not_pending(document_id: UUID, status: str, stage: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_PENDING",
            message="This document has already been submitted for processing.",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Document '{document_id}' is {status}/{stage}; only pending documents accept content.",
                    code="DOCUMENT_NOT_PENDING",
                )
            ],
        )

    @staticmethod
    def retry_not_allowed(document_id: UUID, status: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="RETRY_NOT_ALLOWED",
            message="Only documents that failed processing can be retried.",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Document '{document_id}' has status '{status}'.",
                    code="RETRY_NOT_ALLOWED",
                )
            ],
        )
