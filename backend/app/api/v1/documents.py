"""
Document Ingestion API Router

POST   /api/v1/documents                 create the record (201)
POST   /api/v1/documents/{id}/process    submit content for the pipeline (202)
POST   /api/v1/documents/url             ingest a web page (202)
GET    /api/v1/documents/{id}/status     poll progress
GET    /api/v1/documents?user_id=        list a user's documents
DELETE /api/v1/documents/{id}?user_id=   remove document + chunks (204)
POST   /api/v1/documents/{id}/retry      re-run a failed document (202)

Request lifecycle (two-phase upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. POST /documents → status=processing, stage=pending   │
  │ 2. POST /documents/{id}/process with the file bytes     │
  │    → only a pending document owned by user_id accepts   │
  │ 3. TaskPublisher hands the job to Celery or the         │
  │    in-process JobRegistry → returns 202 immediately     │
  │ 4. Client polls /status until ready | error             │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, File, Form, Query, Response, UploadFile, status
from fastapi.responses import JSONResponse

from app.api.dependencies import Documents, Publisher
from app.core.errors import DocumentNotFound, JobAlreadyRunning
from app.models.documents import Document
from app.schemas.documents import (
    MAX_FILE_SIZE_BYTES,
    ApiErrors,
    DocumentCreateRequest,
    DocumentCreateResponse,
    DocumentListResponse,
    DocumentStatusResponse,
    DocumentSummary,
    ErrorResponse,
    ProcessAcceptedResponse,
    UrlIngestRequest,
)
from app.services.url_ingestion import file_name_from_url, validate_url

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Ingestion"],
)


# ---------------------------------------------------------------------------
# POST /documents
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=DocumentCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a document record",
    description="Phase one of an upload. The record starts at status=processing, stage=pending.",
    responses={422: {"model": ErrorResponse}},
)
async def create_document(body: DocumentCreateRequest, documents: Documents) -> DocumentCreateResponse:
    doc = await documents.create(
        user_id=body.user_id,
        file_name=body.file_name,
        file_type=body.file_type,
        file_size=body.file_size,
    )
    return DocumentCreateResponse(document_id=doc.id)


# ---------------------------------------------------------------------------
# POST /documents/url
# ---------------------------------------------------------------------------

@router.post(
    "/url",
    response_model=ProcessAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a web page",
    description=(
        "Creates a url-type document and fetches the page in the background. "
        "Google Docs links are rejected; export the document as PDF instead."
    ),
    responses={
        202: {"model": ProcessAcceptedResponse},
        400: {"model": ErrorResponse, "description": "Unsupported or malformed URL"},
    },
)
async def ingest_url(
    body:      UrlIngestRequest,
    documents: Documents,
    publisher: Publisher,
) -> ProcessAcceptedResponse:
    url = validate_url(body.url)

    doc = await documents.create(
        user_id=body.user_id,
        file_name=file_name_from_url(url),
        file_type="url",
        file_size=0,
        source_type="url",
        content_url=url,
        metadata={"source_url": url},
    )
    await publisher.publish_url(doc.id, url)
    return ProcessAcceptedResponse(document_id=doc.id)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/process
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/process",
    response_model=ProcessAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit file content for processing",
    description=(
        "Phase two of an upload. Returns 202 immediately; poll "
        "GET /documents/{id}/status for pipeline progress."
    ),
    responses={
        202: {"model": ProcessAcceptedResponse, "description": "Content accepted for processing"},
        400: {"model": ErrorResponse, "description": "Missing or empty file"},
        404: {"model": ErrorResponse, "description": "Unknown document or not owned by user_id"},
        409: {"model": ErrorResponse, "description": "Document is not pending or is already running"},
        413: {"model": ErrorResponse, "description": "File exceeds 50 MB limit"},
    },
)
async def process_document(
    document_id: UUID,
    documents:   Documents,
    publisher:   Publisher,
    user_id:     UUID       = Form(...),
    file:        UploadFile = File(..., description="Document file (PDF, DOCX, TXT, image)"),
) -> JSONResponse:
    doc = await _owned_document(documents, document_id, user_id)

    if doc.status != "processing" or doc.processing_stage != "pending":
        return _error(
            status.HTTP_409_CONFLICT,
            ApiErrors.not_pending(document_id, doc.status, doc.processing_stage),
        )

    content = await file.read()
    rejection = _check_upload(content)
    if rejection is not None:
        return rejection

    await _publish(publisher, document_id, content, file.content_type or doc.file_type)
    return _accepted(document_id)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/retry
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/retry",
    response_model=ProcessAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed document",
    description=(
        "Only documents in status=error can be retried. Uploads must resend the "
        "file; url documents are fetched again from their content_url."
    ),
    responses={
        202: {"model": ProcessAcceptedResponse},
        400: {"model": ErrorResponse, "description": "Missing or empty file"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Document is not in error"},
        413: {"model": ErrorResponse},
    },
)
async def retry_document(
    document_id: UUID,
    documents:   Documents,
    publisher:   Publisher,
    user_id:     UUID              = Form(...),
    file:        UploadFile | None = File(None),
) -> JSONResponse:
    doc = await _owned_document(documents, document_id, user_id)

    if doc.status != "error":
        return _error(status.HTTP_409_CONFLICT, ApiErrors.retry_not_allowed(document_id, doc.status))

    content: bytes | None = None
    if file is not None:
        content = await file.read()
    if content is None and doc.source_type != "url":
        return _error(status.HTTP_400_BAD_REQUEST, ApiErrors.missing_file())
    if content is not None:
        rejection = _check_upload(content)
        if rejection is not None:
            return rejection

    previous_error = doc.error_message
    if not await documents.reset_for_retry(document_id, user_id):
        return _error(status.HTTP_409_CONFLICT, ApiErrors.retry_not_allowed(document_id, doc.status))

    logger.info("Retry requested | doc=%s user=%s source=%s", document_id, user_id, doc.source_type)

    try:
        if content is None:
            await publisher.publish_url(document_id, doc.content_url)
        else:
            await _publish(publisher, document_id, content, file.content_type or doc.file_type)
    except Exception:
        # nothing will claim the pending row; put the previous failure back
        logger.warning("Retry not dispatched | doc=%s, restoring error state", document_id)
        await documents.mark_error(document_id, previous_error or "Processing could not be started")
        raise
    return _accepted(document_id)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll async processing status",
    responses={404: {"model": ErrorResponse}},
)
async def get_document_status(
    document_id: UUID,
    documents:   Documents,
    user_id:     UUID | None = Query(None, description="When given, the document must belong to this user"),
) -> DocumentStatusResponse:
    doc = await documents.get(document_id)
    if doc is None or (user_id is not None and doc.user_id != user_id):
        raise DocumentNotFound(f"Document '{document_id}' was not found.")
    return DocumentStatusResponse.model_validate(doc)


# ---------------------------------------------------------------------------
# GET /documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List a user's documents",
)
async def list_documents(documents: Documents, user_id: UUID = Query(...)) -> DocumentListResponse:
    docs = await documents.list_for_user(user_id)
    return DocumentListResponse(documents=[DocumentSummary.model_validate(d) for d in docs])


# ---------------------------------------------------------------------------
# DELETE /documents/{document_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document and its chunks",
    responses={
        204: {"description": "Document deleted"},
        404: {"model": ErrorResponse},
    },
)
async def delete_document(
    document_id: UUID,
    documents:   Documents,
    user_id:     UUID = Query(...),
) -> Response:
    """
    Hard delete: chunks first, then the record, in one transaction.
    A job still running for this document stops at its next write.
    """
    if not await documents.delete(document_id, user_id):
        raise DocumentNotFound(f"Document '{document_id}' was not found.")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _owned_document(documents, document_id: UUID, user_id: UUID) -> Document:
    doc = await documents.get(document_id)
    if doc is None or doc.user_id != user_id:
        raise DocumentNotFound(f"Document '{document_id}' was not found.")
    return doc


def _check_upload(content: bytes) -> JSONResponse | None:
    if not content:
        return _error(status.HTTP_400_BAD_REQUEST, ApiErrors.missing_file())
    if len(content) > MAX_FILE_SIZE_BYTES:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, ApiErrors.file_too_large(len(content)))
    return None


async def _publish(publisher, document_id: UUID, content: bytes, content_type: str | None) -> None:
    try:
        await publisher.publish_document(document_id, content, content_type)
    except JobAlreadyRunning:
        logger.warning("Duplicate processing request rejected | doc=%s", document_id)
        raise


def _accepted(document_id: UUID) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=ProcessAcceptedResponse(document_id=document_id).model_dump(mode="json"),
        headers={"Location": f"/api/v1/documents/{document_id}/status"},
    )


def _error(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
