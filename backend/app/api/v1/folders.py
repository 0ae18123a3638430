"""
Folder & Classification API

GET  /api/v1/folders?user_id=   distinct folder labels of a user
POST /api/v1/folders/merge      rename several folders to one target
POST /api/v1/folders/parent     group folders under a parent (null clears)
POST /api/v1/classify           suggest a folder for a text sample

Folder changes are applied to documents and their chunks together so chunk
metadata used at query time stays consistent with the documents table.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Query

from app.api.dependencies import Classifier, Documents
from app.schemas.documents import (
    ClassifyRequest,
    ClassifyResponse,
    FolderListResponse,
    FolderUpdateResponse,
    MergeFoldersRequest,
    ParentFolderRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Folders"])


@router.get("/folders", response_model=FolderListResponse, summary="List folder labels")
async def list_folders(documents: Documents, user_id: UUID = Query(...)) -> FolderListResponse:
    return FolderListResponse(folders=await documents.existing_folders(user_id))


@router.post("/folders/merge", response_model=FolderUpdateResponse, summary="Merge folders")
async def merge_folders(body: MergeFoldersRequest, documents: Documents) -> FolderUpdateResponse:
    updated = await documents.merge_folders(body.user_id, body.source_folders, body.target_folder)
    logger.info(
        "Folders merged | user=%s sources=%d target=%s documents=%d",
        body.user_id, len(body.source_folders), body.target_folder, updated,
    )
    return FolderUpdateResponse(documents_updated=updated)


@router.post("/folders/parent", response_model=FolderUpdateResponse, summary="Set parent folder")
async def set_parent_folder(body: ParentFolderRequest, documents: Documents) -> FolderUpdateResponse:
    updated = await documents.set_parent_folder(body.user_id, body.folders, body.parent_folder)
    return FolderUpdateResponse(documents_updated=updated)


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    summary="Suggest a folder for a document",
    description="Always returns 200; any classification failure yields 'Uncategorized'.",
)
async def classify(body: ClassifyRequest, classifier: Classifier) -> ClassifyResponse:
    folder = await classifier.classify(body.text, body.file_name, body.existing_folders)
    return ClassifyResponse(folder=folder)
