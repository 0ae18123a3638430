"""
Integration Tests — HTTP API
════════════════════════════
Drives the FastAPI app through httpx's ASGI transport with every external
dependency overridden (see app_with_overrides in conftest.py):

  repositories → in-memory fakes
  publisher    → AsyncMock (asserts what would be queued)
  classifier / query pipeline → mocks

Coverage targets:
  ✅ Two-phase upload: 201 create → 202 process (+ Location header)
  ✅ 400 empty file, 404 wrong owner, 409 not pending, 409 job running
  ✅ URL ingestion 202; Google Docs → 400
  ✅ Status / list / delete
  ✅ Retry only from status=error; url documents refetch without a file
  ✅ Retry that cannot be dispatched puts the document back in error
  ✅ Folder list / merge / parent; classify always 200
  ✅ Conversations + query, provider errors mapped to 429 / 502
  ✅ Structured 422 body
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from app.core.errors import (
    ConversationNotFound,
    InvalidCredentials,
    JobAlreadyRunning,
    RateLimited,
)
from app.rag.pipeline import QueryAnswer
from app.services.url_ingestion import GOOGLE_DOCS_MESSAGE

API = "/api/v1"


def _upload(user_id, content: bytes = b"Quarterly planning notes.", name: str = "notes.txt"):
    return {
        "data":  {"user_id": str(user_id)},
        "files": {"file": (name, content, "text/plain")},
    }


# ─────────────────────────────────────────────────────────────────────────────
# Two-phase upload
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUploadFlow:

    async def test_create_returns_201_and_pending_record(self, async_client, document_repo, test_user_id):
        response = await async_client.post(f"{API}/documents", json={
            "file_name": "C:\\Users\\me\\roadmap.pdf",
            "file_type": "application/pdf",
            "file_size": 1024,
            "user_id":   str(test_user_id),
        })

        assert response.status_code == 201
        doc = document_repo.docs[uuid.UUID(response.json()["document_id"])]
        assert doc.file_name == "roadmap.pdf"
        assert doc.status == "processing"
        assert doc.processing_stage == "pending"
        assert doc.processing_progress == 0

    async def test_process_returns_202_and_publishes(
        self, async_client, document_repo, mock_publisher, test_user_id,
    ):
        doc = document_repo.add(user_id=test_user_id)

        response = await async_client.post(
            f"{API}/documents/{doc.id}/process", **_upload(test_user_id, b"hello world"),
        )

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "document_id": str(doc.id)}
        assert response.headers["Location"] == f"/api/v1/documents/{doc.id}/status"
        mock_publisher.publish_document.assert_awaited_once_with(doc.id, b"hello world", "text/plain")

    async def test_process_rejects_empty_file(self, async_client, document_repo, mock_publisher, test_user_id):
        doc = document_repo.add(user_id=test_user_id)

        response = await async_client.post(f"{API}/documents/{doc.id}/process", **_upload(test_user_id, b""))

        assert response.status_code == 400
        assert response.json()["error_code"] == "MISSING_FILE"
        mock_publisher.publish_document.assert_not_awaited()

    async def test_process_by_other_user_is_404(
        self, async_client, document_repo, mock_publisher, test_user_id, other_user_id,
    ):
        doc = document_repo.add(user_id=test_user_id)

        response = await async_client.post(f"{API}/documents/{doc.id}/process", **_upload(other_user_id))

        assert response.status_code == 404
        assert response.json()["error_code"] == "DOCUMENT_NOT_FOUND"
        mock_publisher.publish_document.assert_not_awaited()

    async def test_process_when_not_pending_is_409(self, async_client, document_repo, test_user_id):
        doc = document_repo.add(user_id=test_user_id, stage="embedding", progress=70)

        response = await async_client.post(f"{API}/documents/{doc.id}/process", **_upload(test_user_id))

        assert response.status_code == 409
        assert response.json()["error_code"] == "DOCUMENT_NOT_PENDING"

    async def test_duplicate_job_is_409(self, async_client, document_repo, mock_publisher, test_user_id):
        doc = document_repo.add(user_id=test_user_id)
        mock_publisher.publish_document.side_effect = JobAlreadyRunning()

        response = await async_client.post(f"{API}/documents/{doc.id}/process", **_upload(test_user_id))

        assert response.status_code == 409
        assert response.json()["error_code"] == "JOB_ALREADY_RUNNING"

    async def test_unknown_document_is_404(self, async_client, test_user_id):
        response = await async_client.post(f"{API}/documents/{uuid.uuid4()}/process", **_upload(test_user_id))
        assert response.status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# URL ingestion
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUrlIngestion:

    async def test_url_is_accepted(self, async_client, document_repo, mock_publisher, test_user_id):
        response = await async_client.post(f"{API}/documents/url", json={
            "url": "https://example.com/blog/post", "user_id": str(test_user_id),
        })

        assert response.status_code == 202
        doc = document_repo.docs[uuid.UUID(response.json()["document_id"])]
        assert doc.file_name == "example.com_blog_post"
        assert doc.file_type == "url"
        assert doc.source_type == "url"
        assert doc.content_url == "https://example.com/blog/post"
        mock_publisher.publish_url.assert_awaited_once_with(doc.id, "https://example.com/blog/post")

    async def test_google_docs_is_rejected(self, async_client, document_repo, mock_publisher, test_user_id):
        response = await async_client.post(f"{API}/documents/url", json={
            "url": "https://docs.google.com/document/d/abc", "user_id": str(test_user_id),
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_URL"
        assert response.json()["message"] == GOOGLE_DOCS_MESSAGE
        assert document_repo.docs == {}
        mock_publisher.publish_url.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Status / list / delete / retry
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestDocumentLifecycle:

    async def test_status(self, async_client, document_repo, test_user_id):
        doc = document_repo.add(user_id=test_user_id, stage="chunking", progress=33)

        response = await async_client.get(f"{API}/documents/{doc.id}/status")

        assert response.status_code == 200
        body = response.json()
        assert body["document_id"] == str(doc.id)
        assert body["status"] == "processing"
        assert body["processing_stage"] == "chunking"
        assert body["processing_progress"] == 33

    async def test_status_for_other_user_is_404(self, async_client, document_repo, test_user_id, other_user_id):
        doc = document_repo.add(user_id=test_user_id)
        response = await async_client.get(
            f"{API}/documents/{doc.id}/status", params={"user_id": str(other_user_id)},
        )
        assert response.status_code == 404

    async def test_list_only_own_documents(self, async_client, document_repo, test_user_id, other_user_id):
        mine = document_repo.add(user_id=test_user_id, file_name="mine.txt")
        document_repo.add(user_id=other_user_id, file_name="theirs.txt")

        response = await async_client.get(f"{API}/documents", params={"user_id": str(test_user_id)})

        assert response.status_code == 200
        assert [d["id"] for d in response.json()["documents"]] == [str(mine.id)]

    async def test_delete(self, async_client, document_repo, test_user_id):
        doc = document_repo.add(user_id=test_user_id)

        response = await async_client.delete(f"{API}/documents/{doc.id}", params={"user_id": str(test_user_id)})
        assert response.status_code == 204
        assert doc.id not in document_repo.docs

        again = await async_client.delete(f"{API}/documents/{doc.id}", params={"user_id": str(test_user_id)})
        assert again.status_code == 404

    async def test_retry_requires_error_status(self, async_client, document_repo, test_user_id):
        doc = document_repo.add(user_id=test_user_id, status="ready", stage="complete", progress=100)

        response = await async_client.post(f"{API}/documents/{doc.id}/retry", **_upload(test_user_id))

        assert response.status_code == 409
        assert response.json()["error_code"] == "RETRY_NOT_ALLOWED"

    async def test_retry_failed_upload(self, async_client, document_repo, mock_publisher, test_user_id):
        doc = document_repo.add(user_id=test_user_id)
        await document_repo.mark_error(doc.id, "Network error - check your connection and try again")

        response = await async_client.post(
            f"{API}/documents/{doc.id}/retry", **_upload(test_user_id, b"second try"),
        )

        assert response.status_code == 202
        assert doc.status == "processing"
        assert doc.processing_stage == "pending"
        assert doc.error_message is None
        mock_publisher.publish_document.assert_awaited_once_with(doc.id, b"second try", "text/plain")

    async def test_retry_upload_without_file_is_400(self, async_client, document_repo, test_user_id):
        doc = document_repo.add(user_id=test_user_id)
        await document_repo.mark_error(doc.id, "boom")

        response = await async_client.post(
            f"{API}/documents/{doc.id}/retry", data={"user_id": str(test_user_id)},
        )

        assert response.status_code == 400
        assert doc.status == "error"

    async def test_retry_rejected_by_running_job_restores_error(
        self, async_client, document_repo, mock_publisher, test_user_id,
    ):
        doc = document_repo.add(user_id=test_user_id)
        await document_repo.mark_error(doc.id, "Processing timeout - file may be too large")
        mock_publisher.publish_document.side_effect = JobAlreadyRunning()

        response = await async_client.post(
            f"{API}/documents/{doc.id}/retry", **_upload(test_user_id, b"second try"),
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "JOB_ALREADY_RUNNING"
        assert doc.status == "error"
        assert doc.error_message == "Processing timeout - file may be too large"

    async def test_retry_with_broker_down_restores_error(
        self, async_client, document_repo, mock_publisher, test_user_id,
    ):
        doc = document_repo.add(
            user_id=test_user_id, file_type="url", source_type="url",
            content_url="https://example.com/post",
        )
        await document_repo.mark_error(doc.id, "Could not load URL (HTTP 503)")
        mock_publisher.publish_url.side_effect = ConnectionError("broker unreachable")

        with pytest.raises(ConnectionError):
            await async_client.post(f"{API}/documents/{doc.id}/retry", data={"user_id": str(test_user_id)})

        assert doc.status == "error"
        assert doc.error_message == "Could not load URL (HTTP 503)"

    async def test_retry_url_document_refetches(self, async_client, document_repo, mock_publisher, test_user_id):
        doc = document_repo.add(
            user_id=test_user_id, file_type="url", source_type="url",
            content_url="https://example.com/post",
        )
        await document_repo.mark_error(doc.id, "Could not load URL (HTTP 503)")

        response = await async_client.post(
            f"{API}/documents/{doc.id}/retry", data={"user_id": str(test_user_id)},
        )

        assert response.status_code == 202
        mock_publisher.publish_url.assert_awaited_once_with(doc.id, "https://example.com/post")


# ─────────────────────────────────────────────────────────────────────────────
# Folders
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestFolders:

    async def test_list_folders(self, async_client, document_repo, test_user_id, other_user_id):
        document_repo.add(user_id=test_user_id, folder="Strategy")
        document_repo.add(user_id=test_user_id, folder="Legal")
        document_repo.add(user_id=other_user_id, folder="Secret")

        response = await async_client.get(f"{API}/folders", params={"user_id": str(test_user_id)})

        assert response.json() == {"folders": ["Legal", "Strategy"]}

    async def test_merge_folders(self, async_client, document_repo, test_user_id):
        a = document_repo.add(user_id=test_user_id, folder="AI")
        b = document_repo.add(user_id=test_user_id, folder="Machine Learning")
        c = document_repo.add(user_id=test_user_id, folder="Legal")

        response = await async_client.post(f"{API}/folders/merge", json={
            "user_id": str(test_user_id),
            "source_folders": ["AI", "Machine Learning"],
            "target_folder": "AI & ML",
        })

        assert response.json() == {"documents_updated": 2}
        assert (a.folder, b.folder, c.folder) == ("AI & ML", "AI & ML", "Legal")

    async def test_set_and_clear_parent(self, async_client, document_repo, test_user_id):
        doc = document_repo.add(user_id=test_user_id, folder="Contracts")

        await async_client.post(f"{API}/folders/parent", json={
            "user_id": str(test_user_id), "folders": ["Contracts"], "parent_folder": "Legal",
        })
        assert doc.parent_folder == "Legal"

        response = await async_client.post(f"{API}/folders/parent", json={
            "user_id": str(test_user_id), "folders": ["Contracts"], "parent_folder": None,
        })
        assert response.json() == {"documents_updated": 1}
        assert doc.parent_folder is None

    async def test_classify(self, async_client, mock_classifier):
        response = await async_client.post(f"{API}/classify", json={
            "text": "Quarterly revenue numbers", "file_name": "q3.xlsx", "existing_folders": ["Finance"],
        })

        assert response.status_code == 200
        assert response.json() == {"folder": "Research"}
        mock_classifier.classify.assert_awaited_once_with(
            "Quarterly revenue numbers", "q3.xlsx", ["Finance"],
        )


# ─────────────────────────────────────────────────────────────────────────────
# Conversations + query
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestQueryApi:

    async def test_create_conversation_and_list_messages(self, async_client, conversation_repo, test_user_id):
        response = await async_client.post(f"{API}/conversations", json={
            "user_id": str(test_user_id), "title": "Roadmap questions",
        })
        assert response.status_code == 201
        conversation_id = uuid.UUID(response.json()["id"])

        await conversation_repo.append_messages(conversation_id, test_user_id, [
            ("user", "What ships first?", []),
            ("assistant", "Chunking changes.", [{"document_id": "d1"}]),
        ])
        messages = await async_client.get(f"{API}/conversations/{conversation_id}/messages")

        assert messages.status_code == 200
        body = messages.json()["messages"]
        assert [(m["role"], m["content"]) for m in body] == [
            ("user", "What ships first?"), ("assistant", "Chunking changes."),
        ]
        assert body[1]["sources"] == [{"document_id": "d1"}]

    async def test_messages_of_unknown_conversation(self, async_client):
        response = await async_client.get(f"{API}/conversations/{uuid.uuid4()}/messages")
        assert response.status_code == 404
        assert response.json()["error_code"] == "CONVERSATION_NOT_FOUND"

    async def test_query_returns_answer_and_sources(self, async_client, mock_pipeline):
        conversation_id = uuid.uuid4()
        mock_pipeline.answer = AsyncMock(return_value=QueryAnswer(
            answer="According to Strategy / roadmap.pdf, folders ship first.",
            sources=[{
                "document_id": "d1", "document_name": "roadmap.pdf", "folder": "Strategy",
                "chunk_index": 2, "similarity": 0.81,
            }],
            conversation_id=conversation_id,
        ))

        response = await async_client.post(f"{API}/query", json={
            "query": "What ships first?", "conversation_id": str(conversation_id),
        })

        assert response.status_code == 200
        body = response.json()
        assert body["answer"].startswith("According to Strategy / roadmap.pdf")
        assert body["sources"][0]["chunk_index"] == 2
        mock_pipeline.answer.assert_awaited_once_with("What ships first?", conversation_id)

    @pytest.mark.parametrize("error,status_code,error_code", [
        (ConversationNotFound(), 404, "CONVERSATION_NOT_FOUND"),
        (RateLimited(),          429, "RATE_LIMITED"),
        (InvalidCredentials(),   502, "INVALID_CREDENTIALS"),
    ])
    async def test_query_errors(self, async_client, mock_pipeline, error, status_code, error_code):
        mock_pipeline.answer = AsyncMock(side_effect=error)

        response = await async_client.post(f"{API}/query", json={
            "query": "anything", "conversation_id": str(uuid.uuid4()),
        })

        assert response.status_code == status_code
        assert response.json()["error_code"] == error_code
        assert response.json()["message"] == error.user_message

    async def test_empty_query_is_422(self, async_client):
        response = await async_client.post(f"{API}/query", json={
            "query": "", "conversation_id": str(uuid.uuid4()),
        })
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.integration
class TestOperations:

    async def test_health(self, async_client):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_request_id_is_echoed(self, async_client):
        response = await async_client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    async def test_invalid_create_body_is_422(self, async_client, test_user_id):
        response = await async_client.post(f"{API}/documents", json={
            "file_name": "a.txt", "file_type": "text/plain", "file_size": -1, "user_id": str(test_user_id),
        })
        assert response.status_code == 422
        assert response.json()["details"][0]["code"] == "VALIDATION_ERROR"
