"""HTTP tests for the FastAPI surface, backed by an in-memory pipeline."""
import time

import pytest
from fastapi.testclient import TestClient

from config import settings
from core.domain import IndexingConfig
from infrastructure.memory_store import InMemoryStorageAdapter
from main import create_app
from services.pipeline import IndexingPipeline, PipelineAdapters

USER = "user-1"


@pytest.fixture
def client():
    pipeline = IndexingPipeline(PipelineAdapters(storage=InMemoryStorageAdapter()), config=IndexingConfig())
    with TestClient(create_app(pipeline=pipeline)) as test_client:
        yield test_client


def wait_for(client, document_id):
    """Poll progress until indexing finishes."""
    for _ in range(300):
        body = client.get(f"/documents/{document_id}/progress").json()
        if body["stage"] in ("complete", "failed"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"Indexing of {document_id} did not finish")


def index(client, filename="notes.md", content="# Notes\n\nRemember the auth rollout.", **extra):
    response = client.post("/documents", json={"user_id": USER, "filename": filename, "content": content, **extra})
    assert response.status_code == 202
    document_id = response.json()["document_id"]
    assert wait_for(client, document_id)["stage"] == "complete"
    return document_id


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


class TestIndexingEndpoints:

    def test_index_then_fetch(self, client):
        document_id = index(client, project_id="proj-1")
        response = client.get(f"/documents/{document_id}", params={"user_id": USER})
        assert response.status_code == 200
        body = response.json()
        assert body["filename"] == "notes.md"
        assert body["filetype"] == "markdown"
        assert body["source_project_id"] == "proj-1"
        assert body["chunk_count"] == len(body["chunks"]) >= 1
        assert body["version_count"] == 1

    def test_progress_is_available_immediately(self, client):
        response = client.post("/documents", json={"user_id": USER, "filename": "a.md", "content": "# A"})
        progress = client.get(f"/documents/{response.json()['document_id']}/progress")
        assert progress.status_code == 200
        wait_for(client, response.json()["document_id"])

    def test_unsupported_type_is_rejected(self, client):
        response = client.post("/documents", json={"user_id": USER, "filename": "photo.png", "content": "x"})
        assert response.status_code == 415

    def test_background_failure_is_reported(self, client):
        response = client.post("/documents", json={"user_id": USER, "filename": "page.html", "content": "<p>x</p>"})
        assert response.status_code == 202
        progress = wait_for(client, response.json()["document_id"])
        assert progress["stage"] == "failed"
        assert progress["error_code"] == "UNSUPPORTED_TYPE"

    def test_oversized_document(self, client, monkeypatch):
        monkeypatch.setattr(settings, "MAX_FILE_SIZE", 10)
        response = client.post("/documents", json={"user_id": USER, "filename": "a.md", "content": "x" * 20})
        assert response.status_code == 413

    def test_missing_fields(self, client):
        assert client.post("/documents", json={"user_id": USER, "content": "x"}).status_code == 422

    def test_unknown_progress(self, client):
        assert client.get("/documents/unknown/progress").status_code == 404

    def test_reindex(self, client):
        document_id = index(client)
        response = client.put(f"/documents/{document_id}", json={
            "user_id": USER, "filename": "notes.md", "content": "# Notes\n\nUpdated.",
        })
        assert response.status_code == 202
        assert wait_for(client, document_id)["stage"] == "complete"
        body = client.get(f"/documents/{document_id}", params={"user_id": USER}).json()
        assert body["version_count"] == 2

    def test_reindex_of_another_users_document(self, client):
        document_id = index(client)
        response = client.put(f"/documents/{document_id}", json={
            "user_id": "user-2", "filename": "notes.md", "content": "# Taken over",
        })
        assert response.status_code == 404
        body = client.get(f"/documents/{document_id}", params={"user_id": USER}).json()
        assert body["version_count"] == 1

    def test_reindex_unknown_document(self, client):
        response = client.put("/documents/3f2b6c1e-0000-4000-8000-000000000000", json={
            "user_id": USER, "filename": "notes.md", "content": "x",
        })
        assert response.status_code == 404


class TestDocumentEndpoints:

    def test_invalid_id(self, client):
        assert client.get("/documents/not-a-uuid", params={"user_id": USER}).status_code == 422

    def test_other_user_gets_404(self, client):
        document_id = index(client)
        assert client.get(f"/documents/{document_id}", params={"user_id": "user-2"}).status_code == 404

    def test_delete(self, client):
        document_id = index(client)
        assert client.delete(f"/documents/{document_id}", params={"user_id": USER}).status_code == 200
        assert client.get(f"/documents/{document_id}", params={"user_id": USER}).status_code == 404
        assert client.delete(f"/documents/{document_id}", params={"user_id": USER}).status_code == 404

    def test_related(self, client):
        first = index(client, filename="one.md", content="# Same\n\nIdentical body.")
        second = index(client, filename="two.md", content="# Same\n\nIdentical body.")
        response = client.get(f"/documents/{second}/related", params={"user_id": USER})
        assert [d["id"] for d in response.json()] == [first]

    def test_stats(self, client):
        index(client)
        body = client.get(f"/stats/{USER}").json()
        assert body["document_count"] == 1
        assert body["chunk_count"] >= 1


class TestQueryEndpoint:

    def test_name_query(self, client):
        document_id = index(client, filename="auth.md")
        response = client.post("/query", json={"mode": "name", "user_id": USER, "query": "auth"})
        assert response.status_code == 200
        results = response.json()["results"]
        assert results[0]["document"]["id"] == document_id
        assert results[0]["score"] == 1.0

    def test_time_query(self, client):
        document_id = index(client)
        response = client.post("/query", json={
            "mode": "time", "user_id": USER,
            "start": "2000-01-01T00:00:00Z", "end": "2100-01-01T00:00:00Z",
        })
        assert [d["id"] for d in response.json()["documents"]] == [document_id]

    def test_cross_project_query(self, client):
        index(client, filename="a.md", content="# API Design\n\nREST.", project_id="p1")
        index(client, filename="b.md", content="# API Design\n\nRPC.", project_id="p2")
        response = client.post("/query", json={
            "mode": "cross-project", "user_id": USER, "projects": ["p1", "p2"], "topic": "API",
        })
        assert response.json()["comparison"]["common_themes"] == ["API Design"]

    @pytest.mark.parametrize("payload", [
        {"mode": "name", "user_id": USER},
        {"mode": "time", "user_id": USER},
        {"mode": "cross-project", "user_id": USER, "topic": "api"},
    ])
    def test_invalid_queries(self, client, payload):
        response = client.post("/query", json=payload)
        assert response.status_code == 422
        assert "INVALID_QUERY" in response.json()["detail"]
