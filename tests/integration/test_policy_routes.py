"""Integration tests for policy and QA API routes."""

from collections.abc import AsyncGenerator, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from backend.app.api.deps import get_completion_client, get_embedder
from backend.app.config import Settings, get_settings
from backend.app.db.engine import get_session
from backend.app.db.models import Base
from backend.app.embeddings.client import Embedder
from backend.app.llm.client import DeterministicStubClient
from backend.app.main import app

REMOTE_POLICY = (
    "Employees may work remotely up to three days per week. Home office requirements: "
    "a dedicated desk and a reliable internet connection."
)
CONDUCT_POLICY = (
    "Harassment of any kind is prohibited. Report unethical behavior to the ethics hotline."
)

ACME = {"Authorization": "Bearer acme:alice"}
GLOBEX = {"Authorization": "Bearer globex:bob"}


@pytest.fixture
def client(keyword_embedder: Embedder) -> Generator[TestClient, None, None]:
    """Test client over a fresh in-memory database.

    Tables are created lazily inside the client's event loop.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    created = False

    async def override_session() -> AsyncGenerator[AsyncSession, None]:
        nonlocal created
        if not created:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            created = True
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_embedder] = lambda: keyword_embedder
    app.dependency_overrides[get_completion_client] = lambda: DeterministicStubClient()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _upload(client: TestClient, title: str, content: str, **extra: object) -> str:
    headers = extra.pop("headers", ACME)
    response = client.post(
        "/policies",
        json={"title": title, "content": content, **extra},
        headers=headers,  # type: ignore[arg-type]
    )
    assert response.status_code == 201, response.text
    policy_id: str = response.json()["policy_id"]
    return policy_id


class TestUpload:
    def test_create_policy_returns_201(self, client: TestClient) -> None:
        response = client.post(
            "/policies",
            json={"title": "Remote Work Policy", "content": REMOTE_POLICY, "category": "Remote Work"},
            headers=ACME,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["version"] == 1
        assert data["chunk_count"] == 1

    def test_empty_title_returns_422(self, client: TestClient) -> None:
        response = client.post("/policies", json={"title": "", "content": REMOTE_POLICY})

        assert response.status_code == 422

    def test_blank_content_returns_422_naming_stage(self, client: TestClient) -> None:
        response = client.post("/policies", json={"title": "Blank", "content": "   "})

        assert response.status_code == 422
        assert "chunking failed" in response.json()["detail"]

    def test_embedding_outage_returns_502(self, client: TestClient, failing_embedder: Embedder) -> None:
        app.dependency_overrides[get_embedder] = lambda: failing_embedder

        response = client.post("/policies", json={"title": "Remote", "content": REMOTE_POLICY})

        assert response.status_code == 502
        assert "embedding failed" in response.json()["detail"]

    def test_invalid_token_returns_401(self, client: TestClient) -> None:
        response = client.post(
            "/policies",
            json={"title": "Remote", "content": REMOTE_POLICY},
            headers={"Authorization": "Bearer nocolon"},
        )

        assert response.status_code == 401

    def test_upload_text_file_records_file_metadata(self, client: TestClient) -> None:
        """Test that a .txt upload is ingested with its name, type and size."""
        body = REMOTE_POLICY.encode("utf-8")

        response = client.post(
            "/policies/upload",
            data={"title": "Remote Work Policy", "category": "Remote Work"},
            files={"file": ("remote.txt", body, "text/plain")},
            headers=ACME,
        )

        assert response.status_code == 201, response.text
        detail = client.get(f"/policies/{response.json()['policy_id']}", headers=ACME).json()
        assert detail["content"] == REMOTE_POLICY
        assert detail["metadata"]["file_name"] == "remote.txt"
        assert detail["metadata"]["file_type"] == "text/plain"
        assert detail["metadata"]["file_size"] == len(body)
        assert detail["metadata"]["uploaded_by"] == "alice"

    def test_upload_rejects_unsupported_type(self, client: TestClient) -> None:
        response = client.post(
            "/policies/upload",
            data={"title": "Remote Work Policy"},
            files={"file": ("remote.pdf", b"%PDF-1.4", "application/pdf")},
            headers=ACME,
        )

        assert response.status_code == 400
        assert "Invalid file type" in response.json()["detail"]

    def test_upload_rejects_non_utf8_content(self, client: TestClient) -> None:
        response = client.post(
            "/policies/upload",
            data={"title": "Remote Work Policy"},
            files={"file": ("remote.md", b"\xff\xfe\xfa policy", "text/markdown")},
            headers=ACME,
        )

        assert response.status_code == 400

    def test_upload_over_limit_returns_413(self, client: TestClient) -> None:
        app.dependency_overrides[get_settings] = lambda: Settings(max_upload_bytes=16)

        response = client.post(
            "/policies/upload",
            data={"title": "Remote Work Policy"},
            files={"file": ("remote.txt", REMOTE_POLICY.encode("utf-8"), "text/plain")},
            headers=ACME,
        )

        assert response.status_code == 413


class TestReads:
    def test_list_policies_is_tenant_scoped(self, client: TestClient) -> None:
        _upload(client, "Remote Work Policy", REMOTE_POLICY, category="Remote Work")
        _upload(client, "Code of Conduct", CONDUCT_POLICY, category="Code of Conduct")
        _upload(client, "Globex Policy", REMOTE_POLICY, headers=GLOBEX)

        response = client.get("/policies", headers=ACME)
        filtered = client.get("/policies", params={"category": "conduct"}, headers=ACME)

        assert response.status_code == 200
        assert [p["title"] for p in response.json()["policies"]] == [
            "Code of Conduct",
            "Remote Work Policy",
        ]
        assert [p["title"] for p in filtered.json()["policies"]] == ["Code of Conduct"]

    def test_get_policy_returns_chunks_without_embeddings(self, client: TestClient) -> None:
        policy_id = _upload(client, "Remote Work Policy", REMOTE_POLICY)

        response = client.get(f"/policies/{policy_id}", headers=ACME)

        assert response.status_code == 200
        data = response.json()
        assert data["content"] == REMOTE_POLICY
        assert data["status"] == "ACTIVE"
        assert data["chunks"][0]["embedding"] is None

    def test_get_policy_other_tenant_returns_404(self, client: TestClient) -> None:
        policy_id = _upload(client, "Remote Work Policy", REMOTE_POLICY)

        response = client.get(f"/policies/{policy_id}", headers=GLOBEX)

        assert response.status_code == 404

    def test_get_policy_invalid_id_returns_400(self, client: TestClient) -> None:
        response = client.get("/policies/not-a-uuid", headers=ACME)

        assert response.status_code == 400

    def test_stats_counts_chunks(self, client: TestClient) -> None:
        _upload(client, "Remote Work Policy", REMOTE_POLICY)
        _upload(client, "Code of Conduct", CONDUCT_POLICY)

        response = client.get("/policies/stats", headers=ACME)

        assert response.status_code == 200
        assert response.json()["total_chunks"] == 2


class TestSearch:
    def test_search_returns_matching_policy(self, client: TestClient) -> None:
        _upload(client, "Remote Work Policy", REMOTE_POLICY, category="Remote Work")
        _upload(client, "Code of Conduct", CONDUCT_POLICY, category="Code of Conduct")

        response = client.get(
            "/policies/search", params={"query": "home office setup"}, headers=ACME
        )

        assert response.status_code == 200
        data = response.json()
        assert data["method"] == "vector_similarity"
        assert [r["policy"]["title"] for r in data["results"]] == ["Remote Work Policy"]

    def test_search_falls_back_when_provider_down(
        self, client: TestClient, failing_embedder: Embedder
    ) -> None:
        _upload(client, "Remote Work Policy", REMOTE_POLICY)
        app.dependency_overrides[get_embedder] = lambda: failing_embedder

        response = client.get("/policies/search", params={"query": "home office"}, headers=ACME)

        assert response.status_code == 200
        assert response.json()["method"] == "keyword_fallback"
        assert len(response.json()["results"]) == 1

    def test_search_requires_query(self, client: TestClient) -> None:
        response = client.get("/policies/search", headers=ACME)

        assert response.status_code == 422


class TestLifecycle:
    def test_update_content_bumps_version(self, client: TestClient) -> None:
        policy_id = _upload(client, "Remote Work Policy", REMOTE_POLICY)

        response = client.put(
            f"/policies/{policy_id}/content",
            json={"content": CONDUCT_POLICY, "expected_version": 1},
            headers=ACME,
        )

        assert response.status_code == 200
        assert response.json()["version"] == 2
        detail = client.get(f"/policies/{policy_id}", headers=ACME).json()
        assert detail["content"] == CONDUCT_POLICY

    def test_stale_version_returns_409(self, client: TestClient) -> None:
        policy_id = _upload(client, "Remote Work Policy", REMOTE_POLICY)
        client.put(f"/policies/{policy_id}/content", json={"content": CONDUCT_POLICY}, headers=ACME)

        response = client.put(
            f"/policies/{policy_id}/content",
            json={"content": REMOTE_POLICY, "expected_version": 1},
            headers=ACME,
        )

        assert response.status_code == 409

    def test_archive_hides_policy_from_search(self, client: TestClient) -> None:
        policy_id = _upload(client, "Remote Work Policy", REMOTE_POLICY)

        response = client.post(f"/policies/{policy_id}/archive", headers=ACME)
        search = client.get("/policies/search", params={"query": "home office"}, headers=ACME)

        assert response.status_code == 200
        assert response.json()["status"] == "ARCHIVED"
        assert search.json()["results"] == []

    def test_delete_then_get_returns_404(self, client: TestClient) -> None:
        policy_id = _upload(client, "Remote Work Policy", REMOTE_POLICY)

        response = client.delete(f"/policies/{policy_id}", headers=ACME)

        assert response.status_code == 204
        assert client.get(f"/policies/{policy_id}", headers=ACME).status_code == 404
        assert client.delete(f"/policies/{policy_id}", headers=ACME).status_code == 404


class TestPolicyQuestion:
    def test_answer_cites_matching_policy(self, client: TestClient) -> None:
        _upload(client, "Remote Work Policy", REMOTE_POLICY, category="Remote Work")
        _upload(client, "Code of Conduct", CONDUCT_POLICY, category="Code of Conduct")

        response = client.post(
            "/qa/policy", json={"question": "What do I need for my home office?"}, headers=ACME
        )

        assert response.status_code == 200
        data = response.json()
        assert "Remote Work Policy" in data["answer"]
        assert [s["policy"]["title"] for s in data["sources"]] == ["Remote Work Policy"]
        assert data["sources"][0]["excerpt"] == REMOTE_POLICY

    def test_no_match_answers_without_sources(self, client: TestClient) -> None:
        _upload(client, "Code of Conduct", CONDUCT_POLICY)

        response = client.post(
            "/qa/policy", json={"question": "How much vacation do I get?"}, headers=ACME
        )

        assert response.status_code == 200
        assert response.json()["sources"] == []
        assert "contact HR" in response.json()["answer"]


class TestHealthAndMetrics:
    def test_health_returns_ok(self, client: TestClient) -> None:
        assert client.get("/health").json() == {"status": "ok"}

    def test_healthz_reports_db_and_breaker(self, client: TestClient) -> None:
        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["components"]["db"] == "ok"
        assert data["components"]["embedding_provider"] == "closed"

    def test_metrics_exposes_pipeline_series(self, client: TestClient) -> None:
        _upload(client, "Remote Work Policy", REMOTE_POLICY)
        client.get("/policies/search", params={"query": "home office"}, headers=ACME)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "policy_pipeline_latency_ms" in response.text
        assert "policy_search_requests_total" in response.text
