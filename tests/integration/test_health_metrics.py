"""Integration tests for /healthz and /metrics endpoints."""

from collections.abc import Generator
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from backend.app.main import app
from backend.app.utils.metrics import PrometheusPipelineMetrics


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """Create test client with a closed provider breaker."""
    app.state.quota_breaker.reset()
    yield TestClient(app)
    app.state.quota_breaker.reset()


class TestHealthEndpoint:
    """Test /health and /healthz endpoints."""

    def test_health_always_ok(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @patch("backend.app.api.routes.health.check_db", new_callable=AsyncMock)
    def test_healthz_returns_200_when_db_ok(self, mock_check_db: AsyncMock, client: TestClient) -> None:
        """Test /healthz returns 200 with component status when the DB is healthy."""
        mock_check_db.return_value = (True, "ok")

        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["components"]["db"] == "ok"
        assert data["components"]["embedding_provider"] == "closed"

    @patch("backend.app.api.routes.health.check_db", new_callable=AsyncMock)
    def test_healthz_returns_503_when_db_fails(
        self, mock_check_db: AsyncMock, client: TestClient
    ) -> None:
        """Test /healthz returns 503 when DB check fails."""
        mock_check_db.return_value = (False, "connection refused")

        response = client.get("/healthz")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["db"] == "connection refused"

    @patch("backend.app.api.routes.health.check_db", new_callable=AsyncMock)
    def test_open_breaker_is_reported_but_not_fatal(
        self, mock_check_db: AsyncMock, client: TestClient
    ) -> None:
        """Test that quota exhaustion shows up without failing the health check."""
        mock_check_db.return_value = (True, "ok")
        app.state.quota_breaker.record_quota_exhausted(datetime.now(timezone.utc))

        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["components"]["embedding_provider"] == "open"


class TestMetricsEndpoint:
    """Test /metrics endpoint."""

    def test_metrics_returns_prometheus_format(self, client: TestClient) -> None:
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")

    def test_metrics_include_recorded_series(self, client: TestClient) -> None:
        """Test that recorded pipeline metrics appear in the exposition."""
        metrics = PrometheusPipelineMetrics()
        metrics.record_latency("search", 12.5)
        metrics.inc_embedding_error("timeout")
        metrics.inc_search("keyword_fallback")
        metrics.inc_ingest("ingest", "success")

        content = client.get("/metrics").text

        assert 'policy_pipeline_latency_ms_bucket{le="50.0",stage="search"}' in content
        assert 'embedding_errors_total{reason="timeout"}' in content
        assert 'policy_search_requests_total{method="keyword_fallback"}' in content
        assert 'policy_ingest_total{operation="ingest",outcome="success"}' in content
