"""
API tests for the Xero, sync, cash-flow and health routes.

The database session is replaced with a mock through dependency overrides;
Xero and Redis calls are patched.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from bookkeeping.database import get_db
from bookkeeping.main import app
from bookkeeping.models import OAuthState
from bookkeeping.sync import routes as sync_routes
from bookkeeping.xero import dependencies
from bookkeeping.xero.dependencies import require_connection
from bookkeeping.health import routes as health_routes


API = "/api/v1"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def client(mock_db):
    async def override_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def connected(connection):
    app.dependency_overrides[require_connection] = lambda: connection
    return connection


# =============================================================================
# Xero connection
# =============================================================================

class TestXeroRoutes:
    """Connection status and OAuth start."""

    def test_status_without_connection(self, client):
        response = client.get(f"{API}/xero/status")

        assert response.status_code == 200
        assert response.json()["is_connected"] is False

    def test_auth_stores_state(self, client, mock_db):
        response = client.get(f"{API}/xero/auth")

        assert response.status_code == 200
        data = response.json()
        assert "client_id=test-client-id" in data["auth_url"]
        assert f"state={data['state']}" in data["auth_url"]
        stored = mock_db.add.call_args.args[0]
        assert isinstance(stored, OAuthState)
        assert stored.state == data["state"]
        mock_db.commit.assert_awaited()

    def test_callback_error_is_escaped_in_redirect(self, client):
        response = client.get(
            f"{API}/xero/auth/callback",
            params={"error": "access_denied&connected=true"},
            follow_redirects=False,
        )

        assert response.status_code == 307
        location = response.headers["location"]
        assert location.endswith("/bookkeeping?error=access_denied%26connected%3Dtrue")

    def test_callback_with_unknown_state(self, client):
        response = client.get(f"{API}/xero/auth/callback", params={"code": "abc", "state": "nope"})

        assert response.status_code == 400


# =============================================================================
# Sync
# =============================================================================

class TestSyncRoutes:
    """Sync triggers and progress."""

    def test_sync_requires_connection(self, client):
        with patch.object(dependencies, "get_active_connection", AsyncMock(return_value=None)):
            response = client.post(f"{API}/xero/sync")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Xero is not connected. Please connect to Xero."

    def test_sync_runs_perform_sync(self, client, connected):
        summary = {"sync_type": "incremental", "gl_accounts": 2, "transactions": 10}
        with patch.object(sync_routes, "perform_sync", AsyncMock(return_value=summary)) as perform:
            response = client.post(f"{API}/xero/sync", json={"force_full_sync": True})

        assert response.status_code == 200
        assert response.json()["transactions"] == 10
        assert perform.call_args.kwargs == {"force_full_sync": True}

    def test_historical_sync_rejects_reversed_dates(self, client, connected):
        response = client.post(
            f"{API}/xero/sync/historical",
            json={"start_date": "2024-02-01", "end_date": "2024-01-01"},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "start_date must be on or before end_date" in error["details"][0]["msg"]

    def test_historical_resume_requires_sync_id(self, client, connected):
        response = client.post(f"{API}/xero/sync/historical", json={"resume": True})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "sync_id is required to resume a sync" in error["details"][0]["msg"]

    def test_unknown_progress_is_404(self, client):
        response = client.get(f"{API}/xero/sync/progress/hist_missing")

        assert response.status_code == 404

    def test_historical_sync_queued(self, client, connected):
        with patch.object(sync_routes, "run_historical_sync", AsyncMock()) as run:
            response = client.post(f"{API}/xero/sync/historical", json={})

        assert response.status_code == 202
        sync_id = response.json()["sync_id"]
        assert sync_id.startswith("hist")
        assert run.call_args.args[0] == sync_id
        assert sync_routes.progress_store.get(sync_id) is not None


# =============================================================================
# Cash flow
# =============================================================================

class TestCashFlowRoutes:
    """Budget endpoints."""

    def test_delete_missing_budget(self, client):
        response = client.delete(f"{API}/cashflow/budgets/budget_missing")

        assert response.status_code == 404

    def test_invalid_month_filter(self, client):
        response = client.get(f"{API}/cashflow/budgets", params={"start_month": "2024-1"})

        assert response.status_code == 400


# =============================================================================
# Health
# =============================================================================

class TestHealth:
    """Dependency reachability."""

    def test_healthy(self, client):
        redis = MagicMock()
        redis.ping = AsyncMock(return_value=True)
        with patch.object(health_routes, "get_redis", return_value=redis):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "checks": {"database": "ok", "redis": "ok"}}

    def test_redis_down(self, client):
        from redis.exceptions import ConnectionError as RedisConnectionError

        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        with patch.object(health_routes, "get_redis", return_value=redis):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["checks"]["redis"] == "error"
