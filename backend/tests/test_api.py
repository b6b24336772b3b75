"""
End-to-end API tests with mock providers.

Tests the full flow: API → FeedPoller / TransactionIngestor → Adapters (mocked) → Response
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock
from fastapi.testclient import TestClient

from main import app
from api import set_dependencies, set_rate_limiter
from adapter.errors import EnrichmentUnavailableError, TransientProviderError
from adapter.models import Post, PostAuthor, TimelinePage
from adapter.rate_limiter import RequestScheduler
from adapter.x import XUserNotFoundError
from classifier import EventClassifier
from core import FeedPoller, MonitoredSource, MonitorStore, TransactionIngestor


WALLET = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_x_adapter():
    """Create a mock X adapter that resolves every handle to one account."""
    adapter = Mock()
    adapter.is_configured = True
    adapter.get_user_by_username_async = AsyncMock(
        return_value=PostAuthor(id="12", username="jack", name="Jack")
    )
    adapter.get_user_timeline_async = AsyncMock(return_value=TimelinePage(
        posts=[Post(id="500", author_id="12", text="gm", created_at=datetime(2024, 6, 15, tzinfo=timezone.utc))],
        newest_id="500",
    ))
    return adapter


@pytest.fixture
def mock_market():
    market = Mock()
    market.get_token_info_async = AsyncMock(side_effect=EnrichmentUnavailableError("unknown"))
    market.get_native_price_async = AsyncMock(return_value=100.0)
    return market


@pytest.fixture
def mock_router():
    router = Mock()
    router.route = AsyncMock()
    return router


@pytest.fixture
def store():
    return MonitorStore()


@pytest.fixture
def client(store, mock_x_adapter, mock_market, mock_router):
    """Create test client wired to real services with mocked providers."""
    scheduler = RequestScheduler()
    classifier = EventClassifier(mock_market, store.processed, store.mentions)
    poller = FeedPoller(store, mock_x_adapter, scheduler, classifier, mock_router, poll_interval=300)
    chain = Mock()
    chain.is_configured = True
    chain.update_webhook_addresses_async = AsyncMock(return_value={})
    ingestor = TransactionIngestor(store, classifier, mock_router, chain=chain, scheduler=scheduler)

    set_dependencies(store, poller, ingestor)
    set_rate_limiter(scheduler)

    return TestClient(app)


# ============================================================================
# Health
# ============================================================================

class TestHealth:

    def test_health_endpoint(self, client, store):
        store.add_source(MonitoredSource(id="1", username="a", priority=True))

        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["sources_count"] == 1
        assert data["priority_sources"] == 1
        assert data["poller_running"] is False

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["docs"] == "/docs"


# ============================================================================
# Sources
# ============================================================================

class TestSourceEndpoints:

    def test_subscribe(self, client, store):
        response = client.post("/api/v1/sources", json={"username": "@jack", "priority": True})

        assert response.status_code == 201
        data = response.json()
        assert data["id"] == "12"
        assert data["priority"] is True
        assert store.get_source("12") is not None

    def test_subscribe_duplicate(self, client):
        client.post("/api/v1/sources", json={"username": "jack"})

        response = client.post("/api/v1/sources", json={"username": "jack"})

        assert response.status_code == 400

    def test_subscribe_unknown_user(self, client, mock_x_adapter):
        mock_x_adapter.get_user_by_username_async.side_effect = XUserNotFoundError("User @ghost not found")

        response = client.post("/api/v1/sources", json={"username": "ghost"})

        assert response.status_code == 404

    def test_subscribe_rate_limited(self, client, mock_x_adapter):
        mock_x_adapter.get_user_by_username_async.side_effect = TransientProviderError("Too Many Requests", status_code=429)

        response = client.post("/api/v1/sources", json={"username": "jack"})

        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_subscribe_provider_failure(self, client, mock_x_adapter):
        mock_x_adapter.get_user_by_username_async.side_effect = TransientProviderError("bad gateway", status_code=502)

        response = client.post("/api/v1/sources", json={"username": "jack"})

        assert response.status_code == 502

    def test_list_and_get(self, client):
        client.post("/api/v1/sources", json={"username": "jack"})

        assert len(client.get("/api/v1/sources").json()) == 1
        assert client.get("/api/v1/sources/12").json()["username"] == "jack"
        assert client.get("/api/v1/sources/nope").status_code == 404

    def test_unsubscribe(self, client):
        client.post("/api/v1/sources", json={"username": "jack"})

        assert client.delete("/api/v1/sources/12").status_code == 204
        assert client.delete("/api/v1/sources/12").status_code == 404

    def test_set_priority(self, client):
        client.post("/api/v1/sources", json={"username": "jack"})

        response = client.patch("/api/v1/sources/12/priority", json={"priority": True})

        assert response.status_code == 200
        assert response.json()["priority"] is True
        assert client.patch("/api/v1/sources/nope/priority", json={"priority": True}).status_code == 404

    def test_poll_source(self, client, mock_router):
        client.post("/api/v1/sources", json={"username": "jack"})

        response = client.post("/api/v1/sources/12/poll")

        assert response.status_code == 200
        assert response.json()["alerts"] == 1
        mock_router.route.assert_awaited_once()

    def test_poll_unknown_source(self, client):
        assert client.post("/api/v1/sources/nope/poll").status_code == 404

    def test_poll_all(self, client):
        client.post("/api/v1/sources", json={"username": "jack"})

        response = client.post("/api/v1/poll")

        assert response.status_code == 200
        assert response.json()["success"] is True


# ============================================================================
# Wallets, subscribers and webhook
# ============================================================================

class TestWalletEndpoints:

    def test_track_wallet(self, client):
        response = client.post("/api/v1/wallets", json={"address": WALLET, "added_by": "user-1"})

        assert response.status_code == 201
        assert response.json()["name"] == "9xQe...VFin"
        assert len(client.get("/api/v1/wallets").json()) == 1

    def test_track_invalid_wallet(self, client):
        response = client.post("/api/v1/wallets", json={"address": "not-a-wallet"})
        assert response.status_code == 400

    def test_untrack_wallet(self, client):
        client.post("/api/v1/wallets", json={"address": WALLET})

        assert client.delete(f"/api/v1/wallets/{WALLET}").status_code == 204
        assert client.delete(f"/api/v1/wallets/{WALLET}").status_code == 404


class TestSubscriberEndpoints:

    def test_register_and_remove(self, client):
        response = client.post("/api/v1/sms/subscribers", json={"user_id": "user-1", "phone": "+15550001111"})

        assert response.status_code == 201
        assert response.json()["active"] is True
        assert len(client.get("/api/v1/sms/subscribers").json()) == 1
        assert client.delete("/api/v1/sms/subscribers/user-1").status_code == 204
        assert client.delete("/api/v1/sms/subscribers/user-1").status_code == 404

    def test_invalid_phone(self, client):
        response = client.post("/api/v1/sms/subscribers", json={"user_id": "user-1", "phone": "5550001111"})
        assert response.status_code == 422


class TestWebhookEndpoint:

    def test_webhook_counts(self, client, mock_router):
        client.post("/api/v1/wallets", json={"address": WALLET})

        response = client.post("/api/v1/webhooks/transactions", json=[
            {"account": WALLET, "type": "SWAP", "signature": "s1"},
            {"account": "somebodyelse", "type": "SWAP", "signature": "s2"},
            {"type": "SWAP"},
        ])

        assert response.status_code == 200
        assert response.json() == {"received": 3, "alerts": 1, "skipped": 1, "failed": 1}
        mock_router.route.assert_awaited_once()


# ============================================================================
# Monitoring
# ============================================================================

class TestMonitorEndpoints:

    def test_dashboard_includes_store(self, client):
        response = client.get("/api/v1/monitor/dashboard")

        assert response.status_code == 200
        assert response.json()["store"]["sources"] == 0

    def test_rate_limits(self, client):
        client.post("/api/v1/sources", json={"username": "jack"})

        data = client.get("/api/v1/monitor/rate-limits").json()

        assert "users/by/username" in data["endpoints"]
        assert data["summary"]["total_endpoints"] >= 1

    def test_metrics(self, client):
        response = client.get("/api/v1/monitor/metrics")
        assert response.status_code == 200
        assert "requests" in response.json()

    def test_activity_filter(self, client):
        assert client.get("/api/v1/monitor/activity?event_type=poll").status_code == 200
        assert client.get("/api/v1/monitor/activity?event_type=bogus").status_code == 400
