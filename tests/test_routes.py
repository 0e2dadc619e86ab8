"""
Tests for API Routes.

Endpoints are exercised through the FastAPI test client with services
replaced via dependency_overrides.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from gateway.api.dependencies import get_ledger, get_orchestrator_builder, get_result_cache
from gateway.exceptions import (
    BlockedError,
    InputValidationError,
    InsufficientCreditsError,
    RateLimitedError,
)
from gateway.models.api import GenerationAction, Plan
from gateway.models.domain import BalanceView, CacheHit, CacheStats, GenerationOutcome
from gateway.services.ledger import CreditLedger
from gateway.services.orchestrator import GenerationOrchestrator
from gateway.services.result_cache import ResultCache
from conftest import FIXED_NOW


@pytest.fixture
def orchestrator() -> AsyncMock:
    orchestrator = AsyncMock(spec=GenerationOrchestrator)
    orchestrator.run.return_value = GenerationOutcome(
        request_id="tryon-1-abcd",
        result="https://signed/out.png",
        cached=False,
        cache_id="cache-1",
        total_ms=4200,
        provider_ms=3900,
        breakdown={"provider": 3900},
    )
    return orchestrator


@pytest.fixture
def built_actions() -> list[GenerationAction]:
    return []


@pytest.fixture
def api(client: TestClient, app, mock_identity_dependency, orchestrator, built_actions) -> TestClient:
    """Client with auth and orchestrator overridden."""

    def override_builder():
        def build(action: GenerationAction):
            built_actions.append(action)
            return orchestrator

        return build

    app.dependency_overrides.update(mock_identity_dependency)
    app.dependency_overrides[get_orchestrator_builder] = override_builder
    return client


def balance_view(balance: int = 4, plan: Plan = Plan.FREE) -> BalanceView:
    return BalanceView(
        user_id="user-123",
        balance=balance,
        plan=plan,
        allotment=4,
        period_start=FIXED_NOW.replace(hour=0),
        next_reset_at=FIXED_NOW.replace(hour=0) + timedelta(days=1),
        timezone="UTC",
    )


class TestGenerationRoutes:
    """Tests for the three generation endpoints."""

    @pytest.mark.parametrize(
        ("path", "action"),
        [
            ("/v1/generate/tryon", GenerationAction.TRYON),
            ("/v1/generate/video", GenerationAction.VIDEO),
            ("/v1/generate/model3d", GenerationAction.MODEL3D),
        ],
    )
    def test_dispatches_action(self, api, built_actions, path, action):
        response = api.post(path, content=b'{"image": "x"}')

        assert response.status_code == 200
        assert built_actions == [action]

    def test_success_body(self, api, orchestrator):
        response = api.post(
            "/v1/generate/tryon",
            content=b'{"personImage": "a", "garmentImage": "b"}',
            headers={"X-Request-ID": "client-req-1", "X-Request-Signature": "abc"},
        )

        data = response.json()
        assert data["success"] is True
        assert data["result"] == "https://signed/out.png"
        assert data["cached"] is False
        assert data["timing"]["provider_ms"] == 3900

        identity, headers, body = orchestrator.run.await_args.args
        assert identity.user_id == "user-123"
        assert headers["X-Request-Signature"] == "abc"
        assert body == b'{"personImage": "a", "garmentImage": "b"}'
        assert orchestrator.run.await_args.kwargs["request_id"] == "client-req-1"

    def test_rate_limited_response(self, api, orchestrator):
        orchestrator.run.side_effect = RateLimitedError(
            "identity", retry_after=30, limit=10, remaining=0
        )

        response = api.post("/v1/generate/tryon", content=b"{}")

        assert response.status_code == 429
        assert response.json()["retryAfter"] == 30
        assert response.headers["Retry-After"] == "30"
        assert response.headers["X-RateLimit-Limit"] == "10"

    def test_global_limit_is_503(self, api, orchestrator):
        orchestrator.run.side_effect = RateLimitedError("global", retry_after=45, limit=100)

        response = api.post("/v1/generate/tryon", content=b"{}")

        assert response.status_code == 503
        assert response.json()["retryAfter"] == 45

    def test_insufficient_credits_response(self, api, orchestrator):
        orchestrator.run.side_effect = InsufficientCreditsError(balance=1, required=2)

        response = api.post("/v1/generate/tryon", content=b"{}")

        assert response.status_code == 429
        assert response.json() == {
            "error": "Insufficient credits",
            "credits_remaining": 1,
            "credits_required": 2,
        }

    def test_blocked_response(self, api, orchestrator):
        orchestrator.run.side_effect = BlockedError("Account blocked", score=130)

        response = api.post("/v1/generate/tryon", content=b"{}")

        assert response.status_code == 403
        assert response.json() == {"error": "Account blocked"}

    def test_validation_response_names_field(self, api, orchestrator):
        orchestrator.run.side_effect = InputValidationError("Person image", "Person image too small")

        response = api.post("/v1/generate/tryon", content=b"{}")

        assert response.status_code == 400
        assert response.json()["field"] == "Person image"

    def test_missing_auth_is_401(self, client, app, orchestrator):
        app.dependency_overrides[get_orchestrator_builder] = lambda: (lambda action: orchestrator)

        response = client.post("/v1/generate/tryon", content=b"{}")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        orchestrator.run.assert_not_awaited()


class TestCreditRoutes:
    """Tests for balance and timezone endpoints."""

    @pytest.fixture
    def ledger(self, app, mock_identity_dependency) -> AsyncMock:
        ledger = AsyncMock(spec=CreditLedger)
        app.dependency_overrides.update(mock_identity_dependency)
        app.dependency_overrides[get_ledger] = lambda: ledger
        return ledger

    def test_get_credits(self, client, ledger):
        ledger.get_balance.return_value = balance_view(balance=3)

        response = client.get("/v1/credits")

        assert response.status_code == 200
        data = response.json()
        assert data["balance"] == 3
        assert data["plan"] == "free"
        assert data["can_generate_video"] is False
        assert data["costs"] == {"tryon": 2, "video": 8, "model3d": 2}

    def test_update_timezone(self, client, ledger):
        ledger.update_timezone.return_value = balance_view()

        response = client.put("/v1/credits/timezone", json={"timezone": "Europe/Paris"})

        assert response.status_code == 200
        assert ledger.update_timezone.await_args.args[1] == "Europe/Paris"

    def test_invalid_timezone(self, client, ledger):
        ledger.update_timezone.side_effect = InputValidationError("timezone", "Unknown timezone")

        response = client.put("/v1/credits/timezone", json={"timezone": "Mars/Olympus"})

        assert response.status_code == 400
        assert response.json()["field"] == "timezone"

    def test_missing_body_field_uses_error_shape(self, client, ledger):
        response = client.put("/v1/credits/timezone", json={})

        assert response.status_code == 400
        assert response.json()["field"] == "timezone"


class TestCacheRoutes:
    """Tests for history and stats endpoints."""

    @pytest.fixture
    def cache(self, app, mock_identity_dependency) -> AsyncMock:
        cache = AsyncMock(spec=ResultCache)
        app.dependency_overrides.update(mock_identity_dependency)
        app.dependency_overrides[get_result_cache] = lambda: cache
        return cache

    def test_history(self, client, cache):
        cache.history.return_value = [
            CacheHit(
                cache_id="cache-1",
                fingerprint="f" * 64,
                result="https://signed/a.png",
                pointer="storage:user-123/a.png",
                access_count=2,
                created_at=FIXED_NOW,
                expires_at=FIXED_NOW + timedelta(days=7),
                action="tryon",
                subject_key="dress:42",
            )
        ]

        response = client.get("/v1/tryon/history?limit=10&offset=5")

        assert response.status_code == 200
        data = response.json()
        assert data["limit"] == 10
        assert data["offset"] == 5
        assert data["items"][0]["subject_key"] == "dress:42"
        assert cache.history.await_args.kwargs["action"] == GenerationAction.TRYON

    def test_history_limit_bounds(self, client, cache):
        assert client.get("/v1/tryon/history?limit=0").status_code == 400
        assert client.get("/v1/tryon/history?limit=101").status_code == 400

    def test_stats(self, client, cache):
        cache.stats.return_value = CacheStats(entries=4, hits=7, credits_saved=9)

        response = client.get("/v1/cache/stats")

        assert response.json() == {"entries": 4, "hits": 7, "credits_saved": 9}


class TestHealth:
    """Tests for the health endpoint."""

    def test_healthy(self, client, app, mock_db_dependency):
        app.dependency_overrides.update(mock_db_dependency)

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_database_down(self, client, app, db_session, mock_db_dependency):
        db_session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("down"))
        app.dependency_overrides.update(mock_db_dependency)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["detail"]["database"] == "disconnected"
