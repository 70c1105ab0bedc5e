"""
AIGate - API Layer Tests

Tests for:
- Identity resolution (session tokens, X-User-Id)
- The gated operation endpoint and its status mapping
- Rate limiting
- Usage, admin and health endpoints
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from aigate.core.models import AuditEntry, Identity, utcnow
from aigate.server import OperationParams, build_pipeline, create_app
from aigate.subscription.limits import RateLimiter


class FrozenClock:
    def __call__(self):
        return datetime(2024, 1, 15, 10, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def pipeline(account_store, audit_sink, secret_store, metrics, stub_clients, security_assessor):
    pipeline = build_pipeline(
        account_store,
        audit_sink,
        secret_store,
        metrics=metrics,
        client_factory=stub_clients,
        security_assessor=security_assessor,
    )
    pipeline.subscription_manager.rate_limiter = RateLimiter(clock=FrozenClock())
    return pipeline


@pytest.fixture
def app(pipeline):
    return create_app(pipeline)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def _as(user_id):
    return {"X-User-Id": user_id}


# ============================================================
# Request models
# ============================================================

class TestOperationParams:
    """Tests for the operation request body."""

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            OperationParams(topic="x", model="gpt-4o")

    def test_timeout_bounds(self):
        with pytest.raises(ValidationError):
            OperationParams(topic="x", timeout=0)
        assert OperationParams(topic="x", timeout=12.5).timeout == 12.5


# ============================================================
# Operations
# ============================================================

class TestRunOperation:
    """Tests for POST /v1/ai/{operation}."""

    def test_premium_code_quiz(self, client):
        response = client.post(
            "/v1/ai/quiz-code",
            json={"topic": "Recursion", "count": 2},
            headers=_as("user-premium"),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["usage"]["credits_used"] == 2
        assert body["metadata"]["service"] == "premium"
        assert response.headers["X-Request-Id"] == body["metadata"]["request_id"]

    def test_request_id_header_is_honoured(self, client):
        response = client.post(
            "/v1/ai/quiz-mcq",
            json={"topic": "Owls", "count": 1},
            headers={**_as("user-basic"), "X-Request-Id": "req_client_1"},
        )
        assert response.headers["X-Request-Id"] == "req_client_1"
        assert response.json()["metadata"]["request_id"] == "req_client_1"

    def test_replayed_request_id_is_refused(self, client, stub_clients, account_store):
        responses = [
            client.post(
                "/v1/ai/quiz-code",
                json={"topic": "Recursion", "count": 1},
                headers={**_as("user-premium"), "X-Request-Id": "fixed-id"},
            )
            for _ in range(4)
        ]

        assert [r.status_code for r in responses] == [200, 409, 409, 409]
        assert all(r.json()["error_code"] == "DUPLICATE_REQUEST" for r in responses[1:])
        assert stub_clients.calls == 1
        assert account_store.ledger == {("user-premium", "fixed-id"): 2}

    def test_anonymous_is_denied(self, client, stub_clients):
        response = client.post("/v1/ai/quiz-mcq", json={"topic": "Owls"})

        assert response.status_code == 403
        body = response.json()
        assert body["error_code"] == "ACCESS_DENIED"
        assert body["metadata"]["reason"] == "ai_not_permitted"
        assert stub_clients.calls == 0

    def test_session_token(self, client, account_store):
        account_store.add_session("sess-token-1", Identity(user_id="user-basic", session_id="s1"))

        response = client.post(
            "/v1/ai/quiz-blanks",
            json={"topic": "Verbs", "count": 2},
            headers={"Authorization": "Bearer sess-token-1"},
        )
        assert response.status_code == 200

    def test_unknown_session_token(self, client):
        response = client.post(
            "/v1/ai/quiz-mcq",
            json={"topic": "Owls"},
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_session"

    def test_malformed_authorization_header(self, client):
        response = client.post(
            "/v1/ai/quiz-mcq", json={"topic": "Owls"}, headers={"Authorization": "Token abc"}
        )
        assert response.status_code == 401

    def test_unknown_user(self, client):
        response = client.post("/v1/ai/quiz-mcq", json={"topic": "Owls"}, headers=_as("ghost"))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "account_not_found"

    @pytest.mark.parametrize("user_id,operation,body,status,code", [
        ("user-broke", "quiz-mcq", {"topic": "Owls", "count": 1}, 403, "ACCESS_DENIED"),
        ("user-free", "quiz-mcq", {"topic": "Owls", "count": 9}, 403, "PLAN_LIMIT_EXCEEDED"),
        ("user-basic", "quiz-mcq", {"topic": "", "count": 2}, 400, "INVALID_INPUT"),
        ("user-basic", "quiz-code", {"topic": "Loops"}, 403, "ACCESS_DENIED"),
    ])
    def test_failure_status_mapping(self, client, user_id, operation, body, status, code):
        response = client.post(f"/v1/ai/{operation}", json=body, headers=_as(user_id))
        assert response.status_code == status
        assert response.json()["error_code"] == code

    def test_missing_credential_is_service_unavailable(self, client, secret_store):
        secret_store._secrets.clear()
        response = client.post(
            "/v1/ai/quiz-mcq", json={"topic": "Owls", "count": 1}, headers=_as("user-basic")
        )
        assert response.status_code == 503
        assert response.json()["error_code"] == "NO_PROVIDER_FOR_MODEL"

    def test_extra_body_fields_rejected(self, client):
        response = client.post(
            "/v1/ai/quiz-mcq", json={"topic": "Owls", "model": "gpt-4"}, headers=_as("user-basic")
        )
        assert response.status_code == 422

    def test_rate_limit(self, client):
        statuses = [
            client.post(
                "/v1/ai/quiz-ordering",
                json={"topic": "Baking bread", "count": 2},
                headers=_as("user-free"),
            )
            for _ in range(6)
        ]

        assert [r.status_code for r in statuses[:5]] == [200] * 5
        limited = statuses[5]
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "RATE_LIMITED"
        assert "Retry-After" in limited.headers

    def test_audit_written_on_shutdown(self, app, audit_sink):
        with TestClient(app) as client:
            client.post("/v1/ai/quiz-mcq", json={"topic": "Owls", "count": 1}, headers=_as("user-basic"))
            client.post("/v1/ai/quiz-mcq", json={"topic": "Owls"})

        assert len(audit_sink.entries) == 1
        assert audit_sink.entries[0].user_id == "user-basic"


# ============================================================
# Usage & admin
# ============================================================

class TestUsageEndpoints:
    """Tests for usage statistics and audit export."""

    def test_my_usage_requires_identity(self, client):
        assert client.get("/v1/usage/me").status_code == 401

    def test_my_usage(self, client, audit_sink):
        audit_sink.entries.append(AuditEntry(
            id="audit_1", timestamp=utcnow(), user_id="user-basic", request_id="req_1",
            operation="quiz-mcq", model="gpt-4o-mini", tokens_used=50,
            credits_deducted=1, latency_ms=400, success=True, risk_score=0,
        ))

        response = client.get("/v1/usage/me", params={"timeframe": "week"}, headers=_as("user-basic"))

        assert response.status_code == 200
        body = response.json()
        assert body["total_requests"] == 1
        assert body["subscription"]["plan"] == "BASIC"
        assert body["subscription"]["credits"]["available"] == 50

    def test_my_usage_bad_timeframe(self, client):
        response = client.get("/v1/usage/me", params={"timeframe": "decade"}, headers=_as("user-basic"))
        assert response.status_code == 400

    def test_audit_export(self, client, audit_sink):
        now = utcnow()
        for i, user in enumerate(["user-basic", "user-free"]):
            audit_sink.entries.append(AuditEntry(
                id=f"audit_{i}", timestamp=now - timedelta(minutes=i + 1), user_id=user,
                request_id=f"req_{i}", operation="quiz-mcq", model="gpt-4o-mini",
                tokens_used=10, credits_deducted=1, latency_ms=100, success=True, risk_score=0,
            ))

        response = client.get("/v1/admin/audit/export", params={
            "start": (now - timedelta(hours=1)).isoformat(),
            "end": now.isoformat(),
            "user_id": "user-free",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["data"][0]["request_id"] == "req_1"

    def test_audit_export_bad_window(self, client):
        now = utcnow()
        response = client.get("/v1/admin/audit/export", params={
            "start": now.isoformat(),
            "end": (now - timedelta(hours=1)).isoformat(),
        })
        assert response.status_code == 400

    def test_system_usage(self, client):
        response = client.get("/v1/admin/usage", params={"timeframe": "hour"})
        assert response.status_code == 200
        assert response.json()["total_requests"] == 0


class TestProdMode:
    """Tests for production-only identity and admin rules."""

    def test_user_header_ignored_in_prod(self, app, monkeypatch):
        monkeypatch.setenv("MODE", "prod")
        client = TestClient(app)

        response = client.post("/v1/ai/quiz-mcq", json={"topic": "Owls"}, headers=_as("user-basic"))

        assert response.status_code == 403
        assert response.json()["metadata"]["reason"] == "ai_not_permitted"

    def test_admin_token_required_in_prod(self, app, monkeypatch):
        monkeypatch.setenv("MODE", "prod")
        monkeypatch.setenv("ADMIN_TOKEN", "admin-secret")
        client = TestClient(app)

        assert client.get("/v1/admin/usage").status_code == 403
        assert client.get("/v1/admin/usage", headers={"X-Admin-Token": "wrong"}).status_code == 403
        ok = client.get("/v1/admin/usage", headers={"X-Admin-Token": "admin-secret"})
        assert ok.status_code == 200


# ============================================================
# Health & metrics
# ============================================================

class TestHealth:
    """Tests for health and metrics endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["mode"] == "test"
        assert body["audit"]["worker_running"] is True

    def test_token_health(self, client):
        body = client.get("/health/tokens").json()
        assert body["status"] == "degraded"
        assert body["providers"]["google"]["status"] == "error"
        assert body["providers"]["openai"]["status"] == "healthy"

    def test_metrics(self, client):
        client.post("/v1/ai/quiz-mcq", json={"topic": "Owls", "count": 1}, headers=_as("user-basic"))
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "aigate_operations_total" in response.text
