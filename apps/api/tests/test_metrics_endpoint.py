from __future__ import annotations

from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from callgenie.calls.api import get_current_user as calls_get_current_user
from callgenie.calls.service import ActorUser
from callgenie.core.auth import AuthUser, get_current_user as auth_get_current_user
from callgenie.core.config import get_settings
from callgenie.core.database import Base, get_db
from callgenie.main import app
from callgenie.middleware.rate_limit import reset_rate_limiter
from callgenie.voice.client import RetellClient, get_voice_client


def _provider_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/v2/create-phone-call":
        return httpx.Response(201, json={"call_id": "call_metrics_1", "call_status": "registered"})
    if request.url.path.startswith("/v2/get-call/"):
        return httpx.Response(404, json={"message": "call not found"})
    return httpx.Response(500, json={"error": "unexpected"})


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_calls_user() -> ActorUser:
        return ActorUser(user_id="metrics-user", correlation_id="metrics-corr-1")

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    def override_voice_client() -> Generator[RetellClient, None, None]:
        voice_client = RetellClient(
            api_key="key_metrics",
            base_url="https://retell.test",
            transport=httpx.MockTransport(_provider_handler),
        )
        try:
            yield voice_client
        finally:
            voice_client.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[calls_get_current_user] = override_calls_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    app.dependency_overrides[get_voice_client] = override_voice_client

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_provider_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    created = client.post(
        "/api/calls",
        json={"name": "Metrics Lead", "email": "metrics@example.com", "phone_number": "+12137774445"},
    )
    assert created.status_code == 200

    missing = client.get("/api/calls/call_unknown")
    assert missing.status_code == 500
    assert missing.json()["error"] == "retrieve_call failed: call not found"

    bulk = client.post("/api/leads/bulk", json={"leads": [{"name": "Bulk Lead", "phone_number": "+15556667777"}]})
    assert bulk.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "voice_provider_requests_total" in body
    assert "voice_provider_request_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/calls/{call_id}"' in body
    assert 'operation="create_phone_call",outcome="ok"' in body
    assert 'operation="retrieve_call",outcome="http_error"' in body
    assert 'call_detail_lookups_total{source="provider"}' in body
    assert 'leads_upserted_total{result="inserted"}' in body


def test_metrics_endpoint_requires_permission(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="someone", roles=["user"])
    response = client.get("/metrics")
    assert response.status_code == 403
    assert response.json()["success"] is False


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    response = client.get("/metrics")
    assert response.status_code == 404
