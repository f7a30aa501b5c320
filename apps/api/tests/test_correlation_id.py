from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from callgenie.calls.api import get_current_user
from callgenie.calls.service import ActorUser
from callgenie.core.config import get_settings
from callgenie.core.database import Base, get_db
from callgenie.main import app
from callgenie.middleware.rate_limit import reset_rate_limiter
from callgenie.voice.client import get_voice_client


class StubVoiceClient:
    def create_phone_call(self, **kwargs: Any) -> dict[str, Any]:
        return {"call_id": f"call_{uuid.uuid4().hex[:8]}", "call_status": "registered"}

    def retrieve_call(self, call_id: str) -> dict[str, Any]:
        return {"call_id": call_id}

    def create_batch_call(self, **kwargs: Any) -> dict[str, Any]:
        return {"batch_call_id": "batch_corr"}


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
def clear_state() -> Generator[None, None, None]:
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="user-1", correlation_id=getattr(request.state, "correlation_id", None))

    voice_client = StubVoiceClient()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_voice_client] = lambda: voice_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.put(f"/api/leads/{uuid.uuid4()}", json={"address": "nowhere"})
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.put(
        f"/api/leads/{uuid.uuid4()}",
        json={"address": "nowhere"},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "x" * 200})
    assert response.status_code == 200
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != "x" * 200


def test_validation_errors_carry_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/leads/bulk",
        json={"leads": "not-a-list"},
        headers={"X-Correlation-Id": "corr-validation-1"},
    )
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["correlation_id"] == "corr-validation-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CALL_REQUESTS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    settings = get_settings()
    token = jwt.encode({"sub": "user-1"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    headers = {"X-Correlation-Id": "corr-rate-1", "Authorization": f"Bearer {token}"}
    payload = {"name": "Corr Lead", "email": "corr@example.com", "phone_number": "+12137774445"}
    first = client.post("/api/calls", json=payload, headers=headers)
    assert first.status_code == 200

    second = client.post("/api/calls", json=payload, headers=headers)
    assert second.status_code == 429
    assert second.json()["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
