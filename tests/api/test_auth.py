"""Tests for bearer token authentication."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import jwt
import pytest

from personal_os_ai.api.middleware.auth import (
    InvalidTokenError,
    TokenExpiredError,
    verify_access_token,
)
from personal_os_ai.config import get_settings
from personal_os_ai.llm.providers import LLMClient


def make_token(**claims) -> str:
    settings = get_settings()
    payload = {"exp": datetime.now(timezone.utc) + timedelta(minutes=5), **claims}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


class TestVerifyAccessToken:
    def test_valid_token(self):
        payload = verify_access_token(make_token(sub="user-1", name="Ada"))
        assert payload["sub"] == "user-1"

    def test_expired_token(self):
        token = make_token(sub="user-1", exp=datetime.now(timezone.utc) - timedelta(minutes=1))
        with pytest.raises(TokenExpiredError):
            verify_access_token(token)

    def test_missing_subject(self):
        with pytest.raises(InvalidTokenError):
            verify_access_token(make_token(name="Ada"))

    def test_wrong_signature(self):
        token = jwt.encode({"sub": "user-1"}, "another-secret-key-of-enough-length", algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            verify_access_token(token)


class TestProtectedRoutes:
    def test_no_token(self, anonymous_client):
        response = anonymous_client.get("/api/ai/usage")
        assert response.status_code == 401

    def test_garbage_token(self, anonymous_client):
        response = anonymous_client.get(
            "/api/ai/usage", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401

    def test_valid_token(self, anonymous_client):
        response = anonymous_client.get(
            "/api/ai/usage", headers={"Authorization": f"Bearer {make_token(sub='user-1')}"}
        )
        assert response.status_code == 200
        assert response.json()["current"]["daily"]["usage"] == 0


def test_health(anonymous_client, monkeypatch):
    monkeypatch.setattr("personal_os_ai.llm.providers._llm_client", None)

    assert anonymous_client.get("/health").json() == {"status": "healthy", "llm": None}
    assert anonymous_client.get("/").json()["name"] == "Personal OS AI Gateway"


def test_openapi_documents_budget_denial(anonymous_client):
    schema = anonymous_client.get("/openapi.json").json()
    assert "429" in schema["paths"]["/api/ai/chat"]["post"]["responses"]


def test_health_reports_provider_counters(anonymous_client, monkeypatch):
    client = LLMClient(client=MagicMock())
    client.metrics.record_request(success=True, input_tokens=12, output_tokens=4, duration_ms=80.0)
    monkeypatch.setattr("personal_os_ai.llm.providers._llm_client", client)

    llm = anonymous_client.get("/health").json()["llm"]

    assert llm["total_requests"] == 1
    assert llm["total_tokens_input"] == 12
    assert llm["avg_request_time_ms"] == 80.0
