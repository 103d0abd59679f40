"""Fixtures for the API route tests."""

import pytest
from fastapi.testclient import TestClient

from personal_os_ai.main import app
from personal_os_ai.api.deps import get_domain_summary_service, get_governor, get_orchestrator
from personal_os_ai.api.middleware.auth import CurrentUser, get_current_user
from personal_os_ai.api.middleware.rate_limit import limiter
from personal_os_ai.services.domain_summary import DomainSummaryService


TEST_USER = CurrentUser(user_id="user-1", display_name="Ada")


@pytest.fixture
def disable_rate_limit():
    previous = limiter.enabled
    limiter.enabled = False
    yield
    limiter.enabled = previous


@pytest.fixture
def client(orchestrator, governor, records, disable_rate_limit):
    """Test client with authentication and services overridden."""
    app.dependency_overrides[get_current_user] = lambda: TEST_USER
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_governor] = lambda: governor
    app.dependency_overrides[get_domain_summary_service] = lambda: DomainSummaryService(records)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(governor, disable_rate_limit):
    """Test client with real authentication."""
    app.dependency_overrides[get_governor] = lambda: governor
    yield TestClient(app)
    app.dependency_overrides.clear()
