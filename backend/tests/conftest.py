"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("POS_EVENTS_ENABLED", "0")


@pytest.fixture
def client() -> TestClient:
    """Create a TestClient instance for the FastAPI app."""
    from backend.main import app

    return TestClient(app)


@pytest.fixture
def mock_user():
    """Mock manager for testing."""
    from backend.dependencies.security import AuthenticatedUser

    return AuthenticatedUser(
        id=1,
        username="test_user",
        role="manager",
    )


@pytest.fixture
def authenticated_client(client, mock_user):
    """Client with mocked authentication."""
    from backend.main import app
    from backend.dependencies.security import get_current_user

    app.dependency_overrides[get_current_user] = lambda: mock_user
    yield client
    app.dependency_overrides.clear()
