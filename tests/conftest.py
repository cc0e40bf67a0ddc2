"""Shared pytest fixtures for backend tests."""

import pytest
from unittest.mock import patch, MagicMock
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from cbt_portal.config import settings
from cbt_portal.db import models  # noqa: F401  (registers tables)
from cbt_portal.db.session import Base, build_engine, build_session_factory, get_db
from cbt_portal.main import app


# In-memory SQLite shared by every session through a static pool
SQLALCHEMY_TEST_URL = "sqlite:///:memory:"
engine = build_engine(SQLALCHEMY_TEST_URL)
TestSession = build_session_factory(engine)


@pytest.fixture(autouse=True)
def no_rate_limit(monkeypatch):
    """Disable the Redis rate limiter for every test."""
    monkeypatch.setattr(settings, "RATE_LIMIT_SESSION_RPM", 0)


@pytest.fixture(autouse=True)
def mock_lost_result_task():
    """Mock the Celery hand-off so no broker is needed."""
    mock_task = MagicMock()
    mock_task.delay = MagicMock(return_value=MagicMock(id="fake-task-id"))
    with patch("cbt_portal.api.attempts.persist_lost_result", mock_task):
        yield mock_task


@pytest.fixture(scope="function")
def db():
    """Fresh schema and DB session for each test (the code under test commits)."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = TestSession()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def client(db: Session):
    """FastAPI test client with overridden DB dependency."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    # Remove TrustedHostMiddleware for tests to allow 'testserver' host
    app.user_middleware = [m for m in app.user_middleware if "TrustedHost" not in str(m)]

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
