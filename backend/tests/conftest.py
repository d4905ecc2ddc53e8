"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.rate_limiter import RateLimiter, get_webhook_rate_limiter
from api.webhooks import get_webhook_service
from database import Base, get_db
from main import app
from services.webhook_service import WebhookService
# Pytest fixtures - imported to make them available to tests
from tests.fixtures import (  # noqa: F401
    connection,
    revoked_connection,
    webhook_secret,
)
from tests.fixtures.mocks import StubAggregatorClient


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine shared by every session in a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine):
    """Sessionmaker bound to the test engine, for code that opens its own sessions."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(name="db")
def db_fixture(session_factory):
    """Create an in-memory SQLite database session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(name="stub_client")
def stub_client_fixture():
    """An aggregator stub with no accounts."""
    return StubAggregatorClient()


@pytest.fixture(name="rate_limiter")
def rate_limiter_fixture():
    """A generous per-test limiter so tests never share webhook rate state."""
    return RateLimiter(limit=1000, period=60)


@pytest.fixture(name="client")
def client_fixture(db, rate_limiter):
    """Create a test client with the test database."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_webhook_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[get_webhook_service] = lambda: WebhookService()
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
