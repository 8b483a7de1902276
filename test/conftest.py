"""
Shared fixtures for the checkout test suite.

Every test gets its own SQLite file (or TEST_DATABASE_URL when set) so
concurrency tests can use real connections from several threads, and a
controllable clock so lease arithmetic is deterministic.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

load_dotenv()

from api.app import create_app
from checkout_handler.config import CheckoutSettings
from checkout_handler.handler import build_services
from checkout_handler.utils.telemetry import clear_events
from db.db import create_db_engine, get_db
from db.models.base import Base
import db.models  # noqa: F401  (registers every table on Base.metadata)

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

START_TIME = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
SESSION_A = "session-a"
SESSION_B = "session-b"
PIPELINE_KEY = "test-pipeline-key"


class FakeClock:
    """Mutable UTC clock. Call it to read the time."""

    def __init__(self, start: datetime = START_TIME):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


# ============================================================================
# DATABASE FIXTURES
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    """Fresh schema per test."""
    url = TEST_DATABASE_URL or f"sqlite:///{tmp_path / 'checkout_test.db'}"
    engine = create_db_engine(url)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# SERVICE FIXTURES
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return CheckoutSettings(
        database_url="sqlite://",
        lease_minutes=15,
        max_lease_minutes=60,
        resume_window_minutes=30,
        client_attempt_limit=100,
        client_window_seconds=60,
        cart_attempt_limit=100,
        cart_window_seconds=60,
        sweeper_enabled=False,
        status_cache_ttl_seconds=0,
        pipeline_key=PIPELINE_KEY,
    )


@pytest.fixture
def services(settings, clock, session_factory):
    return build_services(settings=settings, clock=clock, session_factory=session_factory)


@pytest.fixture
def lock_manager(services):
    return services.lock_manager


@pytest.fixture
def cart(services, db_session):
    """A cart owned by SESSION_A with one line."""
    created = services.carts.create_cart(db_session, session_id=SESSION_A)
    return services.carts.add_line(db_session, created.id, "sku-100", 2)


@pytest.fixture
def make_cart(services, db_session):
    """Factory for extra carts with one line each."""
    def _make(session_id: str = SESSION_A, purchasable_id: str = "sku-100", quantity: int = 1):
        created = services.carts.create_cart(db_session, session_id=session_id)
        return services.carts.add_line(db_session, created.id, purchasable_id, quantity)
    return _make


@pytest.fixture(autouse=True)
def reset_telemetry():
    clear_events()
    yield
    clear_events()


# ============================================================================
# API FIXTURES
# ============================================================================

@pytest.fixture
def app(settings, clock, session_factory):
    app = create_app(settings=settings, clock=clock, session_factory=session_factory)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def api_cart(client):
    """Cart created through the API with one line, as SESSION_A."""
    response = client.post("/carts", headers={"X-Session-ID": SESSION_A})
    assert response.status_code == 201
    cart_id = response.json()["data"]["id"]
    response = client.post(f"/carts/{cart_id}/lines", json={"purchasable_id": "sku-100", "quantity": 2})
    assert response.status_code == 200
    return cart_id
