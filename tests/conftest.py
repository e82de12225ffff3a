"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any badgerswap import so the
cached settings and the SQLAlchemy engine pick them up.
"""

import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "badgerswap-test.db"),
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("IDENTITY_SECRET", "test-identity-secret")
os.environ.setdefault("ADMIN_USER_IDS", '["admin-1"]')
os.environ.setdefault("STORE_RETRY_BACKOFF_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from badgerswap.config import get_settings, settings
get_settings.cache_clear()

from badgerswap import models  # noqa: F401,E402
from badgerswap.main import app  # noqa: E402
from badgerswap.realtime import ChangeFeed  # noqa: E402
from badgerswap.storage import Base, SessionLocal, engine  # noqa: E402
from badgerswap.utils import sign_identity  # noqa: E402


@pytest.fixture
def db():
    """Session on a fresh schema, dropped after the test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def headers_for():
    """Build signed identity headers for a user id."""
    def build(user_id: str) -> dict:
        return {
            "X-User-Id": user_id,
            "X-Signature": sign_identity(user_id, settings.IDENTITY_SECRET),
        }
    return build
