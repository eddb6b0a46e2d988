"""Shared test fixtures and configuration."""

import os
import pytest
from datetime import datetime, timedelta
from typing import Optional

from jose import jwt

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_PRICE_INDIVIDUAL", "price_individual_test")
os.environ.setdefault("STRIPE_PRICE_FAMILY", "price_family_test")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("CARD_SIGNING_SECRET", "test-card-secret")
os.environ.setdefault("MEMBERSHIP_NUMBER_PREFIX", "MEM")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from membership_sdk.auth import AdminIdentity  # noqa: E402
from membership_sdk.connectors import SimulatorGateway  # noqa: E402
from membership_sdk.database import (  # noqa: E402
    Base,
    create_async_engine,
    make_session_factory,
    utcnow,
)

FAMILY_PRICE = os.environ["STRIPE_PRICE_FAMILY"]
INDIVIDUAL_PRICE = os.environ["STRIPE_PRICE_INDIVIDUAL"]


def make_session_token(
    uid: str = "admin_1",
    email: Optional[str] = "admin@club.org",
    admin: bool = True,
    expires_in: timedelta = timedelta(hours=1),
    secret: Optional[str] = None,
) -> str:
    """Issue a session token the way the identity provider would."""
    claims = {
        "sub": uid,
        "admin": admin,
        "exp": utcnow() + expires_in,
    }
    if email is not None:
        claims["email"] = email
    return jwt.encode(claims, secret or os.environ["SESSION_SECRET"], algorithm="HS256")


@pytest.fixture(autouse=True)
def clear_admin_allowlist(monkeypatch):
    """Tests opt into the allow-list explicitly."""
    monkeypatch.delenv("ADMIN_EMAIL_ALLOWLIST", raising=False)


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = make_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    """In-memory billing gateway."""
    return SimulatorGateway()


@pytest.fixture
def admin():
    return AdminIdentity(id="admin_1", email="admin@club.org")


@pytest.fixture
def period_end():
    """A billing period end well in the future, truncated to whole seconds."""
    return (utcnow() + timedelta(days=200)).replace(microsecond=0)
