"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_SECRET_KEY", "test-secret-key-for-referral-engine-tests")
os.environ.setdefault("APP_ENV", "test")

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from referral_engine.database import Base
import referral_engine.models  # noqa: F401

TEST_SECRET = os.environ["APP_SECRET_KEY"]


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


async def _create_engine(url: str):
    engine = create_async_engine(url)

    # pysqlite defers BEGIN and lets RELEASE SAVEPOINT commit; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = await _create_engine("sqlite+aiosqlite:///:memory:")
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite shared by several sessions, for interleaving tests."""
    engine = await _create_engine(f"sqlite+aiosqlite:///{tmp_path / 'referrals.db'}")
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def partner(db):
    """Active partner with the default $2.00 signup rate and code ABC123."""
    from referral_engine.services.partners import create_partner
    created, _ = await create_partner(
        db,
        user_id="partner-user-1",
        contact_email="jane@example.com",
        business_name="Jane Smith Media",
        default_code="ABC123",
    )
    return created


@pytest.fixture
async def referral_code(db, partner):
    from referral_engine.services.registry import resolve_code
    return await resolve_code(db, "ABC123")


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("referral_engine.utils.rate_limiter.get_redis") as mock:
        redis_mock = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, 1, 1, True])
        redis_mock.pipeline.return_value = pipe
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def mock_identity():
    """Identity store that knows every user."""
    with patch("referral_engine.services.identity.lookup_user", new_callable=AsyncMock) as mock:
        mock.side_effect = lambda user_id: {
            "user": {"id": user_id, "email": f"{user_id}@example.com", "full_name": None, "created_at": None},
            "error": None,
        }
        yield mock


def make_token(user_id: str, roles=None, expires_in: int = 3600, **claims) -> str:
    """Sign a JWT the way the identity provider does."""
    import jwt
    payload = {
        "sub": user_id,
        "aud": "authenticated",
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        **claims,
    }
    if roles is not None:
        payload["app_metadata"] = {"roles": list(roles)}
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


@pytest.fixture
def token_for():
    return make_token
