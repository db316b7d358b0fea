"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests.

Entitlement fixtures:
- frozen_clock: Mutable clock injected into services and the cache
- entitlement_cache: Process-local EntitlementCache installed as the singleton
- plans: The default plan per tier, keyed by slug
- make_subscription: Factory for a tenant subscription on a given plan
"""

import os
import tempfile
import uuid
import pytest
import yaml
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import Mock

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="session", autouse=True)
def _httpx_app_kwarg_patch():
    """
    Compatibility patch for httpx>=0.28 where Client(app=...) is not supported.

    Starlette's TestClient (used by FastAPI) passes app= into httpx.Client.
    This patch removes the app kwarg to avoid TypeError in environments
    with newer httpx while remaining safe for older versions.
    """
    import httpx

    original_init = httpx.Client.__init__

    def patched_init(self, *args, **kwargs):
        kwargs.pop("app", None)
        return original_init(self, *args, **kwargs)

    httpx.Client.__init__ = patched_init
    try:
        yield
    finally:
        httpx.Client.__init__ = original_init


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    url = _get_test_database_url()
    return url.startswith("postgresql")


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        # SQLite in-memory for fast unit tests
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # pysqlite defers BEGIN and breaks SAVEPOINT; emit BEGIN ourselves
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    # Import and create all tables
    from menuqr.db_base import Base
    import menuqr.models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Services commit after every mutation; the session joins the outer
    transaction through savepoints so commit() and rollback() inside a test
    never escape it.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=connection,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# Alias for backwards compatibility
@pytest.fixture
def test_db_session(db_session):
    """Alias for db_session fixture."""
    return db_session


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Entitlement Fixtures
# =============================================================================


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def frozen_clock():
    """Clock pinned to a fixed UTC instant."""
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def unavailable_redis():
    """Redis client stand-in that reports itself unavailable."""
    client = Mock()
    client.available = False
    return client


@pytest.fixture
def entitlement_cache(frozen_clock, unavailable_redis):
    """
    Process-local cache on the frozen clock, installed as the singleton so
    dependencies and services that use the default cache share it.
    """
    from menuqr.entitlements.cache import EntitlementCache, set_entitlement_cache

    cache = EntitlementCache(clock=frozen_clock, ttl_seconds=300, redis_client=unavailable_redis)
    set_entitlement_cache(cache)
    yield cache
    set_entitlement_cache(None)


@pytest.fixture(autouse=True)
def _reset_audit_logger():
    """Fresh denial counters for every test."""
    from menuqr.entitlements.audit import get_audit_logger

    get_audit_logger().reset()
    yield
    get_audit_logger().reset()


@pytest.fixture
def plans(db_session):
    """One plan per tier, seeded from tier defaults. Keyed by slug."""
    from menuqr.repositories.plans_repo import ensure_default_plans

    created = ensure_default_plans(db_session)
    db_session.commit()
    return {plan.slug: plan for plan in created}


@pytest.fixture
def make_subscription(db_session, entitlement_cache, frozen_clock, plans):
    """
    Factory fixture creating a tenant subscription through SubscriptionService.

    Usage:
        subscription = make_subscription("professional")
        trial = make_subscription("starter", start_trial=True)
    """
    from menuqr.services.subscription_service import SubscriptionService

    def _make(plan_slug: str = "starter", tenant_id: str = None, start_trial: bool = False, **kwargs):
        service = SubscriptionService(db_session, cache=entitlement_cache, clock=frozen_clock)
        return service.create_subscription(
            tenant_id or f"tenant-{uuid.uuid4().hex[:8]}",
            plan_slug,
            start_trial=start_trial,
            **kwargs,
        )
    return _make


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("plans.yml", {"plans": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
