"""Pytest configuration and fixtures."""
import os

# Must be set before flagops.config is imported anywhere.
os.environ["DATABASE_URL"] = os.getenv("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("EVAL_LOG_ENABLED", "false")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from flagops.crud.memory import InMemoryFlagBackend, InMemoryTenantDirectory  # noqa: E402
from flagops.schemas.feature_flag import FeatureFlagCreate  # noqa: E402
from flagops.schemas.tenant import Tenant  # noqa: E402
from flagops.services.admin_operations import FlagAdminService  # noqa: E402
from flagops.services.feature_flags import FlagQueryService  # noqa: E402
from flagops.services.resolution import ResolutionEngine, SafeDefaultPolicy  # noqa: E402

ADMIN = "admin@flagops.test"

TENANTS = [
    Tenant(id="tenant_free", name="Furry Friends Daycare", tier="free", status="active"),
    Tenant(id="tenant_pro", name="Happy Tails Grooming", tier="pro", status="active"),
    Tenant(id="tenant_ent", name="Paws & Claws Pet Spa", tier="enterprise", status="active"),
]


class FakeClock:
    """Deterministic clock; every call moves time forward by one second."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_flag_in(**overrides) -> FeatureFlagCreate:
    data = dict(
        flag_key="ai_scheduling_v2",
        display_name="AI-Powered Smart Scheduling",
        description="Suggests optimal booking times",
        category="beta",
        enabled=False,
        rollout_strategy="all_or_nothing",
        environments=["production", "staging"],
    )
    data.update(overrides)
    return FeatureFlagCreate(**data)


# --- In-memory fixtures ---

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tenants():
    return InMemoryTenantDirectory(TENANTS)


@pytest.fixture
def backend():
    return InMemoryFlagBackend()


@pytest.fixture
def admin(backend, tenants, clock):
    return FlagAdminService(backend, tenants, clock=clock)


@pytest.fixture
def engine():
    return ResolutionEngine(safe_default=SafeDefaultPolicy(fail_open=True, max_entries=100))


@pytest.fixture
def query(backend, tenants, engine, clock):
    return FlagQueryService(backend, tenants, engine, environment="production", clock=clock)


# --- SQLAlchemy fixtures ---

@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database shared across threads via StaticPool."""
    import flagops.models  # noqa: F401  registers every table
    from flagops.db.base_class import Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
