"""Pytest configuration for attribution engine integration tests

WHAT: Shared fixtures for store, pipeline, sweeper and HTTP endpoint tests
WHY: Every test gets its own SQLite file database, a controllable clock and
     fake platform clients, so no test touches the network or another test's rows
REFERENCES:
    - attribution_engine/main.py: FastAPI application
    - attribution_engine/database.py: Database configuration
    - attribution_engine/services/attribution_service.py: Service wiring
"""

import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("FORWARDING_PLATFORMS", "meta,ga4")
os.environ.setdefault("ENVIRONMENT", "test")

from attribution_engine.models import AttributionSettings, Base  # noqa: E402
from attribution_engine.services.attribution_service import AttributionService  # noqa: E402
from attribution_engine.store import TenantDataStore  # noqa: E402
from attribution_engine.tests.fakes import (  # noqa: E402
    CONVERSION_AT,
    TENANT,
    FakeClock,
    FakeCredentialResolver,
    FakePlatformClient,
    RecordingAlertSink,
    no_sleep,
)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so several sessions see the same rows."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'attribution.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    yield SessionLocal

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def store(db_session) -> TenantDataStore:
    return TenantDataStore(db_session, TENANT)


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock(CONVERSION_AT + timedelta(minutes=10))


@pytest.fixture
def meta_client():
    return FakePlatformClient("meta")


@pytest.fixture
def ga4_client():
    return FakePlatformClient("ga4")


@pytest.fixture
def credentials():
    return FakeCredentialResolver()


@pytest.fixture
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture
def make_service(clock, meta_client, ga4_client, credentials, alert_sink):
    """Build an AttributionService bound to a session with all fakes wired in."""

    def _make(db: Session, limits=None) -> AttributionService:
        return AttributionService(
            db,
            limits=limits,
            credentials=credentials,
            clients={"meta": meta_client, "ga4": ga4_client},
            alert_sink=alert_sink,
            clock=clock,
            sleep=no_sleep,
        )

    return _make


@pytest.fixture
def service(db_session, make_service) -> AttributionService:
    return make_service(db_session)


@pytest.fixture
def tenant_settings(db_session):
    """Persist per-tenant overrides: tenant_settings(max_attempts=2)."""

    def _save(**overrides) -> AttributionSettings:
        row = AttributionSettings(tenant_id=TENANT, **overrides)
        db_session.merge(row)
        db_session.commit()
        return row

    return _save


@pytest.fixture
def journey(service):
    """meta (10 days) -> google (5 days) -> direct (1 day) for visitor v1."""
    return [
        service.record_touchpoint(
            TENANT, "v1", CONVERSION_AT - timedelta(days=10),
            channel="meta", campaign="spring-sale", click_ids={"fbclid": "fb-123"},
        ),
        service.record_touchpoint(TENANT, "v1", CONVERSION_AT - timedelta(days=5), channel="google"),
        service.record_touchpoint(TENANT, "v1", CONVERSION_AT - timedelta(days=1), channel="direct"),
    ]
