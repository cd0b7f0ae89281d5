"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory used by the API,
    the arq worker and scripts. Exposes a FastAPI dependency and a context
    manager for non-FastAPI callers.

WHY:
    Attribution work is short, transactional and lock-sensitive (claim,
    upsert results, stamp attributed_at). A single sync engine keeps
    transaction boundaries explicit in the store.

USAGE:
    from attribution_engine.database import SessionLocal, get_db, get_sync_session

    with get_sync_session() as db:
        store = TenantDataStore(db, tenant_id)

REFERENCES:
    - attribution_engine/store.py (all queries go through TenantDataStore)
    - attribution_engine/routers/attribution.py (consumer of get_db)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from attribution_engine.config import get_settings


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from settings (env or .env).

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = get_settings().DATABASE_URL
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )
    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in attribution_engine.models to ensure a single registry
from attribution_engine.models import Base  # noqa: E402


def init_db() -> None:
    """Create all tables that don't exist yet (dev / first boot)."""
    Base.metadata.create_all(bind=engine)


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Example:
        @router.get("/conversions/{conversion_id}")
        def get_status(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, scripts).

    Example:
        with get_sync_session() as db:
            conversions = db.query(Conversion).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
