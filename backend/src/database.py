"""Database session factory and configuration.

Provides database connectivity and session management for the matching
service. The same models run against PostgreSQL in production and SQLite in
tests.
"""

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from config import get_settings
from models.base import Base


def build_engine(database_url: str, statement_timeout_ms: int = 5000) -> Engine:
    """Create an engine with pool and timeout settings suited to the backend.

    Pool settings and the statement timeout only apply to PostgreSQL.
    """
    engine_kwargs = {
        "pool_pre_ping": True,  # Verify connections before using
        "echo": False,
    }

    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10
        engine_kwargs["pool_timeout"] = 10
        engine_kwargs["connect_args"] = {
            "options": f"-c statement_timeout={statement_timeout_ms}",
            "connect_timeout": 5,
        }

    return create_engine(database_url, **engine_kwargs)


_settings = get_settings()

engine = build_engine(_settings.DATABASE_URL, _settings.DATABASE_STATEMENT_TIMEOUT_MS)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """Dependency for FastAPI endpoints.

    Usage:
        @router.get("/health")
        def health(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_all(bind: Engine) -> None:
    """Create all tables (local development and tests; production uses managed DDL)."""
    import models  # noqa: F401  register every mapped class

    Base.metadata.create_all(bind=bind)
