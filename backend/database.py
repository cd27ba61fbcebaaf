"""
Database setup using SQLAlchemy.

PostgreSQL in production; SQLite is accepted for local development and tests.
In-memory SQLite shares a single connection so every session sees the same tables.
"""

import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Build engine
# ---------------------------------------------------------------------------

if settings.DATABASE_URL.startswith("sqlite"):
    _in_memory = settings.DATABASE_URL in ("sqlite://", "sqlite:///:memory:")
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool if _in_memory else None,
        echo=settings.DEBUG,
    )
    logger.info("Using SQLite backend")
else:
    engine = create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,       # Auto-reconnect stale connections
        pool_size=5,
        max_overflow=10,
        pool_timeout=10,
        pool_recycle=300,
        echo=settings.DEBUG,
    )
    logger.info("Using PostgreSQL backend")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables if they don't exist."""
    import models  # noqa: F401  (registers every table on Base.metadata)

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created / verified.")
