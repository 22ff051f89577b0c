"""Database connection and session management."""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from publisher.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for publisher tables."""


# Lazy database initialization - don't create engine at import time
engine: Engine | None = None
session_factory: sessionmaker[Session] | None = None


def _normalize_url(database_url: str) -> str:
    """Select the sync driver for PostgreSQL URLs."""
    if database_url.startswith("postgresql+asyncpg://"):
        return database_url.replace("postgresql+asyncpg://", "postgresql+psycopg2://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+psycopg2://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return database_url


def build_engine(database_url: str, pool_size: int | None = None) -> Engine:
    """Create an engine for the given URL.

    SQLite connections get a busy timeout and are shareable across worker
    threads; every other backend gets a bounded connection pool.

    Args:
        database_url: SQLAlchemy database URL
        pool_size: Connection pool size for server databases

    Returns:
        Configured engine
    """
    url = _normalize_url(database_url)
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    return create_engine(
        url,
        pool_size=pool_size or settings.MAX_CONNECTIONS,
        max_overflow=0,
        pool_pre_ping=True,
        echo=False,
    )


def build_session_factory(db_engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to ``db_engine``."""
    return sessionmaker(
        db_engine,
        class_=Session,
        expire_on_commit=False,
        autoflush=False,
    )


def _initialize_database() -> None:
    """Initialize database engine and session factory."""
    global engine, session_factory

    if engine is not None:
        return  # Already initialized

    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)


def get_session_factory() -> sessionmaker[Session]:
    """Get the process-wide session factory.

    Returns:
        Session factory for the configured database

    Raises:
        RuntimeError: If the database could not be initialized
    """
    _initialize_database()

    if session_factory is None:
        raise RuntimeError("Database not initialized - cannot create session")
    return session_factory


def create_tables(db_engine: Engine | None = None) -> None:
    """Create every publisher table that does not exist yet."""
    # Import models so they register with the metadata
    import publisher.registry.models  # noqa: F401
    import publisher.wallets.sql_store  # noqa: F401

    if db_engine is None:
        _initialize_database()
        db_engine = engine
    assert db_engine is not None
    Base.metadata.create_all(db_engine)
