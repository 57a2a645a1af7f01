"""Database configuration and session management"""

from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterator

from sqlalchemy import create_engine, text, inspect
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from authbackend.config import settings
from authbackend.core.exceptions import StoreUnavailableError
import logging

logger = logging.getLogger(__name__)


def engine_options(url: str) -> Dict[str, Any]:
    """
    Build engine keyword arguments for a database URL.

    Every remote call is bounded: pool checkout by ``pool_timeout``, the TCP
    connect by ``connect_timeout`` and each statement by ``statement_timeout``.
    """
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "echo": settings.DEBUG}

    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_timeout": settings.DATABASE_POOL_TIMEOUT_SECONDS,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
        "echo": settings.DEBUG,
        "connect_args": {
            "connect_timeout": settings.DATABASE_CONNECT_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={settings.DATABASE_STATEMENT_TIMEOUT_MS}",
        },
    }


# PostgreSQL engine
_database_url = settings.get_database_url()
engine = create_engine(_database_url, **engine_options(_database_url))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create base class for models
Base = declarative_base()

# Import models after Base is defined so metadata is populated.
from authbackend import models  # noqa: E402,F401


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session

    Yields:
        Session: Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def store_errors(db: Session) -> Iterator[None]:
    """
    Translate connectivity failures into StoreUnavailableError.

    The session is rolled back so the failed unit of work leaves nothing
    half-applied; the error is not retried here.
    """
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        db.rollback()
        logger.error("Credential store unavailable: %s", exc.__class__.__name__)
        raise StoreUnavailableError() from exc
    except DBAPIError as exc:
        db.rollback()
        if exc.connection_invalidated:
            logger.error("Credential store connection lost")
            raise StoreUnavailableError() from exc
        raise


def check_connection() -> None:
    """Run a trivial query; raises StoreUnavailableError when the store is down."""
    db = SessionLocal()
    try:
        with store_errors(db):
            db.execute(text("SELECT 1"))
    finally:
        db.close()


def init_db() -> None:
    """
    Initialize database according to configured strategy.

    DB_INIT_MODE:
      - migrate: require alembic_version table (migration-first discipline)
      - create_all: legacy behavior for local/dev bootstrap
      - off: skip initialization check
    """
    mode = settings.DB_INIT_MODE.lower().strip()
    if mode == "off":
        logger.info("DB initialization check skipped (DB_INIT_MODE=off)")
        return

    if mode == "create_all":
        Base.metadata.create_all(bind=engine)
        logger.warning("Using create_all database initialization (recommended only for local development).")
        return

    if mode == "migrate":
        with engine.connect() as conn:
            if engine.dialect.name == "postgresql":
                version_table_exists = conn.execute(
                    text("SELECT to_regclass('public.alembic_version')")
                ).scalar()
                exists = bool(version_table_exists)
            elif engine.dialect.name == "sqlite":
                version_table_exists = conn.execute(
                    text(
                        "SELECT name FROM sqlite_master WHERE type='table' AND name='alembic_version'"
                    )
                ).fetchone()
                exists = bool(version_table_exists)
            else:
                exists = "alembic_version" in inspect(conn).get_table_names()
            if settings.DB_REQUIRE_HEAD and not exists:
                raise RuntimeError(
                    "Migration table missing. Run Alembic migrations before starting the API."
                )
        logger.info("Migration metadata detected.")
        return

    raise RuntimeError(f"Unknown DB_INIT_MODE: {settings.DB_INIT_MODE}")
