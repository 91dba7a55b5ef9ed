"""Database session management for VDID.

This module provides SQLAlchemy engine and session management:
- create_db_engine(): engine configured for SQLite or PostgreSQL
- make_session_factory(): sessionmaker bound to an engine
- get_db_session(): context manager committing on success, rolling back on error
- init_database(): create all tables
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from vdid.config import DATABASE_URL
from vdid.db.models import Base

log = logging.getLogger(__name__)


def create_db_engine(database_url: str = DATABASE_URL) -> Engine:
    """Build an engine for ``database_url``.

    SQLite gets a StaticPool with cross-thread access (FastAPI runs sync
    endpoints in a threadpool); PostgreSQL gets a real connection pool.
    """
    if database_url.startswith("sqlite"):
        engine_kwargs = {
            "echo": False,
            "pool_pre_ping": True,
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
        log.info("Using SQLite database (local development mode)")
    else:
        engine_kwargs = {
            "echo": False,
            "pool_pre_ping": True,      # Verify connections before use
            "pool_size": 5,
            "max_overflow": 10,
            "pool_recycle": 1800,       # Recycle connections every 30 min
        }
        log.info("Using PostgreSQL database (production mode)")

    engine = create_engine(database_url, **engine_kwargs)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory for creating database sessions."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@contextmanager
def get_db_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    """Context manager for a unit of work.

    Usage:
        with get_db_session(factory) as db:
            user = db.get(User, user_id)
            ...

    The session is committed on success and rolled back on exception.
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_database(engine: Engine) -> None:
    """Create all tables idempotently.

    For file-backed SQLite also ensures the database directory exists.
    """
    url = str(engine.url)
    log.info(f"Initializing database at {url.split('@')[-1] if '@' in url else url}")

    if url.startswith("sqlite:///"):
        db_path = url.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            db_dir = Path(db_path).parent
            db_dir.mkdir(parents=True, exist_ok=True)
            log.info(f"Ensured database directory exists: {db_dir}")

    Base.metadata.create_all(bind=engine)
    log.info("Database tables created successfully")
