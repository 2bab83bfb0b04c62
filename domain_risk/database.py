"""
Domain Risk Engine - Database Engine.

============================================================
PURPOSE
============================================================
SQLAlchemy engine and session plumbing for the SQL-backed
key-value store.

Requirements:
- Explicit transaction management
- Structured logging
- Hard failures (StorageFailure) on persistence errors

============================================================
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .exceptions import StorageFailure


logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "DOMAIN_RISK_DATABASE_URL"
DEFAULT_DATABASE_URL = "sqlite:///domain_risk.db"

# =============================================================
# DECLARATIVE BASE
# =============================================================

Base = declarative_base()


# =============================================================
# DATABASE ENGINE
# =============================================================


def get_database_url() -> str:
    """Get database URL from environment."""
    load_dotenv()
    url = os.getenv(DATABASE_URL_ENV)
    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"{DATABASE_URL_ENV} not set, using default: {url}")
    return url


def create_database_engine(url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine.

    In-memory SQLite shares one connection across threads so the
    data survives ``asyncio.to_thread`` hops.

    Args:
        url: Database URL (defaults to the environment)
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    database_url = url or get_database_url()
    logger.info(f"Creating database engine for: {database_url.split('@')[-1]}")

    in_memory = database_url == "sqlite://" or ":memory:" in database_url
    if database_url.startswith("sqlite") and in_memory:
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================
# SESSION MANAGEMENT
# =============================================================


@contextmanager
def transaction_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception.

    Raises:
        StorageFailure: When the database rejects the transaction
    """
    session = session_factory()
    try:
        yield session
        session.commit()
        logger.debug("Database transaction committed successfully")
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise StorageFailure(f"Transaction failed: {e}", operation="transaction", cause=e) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# DATABASE INITIALIZATION
# =============================================================


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in ORM models.

    Raises:
        StorageFailure: If table creation fails
    """
    # register models on Base.metadata
    from . import models  # noqa: F401

    try:
        Base.metadata.create_all(engine)
        logger.info("Domain risk tables created")
    except SQLAlchemyError as e:
        logger.error(f"Table creation failed: {e}")
        raise StorageFailure(f"Cannot create tables: {e}", operation="create_all", cause=e) from e


def verify_database_connection(engine: Engine) -> bool:
    """
    Verify database connection is working.

    Raises:
        StorageFailure: If connection fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.info("Database connection verified successfully")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {e}")
        raise StorageFailure(f"Cannot connect to database: {e}", operation="connect", cause=e) from e


__all__ = [
    "Base",
    "get_database_url",
    "create_database_engine",
    "create_session_factory",
    "transaction_scope",
    "create_all_tables",
    "verify_database_connection",
]
