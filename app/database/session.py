"""
============================================================================
Stake Reward Distributor v1.0.0
Database Session - SQLAlchemy Engine & Session Management
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: DISTRIBUTION_DB_URL (SQLite file by default)
Side Effects: Database connections, creates the SQLite directory

SOVEREIGN MANDATE:
- Run state must survive process restarts (file-backed by default)
- SQLite connections enforce foreign keys and WAL journaling
- Connectivity is checked before the schema is created

============================================================================
"""

import os
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import DEFAULT_DB_URL


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Distribution database URL from the environment.

    Environment Variables:
        DISTRIBUTION_DB_URL: SQLAlchemy URL (default: sqlite:///./data/distribution.db)
    """
    return os.getenv("DISTRIBUTION_DB_URL", DEFAULT_DB_URL)


def _enable_sqlite_pragmas(dbapi_connection, connection_record):
    """
    Enforce foreign keys and WAL journaling on SQLite connections.

    Reliability Level: SOVEREIGN TIER
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def build_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create an engine for the run store.

    In-memory SQLite uses a StaticPool so every session sees the same
    database (tests and dry runs).
    """
    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            db_engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            path = url.split("///", 1)[-1]
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            db_engine = create_engine(url, connect_args={"check_same_thread": False})
        event.listen(db_engine, "connect", _enable_sqlite_pragmas)
        return db_engine

    return create_engine(
        url,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
        echo=os.getenv("DB_ECHO", "false").lower() == "true",
    )


def build_session_factory(db_engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


# ============================================================================
# CONNECTIVITY
# ============================================================================

def check_database_connection(db_engine: Engine) -> bool:
    """
    Verify database connectivity.

    Raises:
        ConnectionError: If the database cannot be reached
    """
    try:
        with db_engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise ConnectionError(f"Database connection failed: {e}") from e


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
