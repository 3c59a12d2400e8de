# ============================================================================
# Stake Reward Distributor v1.0.0
# Database Module - SQLAlchemy Engine & Session Factory
# ============================================================================

from app.database.session import (
    build_engine,
    build_session_factory,
    check_database_connection,
    get_database_url,
)

__all__ = [
    "build_engine",
    "build_session_factory",
    "check_database_connection",
    "get_database_url",
]
