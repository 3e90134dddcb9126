# ============================================================================
# Fiat Bridge v1.0.0
# Database Module - SQLAlchemy Engine & Session Factory
# ============================================================================

from app.database.session import (
    get_database_url,
    create_db_engine,
    create_session_factory,
    check_database_connection,
)

__all__ = [
    "get_database_url",
    "create_db_engine",
    "create_session_factory",
    "check_database_connection",
]
