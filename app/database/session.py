"""
============================================================================
Fiat Bridge v1.0.0
Database Session - SQLAlchemy Engine & Session Factory
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: CONVERSION_DATABASE_URL or DB_* environment variables
Side Effects: Database connections (only once a factory is created)

SOVEREIGN MANDATE:
- No engine is created at import time
- Connection pooling for server databases, single file for SQLite
- All timestamps handled as UTC by the store layer

============================================================================
"""

import os
import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Resolve the conversion database URL.

    Environment Variables:
        CONVERSION_DATABASE_URL: Full SQLAlchemy URL (takes precedence)
        DB_HOST: Database host (default: localhost)
        DB_PORT: Database port (default: 5432)
        DB_NAME: Database name (default: fiat_bridge)
        DB_USER: Database user (default: fiat_bridge)
        DB_PASSWORD: Database password
    """
    load_dotenv()
    url = os.getenv("CONVERSION_DATABASE_URL")
    if url:
        return url

    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "fiat_bridge")
    user = os.getenv("DB_USER", "fiat_bridge")
    password = os.getenv("DB_PASSWORD", "")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


# ============================================================================
# ENGINE & SESSION FACTORY
# ============================================================================

def create_db_engine(url: Optional[str] = None) -> Engine:
    """
    Build an engine for ``url`` (default: get_database_url()).

    SQLite URLs skip the pool sizing options, which SQLite does not accept.
    """
    url = url or get_database_url()
    echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if url.startswith("sqlite"):
        return create_engine(url, echo=echo)

    return create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
    )


def create_session_factory(url: Optional[str] = None) -> sessionmaker:
    engine = create_db_engine(url)
    logger.info(f"[DB] Session factory created | dialect={engine.dialect.name}")
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection(engine: Engine) -> bool:
    """
    Verify database connectivity.

    Raises:
        RuntimeError: If database connection fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise RuntimeError(f"Database connection failed: {e}") from e


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
