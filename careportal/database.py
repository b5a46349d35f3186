# careportal/database.py
import logging

from sqlalchemy import create_engine
from sqlalchemy import text
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from .config import get_settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        # In-memory databases live and die with their connection
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True}


_database_url = get_settings().database_url

# Create engine
engine = create_engine(_database_url, echo=False, **_engine_options(_database_url))

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()

# Columns added after the first release; created in place when missing
_LATE_COLUMNS = {
    "health_records": {
        "consent_metadata": "JSON",
        "metadata_version": "INTEGER",
    },
    "consent_requests": {
        "grant_sync_state": "VARCHAR(32)",
        "missing_grant_types": "JSON",
    },
}


# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=None):
    """Create all database tables - models must be imported first."""
    from . import models  # registers tables on Base.metadata

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    logger.info("Database tables created")
    # Lightweight migration: ensure new columns exist without a migration tool
    try:
        inspector = inspect(bind)
        for table, columns in _LATE_COLUMNS.items():
            existing = {col['name'] for col in inspector.get_columns(table)}
            for name, ddl_type in columns.items():
                if name not in existing:
                    with bind.begin() as conn:
                        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl_type}"))
                    logger.info(f"Added column {table}.{name}")
    except SQLAlchemyError as e:
        logger.warning(f"Lightweight column migration failed: {e}")


def drop_tables(bind=None):
    """Drop all database tables"""
    Base.metadata.drop_all(bind=bind or engine)
    logger.info("Database tables dropped")
