"""
SQLite database setup for the run journal and watch snapshots.
"""
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config import CONFIG_DIR

logger = logging.getLogger(__name__)

# Database file name inside the config directory
CATALOG_DB_NAME = "catalog.db"

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine = None
_SessionLocal = None


def get_database_url(config_dir: Optional[Path] = None) -> str:
    """Get the SQLite database URL."""
    return f"sqlite:///{Path(config_dir or CONFIG_DIR) / CATALOG_DB_NAME}"


def init_db(config_dir: Optional[Path] = None) -> None:
    """Initialize the database, creating tables if they don't exist."""
    global _engine, _SessionLocal

    config_dir = Path(config_dir or CONFIG_DIR)
    try:
        config_dir.mkdir(parents=True, exist_ok=True)

        database_url = get_database_url(config_dir)
        logger.info("[JOURNAL] Initializing catalog database at %s", config_dir / CATALOG_DB_NAME)

        _engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

        # Import models to register them with Base
        from models import PipelineRun, WatchSnapshot  # noqa: F401

        Base.metadata.create_all(bind=_engine)
        logger.debug("[JOURNAL] Database tables created/verified")
    except Exception as e:
        logger.exception("[JOURNAL] Failed to initialize database: %s", e)
        raise


def is_initialized() -> bool:
    return _SessionLocal is not None


def get_session():
    """Get a database session. Use as context manager or close manually."""
    if _SessionLocal is None:
        logger.error("[JOURNAL] Attempted to get database session before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def get_engine():
    """Get the database engine."""
    if _engine is None:
        logger.error("[JOURNAL] Attempted to get database engine before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine
