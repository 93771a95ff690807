"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/catalog_test_config"

# Ensure test config directory exists
Path("/tmp/catalog_test_config").mkdir(parents=True, exist_ok=True)

from database import Base
from models import PipelineRun, WatchSnapshot  # noqa: F401 - registers tables
from config import AppSettings


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_session(test_engine):
    """Create a test database session."""
    # expire_on_commit=False allows accessing object attributes after commit/close
    TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)
    session = TestSessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """A session factory bound to the in-memory engine, for code that opens its own sessions."""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def settings(tmp_path):
    """Process settings pointing at a temporary directory, journal disabled."""
    return AppSettings(
        config_dir=str(tmp_path / "config"),
        output_dir=str(tmp_path / "output"),
        max_workers=2,
        journal_enabled=False,
    )
