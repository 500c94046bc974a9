"""
Shared pytest fixtures for ATS Verify tests.

Database tests run against an in-memory SQLite database shared through a
single connection, so API requests served from the TestClient thread see the
same data as the test body.
"""

import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager
from database.connection import create_sqlite_engine
from database.models import Base


APPLICATIONS_CSV = (
    "iin,doc,status,appid\n"
    "A,D1,Approved,APP-1\n"
    "B,D1,Rejected,APP-2\n"
    "A,D2,Approved,APP-3\n"
    "A,D2,Approved,APP-4\n"
    "A,D2,Approved,APP-5\n"
    "A,D2,Approved,APP-6\n"
).encode('utf-8')


@pytest.fixture
def config(tmp_path):
    """Default configuration (no config file on disk)."""
    ConfigManager.reset_instance()
    yield ConfigManager(str(tmp_path / "missing.yaml"))
    ConfigManager.reset_instance()


@pytest.fixture
def engine():
    """In-memory SQLite engine with working SAVEPOINT support."""
    engine = create_sqlite_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Session bound to the test engine; rolled back after the test."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def applications_csv():
    """Upload with one reused document and one yellow-tier IIN."""
    return APPLICATIONS_CSV
