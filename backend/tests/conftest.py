"""
Shared test fixtures for Lotline tests

Provides database setup, client creation, and store fixtures.
"""
import os

# Settings are cached on first import; keep the app off PostgreSQL in tests
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from lotline.main import app  # noqa: E402
from lotline.db.base import Base  # noqa: E402
from lotline.db.session import get_db  # noqa: E402
from lotline.services.lot_generator import LotSequenceGenerator, SqlLotRecordStore  # noqa: E402
from lotline.services.lot_mapping import LotMappingService, SqlLotMappingStore  # noqa: E402
from lotline.services.sequence_store import SqlSequenceStore  # noqa: E402


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine):
    """Create all tables for testing using SQLAlchemy metadata"""
    from lotline.models import (  # noqa: F401
        LotSequenceCounter, GeneratedLotNumber, JobLotMapping, JobLotUsage
    )
    Base.metadata.create_all(bind=engine)


def drop_tables(engine):
    """Drop all tables after testing"""
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Create a fresh database session for each test"""
    create_tables(engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        drop_tables(engine)


@pytest.fixture
def client(db_session):
    """Create a test client with database override"""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sequence_store(db_session):
    return SqlSequenceStore(db_session)


@pytest.fixture
def generator(db_session, sequence_store):
    return LotSequenceGenerator(sequence_store, SqlLotRecordStore(db_session))


@pytest.fixture
def mapping_service(db_session, generator):
    return LotMappingService(SqlLotMappingStore(db_session), generator)
