"""
Shared fixtures: an in-memory SQLite database built from the ORM metadata
(so unique and partial indexes are real) and a small seeding helper.
"""
import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import build_engine, init_db

from factories import Seeder


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """Session configured like the app's SessionLocal."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    return Seeder(db)
