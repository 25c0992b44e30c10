import os
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import marketbot.models  # noqa: F401
from marketbot.database import Base
from marketbot.models import User
from marketbot.services.classifier_service import KeywordClassifier


@pytest.fixture
def engine():
    """In-memory SQLite shared across sessions of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def classifier():
    return KeywordClassifier()


@pytest.fixture
def make_user(db_session, now):
    """Create a persisted user; keyword arguments override column values."""

    def _make(address: str = "15550001111", **overrides) -> User:
        values = {
            "address": address,
            "trust_level": "BASIC",
            "daily_listing_count": 0,
            "spam_attempts": 0,
            "conversation_state": "VERIFIED",
            "conversation_data": {},
            "created_at": now,
            "consented_at": now,
        }
        values.update(overrides)
        user = User(**values)
        db_session.add(user)
        db_session.flush()
        return user

    return _make
