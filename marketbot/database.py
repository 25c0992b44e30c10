from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from marketbot.config import settings


def _connect_args(url: str) -> dict:
    # FastAPI runs sync handlers and background tasks in a threadpool.
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create tables for development setups without migrations."""
    import marketbot.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
