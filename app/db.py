from sqlmodel import create_engine, SQLModel, Session
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL


def build_engine(url: str):
    if url.startswith("sqlite"):
        # SQLite needs cross-thread access for FastAPI's threadpool
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        echo=False,  # Disable query logging in production
        pool_size=5,
        max_overflow=10,  # Allow burst connections
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min
        pool_timeout=30,  # Wait up to 30s for a connection
    )


engine = build_engine(DATABASE_URL)


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables():
    # Import models so their tables are registered on the metadata
    import app.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Database tables ensured")
