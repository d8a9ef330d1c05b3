from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy.pool import QueuePool
from backend.core.config import get_settings

settings = get_settings()


def get_engine(db_url: str = None):
    """Create database engine with appropriate settings for SQLite or PostgreSQL."""
    db_url = db_url or settings.database.url

    if "sqlite" in db_url:
        # SQLite: API threads and background tasks share the engine
        return create_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False}
        )
    else:
        # PostgreSQL: pooled connections for concurrent uploads
        return create_engine(
            db_url,
            echo=False,
            poolclass=QueuePool,
            pool_size=8,
            max_overflow=8,
            pool_timeout=10,
            pool_recycle=1800,
            pool_pre_ping=True
        )


engine = get_engine()


def create_db_and_tables(target_engine=None):
    # Import tables so they register on SQLModel.metadata
    from backend.models import db  # noqa: F401

    SQLModel.metadata.create_all(target_engine or engine)


def get_session():
    with Session(engine) as session:
        yield session
