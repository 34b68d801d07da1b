"""
SQLAlchemy engine and session plumbing for the Storefront service.

Request handlers get a session from ``get_db``; the session is closed when
the request finishes, and units of work commit explicitly (see ``crud``).
"""
from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL

engine = create_engine(DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def get_db():
    """
    FastAPI dependency yielding a request-scoped session.

    Yields:
        Session: SQLAlchemy session, closed after the response
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
