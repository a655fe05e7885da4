"""
Database engine and session factory.

SQLite (with the JSON1 functions) is the default store; any SQLAlchemy URL
with equivalent JSON support can be swapped in through DATABASE_URL.
"""
from pathlib import Path
from typing import Iterator, Sequence
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from dataexport.core.config import settings


def _engine_kwargs(database_url: str) -> dict:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return {}

    # Make sure the folder for a file database exists
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return {"connect_args": {"check_same_thread": False}}


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Keeps IN (...) lists under SQLite's bound parameter limit
QUERY_CHUNK = 500


def chunked(items: Sequence, size: int = QUERY_CHUNK) -> Iterator[list]:
    """Consecutive slices of at most ``size`` items."""
    items = list(items)
    for start in range(0, len(items), size):
        yield items[start:start + size]
