"""Database session management."""

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from procurement.core.config import settings


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine with the pool and pragma settings used by the app."""
    connect_args = {}
    if is_sqlite(database_url):
        connect_args = {"check_same_thread": False}
        # SQLite doesn't support connection pooling the same way
        pool_config = {"pool_pre_ping": True}
    else:
        # PostgreSQL connection pooling configuration
        pool_config = {
            "pool_size": 20,          # Number of connections to keep open
            "max_overflow": 40,       # Additional connections allowed beyond pool_size
            "pool_pre_ping": True,    # Test connections before using them
            "pool_recycle": 3600,     # Recycle connections after 1 hour
        }
    pool_config.update(kwargs)

    new_engine = create_engine(database_url, connect_args=connect_args, **pool_config)

    # Enable foreign key enforcement for SQLite
    if is_sqlite(database_url):
        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = build_engine(settings.database_url, echo=settings.debug and settings.log_level == "DEBUG")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Type alias for dependency injection
DbSession = Annotated[Session, Depends(get_db)]
