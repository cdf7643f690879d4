"""
Database engine and session factory for the SQL result store.

Uses SQLAlchemy 2.x style with DeclarativeBase.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from cloudaudit.core.config import get_settings

# Run threads write concurrently; let SQLite wait for the lock instead of failing
SQLITE_BUSY_TIMEOUT_MS = 5000


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine suited to the result store.

    SQLite connections are shared across the run worker threads and wait on
    a locked database; other databases get pre-ping for recycled connections.
    """
    is_sqlite = database_url.startswith("sqlite")
    engine = create_engine(
        database_url,
        pool_pre_ping=not is_sqlite,
        echo=echo,
        connect_args={"check_same_thread": False} if is_sqlite else {},
    )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _set_busy_timeout(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
            cursor.close()

    return engine


settings = get_settings()

engine = build_engine(settings.sqlalchemy_database_uri, echo=settings.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.x style."""
    pass
