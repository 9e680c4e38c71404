"""Database session management."""

import logging
from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from stockrecon.core.config import settings
from stockrecon.db.base import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine - handle SQLite specially for check_same_thread."""
    connect_args = {}
    pool_config = {}

    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        pool_config = {
            "pool_pre_ping": True,
        }
    else:
        # PostgreSQL/MySQL connection pooling configuration
        pool_config = {
            "pool_size": 20,          # Number of connections to keep open
            "max_overflow": 40,       # Additional connections allowed beyond pool_size
            "pool_pre_ping": True,    # Test connections before using them
            "pool_recycle": 3600,     # Recycle connections after 1 hour
        }

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        echo=echo,
        **pool_config,
    )

    # Enable foreign key enforcement for SQLite
    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = build_engine(settings.database_url, echo=settings.debug and settings.log_level == "DEBUG")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = engine) -> None:
    """Create all tables (SQLite / local mode)."""
    # Import all models so they're registered with Base.metadata
    import stockrecon.models  # noqa: F401

    Base.metadata.create_all(bind=bind)
    logger.info("Database tables created")


def get_db() -> Generator[Session, None, None]:
    """Yield a database session and always close it."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
