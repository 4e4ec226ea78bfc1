"""Database configuration and session management."""

import os
from pathlib import Path
import logging
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

# Base class for all models
Base = declarative_base()

# Database configuration
DATABASE_DIR = Path("data")
DATABASE_PATH = DATABASE_DIR / "lore_engine.db"
DATABASE_URL = os.environ.get("LORE_ENGINE_DATABASE_URL", f"sqlite:///{DATABASE_PATH}")
SQLITE_BUSY_TIMEOUT_SECONDS = 30


def make_engine(url: str = DATABASE_URL, echo: bool = False) -> Engine:
    """
    Create an engine for the given database URL.

    SQLite engines allow cross-thread use and wait on locks instead of
    failing immediately.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,  # Needed for SQLite
            "timeout": SQLITE_BUSY_TIMEOUT_SECONDS
        }
    return create_engine(url, connect_args=connect_args, echo=echo)


engine = make_engine()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = None):
    """
    Initialize the database.

    Creates all tables if they don't exist.
    Should be called on application startup.
    """
    bind = bind or engine

    if bind.url.get_backend_name() == "sqlite" and bind.url.database:
        Path(bind.url.database).parent.mkdir(parents=True, exist_ok=True)

    # Import all models so they're registered with Base
    from lore_engine.models import knowledge  # noqa: F401

    Base.metadata.create_all(bind=bind)

    # WAL mode lets readers proceed during vectorization writes
    if bind.url.get_backend_name() == "sqlite" and bind.url.database:
        with bind.connect() as conn:
            conn.execute(text("PRAGMA journal_mode=WAL"))
            conn.execute(text("PRAGMA synchronous=NORMAL"))
            conn.commit()

    logger.info(
        "Database config: url=%s pid=%s timeout=%ss",
        bind.url,
        os.getpid(),
        SQLITE_BUSY_TIMEOUT_SECONDS
    )
    logger.info(f"Database initialized at: {bind.url}")
