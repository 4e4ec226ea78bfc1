"""Database package for the lore engine."""

from .database import SessionLocal, init_db, make_engine

__all__ = ["SessionLocal", "init_db", "make_engine"]
