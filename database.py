"""
Database state and session helpers for the OAP chatbot backend.
"""

import os
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base
import auth_models  # noqa: F401  registers users/api_keys with Base

logger = logging.getLogger("oapchat.db")


# Database state holder (avoids global scoping issues)
class DB:
    engine = None
    SessionLocal = None


def resolve_database_url() -> str | None:
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return database_url
    db_backend = os.environ.get("DB_BACKEND", "postgres").strip().lower()
    if db_backend == "sqlite":
        sqlite_path = os.environ.get("SQLITE_PATH", "./oapchat.db")
        return f"sqlite:///{sqlite_path}"
    return None


def init_db():
    """Initialize database connection and create tables."""
    database_url = resolve_database_url()
    if not database_url:
        raise RuntimeError("DATABASE_URL environment variable is required")

    logger.info("Connecting to database...")
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    DB.engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
    DB.SessionLocal = sessionmaker(bind=DB.engine)

    logger.info("Creating tables...")
    Base.metadata.create_all(DB.engine)
    logger.info("Database initialized")


def close_db():
    if DB.engine is not None:
        DB.engine.dispose()
        logger.info("Database engine disposed")


def get_db_session():
    """Database dependency"""
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized")
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()
