from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from .config import settings


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def _is_sqlite_memory(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:")


def _is_postgres(database_url: str) -> bool:
    return database_url.startswith("postgresql")


def _ensure_sqlite_dir(database_url: str) -> None:
    """
    Ensure the parent folder exists for SQLite file-based DB URLs like:
      sqlite:///./data/hikeclub.sqlite
      sqlite:////absolute/path/to/db.sqlite
    """
    if not database_url.startswith("sqlite:///") or _is_sqlite_memory(database_url):
        return

    path = database_url.replace("sqlite:///", "", 1)
    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)


def _sqlite_pragmas(engine: Engine) -> None:
    """
    Pragmas that make SQLite usable for concurrent local requests.
    """

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA busy_timeout=5000;")  # reduce 'database is locked'
        cursor.close()


def _postgres_session_settings(engine: Engine) -> None:
    """
    Per-connection settings for Postgres.
    """

    @event.listens_for(engine, "connect")
    def _set_postgres_settings(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        # Redemption requests must never hang behind a stuck lock.
        cursor.execute("SET statement_timeout = 10000;")
        cursor.close()


def get_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create and return the SQLAlchemy engine.

    - Uses settings.resolved_database_url:
        DATABASE_URL (preferred) OR fallback DB_PATH
    - SQLite gets pragmas + check_same_thread=False for FastAPI
    - In-memory SQLite shares one connection (tests, throwaway runs)
    """
    database_url = database_url or settings.resolved_database_url

    if _is_sqlite_memory(database_url):
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    if _is_sqlite(database_url):
        _ensure_sqlite_dir(database_url)

    connect_args = {"check_same_thread": False} if _is_sqlite(database_url) else {}

    engine = create_engine(
        database_url,
        echo=False,
        connect_args=connect_args,
        pool_pre_ping=True,
    )

    if _is_sqlite(database_url):
        _sqlite_pragmas(engine)

    if _is_postgres(database_url):
        _postgres_session_settings(engine)

    return engine


# Single, shared engine for the app process
engine: Engine = get_engine()


def register_models() -> None:
    """
    Central place to import ALL models so SQLModel registers them.
    """
    from .models.access_token import AccessToken  # noqa: F401
    from .models.access_log import AccessLogEntry  # noqa: F401
    from .models.qr_token import QRToken  # noqa: F401
    from .models.whatsapp_request import ManualAccessRequest  # noqa: F401


def init_db(create_tables: bool = True) -> None:
    """
    Register models, then create missing tables.
    Non-destructive: create_all will not drop or alter existing tables.
    """
    register_models()
    if create_tables:
        SQLModel.metadata.create_all(engine)


def drop_db() -> None:
    register_models()
    SQLModel.metadata.drop_all(engine)


def get_session() -> Session:
    """
    Simple session factory (services and scripts).
    """
    return Session(engine)
