"""SQLAlchemy-backed persistence utilities (PostgreSQL, SQLite for local runs)."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..db import models as _models  # noqa: F401  # ensure models are registered
from ..db.base import Base
from .config import settings

logger = logging.getLogger(__name__)

_SUPPORTED_PREFIXES = ("postgresql", "sqlite")


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    url: str

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class Database:
    """SQLAlchemy wrapper owning the engine and the session unit of work."""

    def __init__(self, url: str | None = None) -> None:
        resolved_url = url or settings.database_url

        if not resolved_url.startswith(_SUPPORTED_PREFIXES):
            raise RuntimeError(
                f"Unsupported database: {resolved_url.split('://')[0]}. "
                "Set GENBROKER_DATABASE_URL to a PostgreSQL (or SQLite) connection string."
            )

        self.settings = DatabaseSettings(url=resolved_url)
        logger.info("Database: initializing connection", extra={"data": {"url_prefix": resolved_url.split("://")[0]}})

        if self.settings.is_sqlite:
            self._engine = create_engine(
                resolved_url,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            _serialize_sqlite_writes(self._engine)
        else:
            self._engine = create_engine(resolved_url, pool_pre_ping=True)

        self._sessionmaker = sessionmaker(
            bind=self._engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create missing tables (local runs and tests; production uses Alembic)."""
        Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        self._engine.dispose()


def insert_for(session: Session, model):  # noqa: ANN001, ANN201
    """Dialect-specific INSERT so callers can use ``on_conflict_do_nothing``."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _serialize_sqlite_writes(engine: Engine) -> None:
    """Open every SQLite transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, which lets two connections
    both hold read locks and then deadlock on upgrade. Taking the write lock
    up front makes conditional updates behave like row locks do on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ANN001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN IMMEDIATE")
