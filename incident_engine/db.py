"""
File: db.py
Purpose: Connection management for Postgres via SQLAlchemy: engine/pool lifecycle,
         transactional sessions, schema bootstrap, health ping and dialect-aware
         upsert statements.

The Database object is constructed explicitly and handed to every component;
there is no module-level pool. SQLite URLs are accepted for local runs and tests.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.dialects import postgresql, sqlite

from .instrumentation import DB_TIME
from .models import Base

log = logging.getLogger("incident-engine.db")


def _sqlite_transactions(engine: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT and rollback work.
    BEGIN IMMEDIATE takes the write lock up front; concurrent writers queue on
    the busy timeout instead of failing a lock upgrade.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Owns the SQLAlchemy engine and hands out short transactional sessions."""

    def __init__(self, url: str, pool_min: int = 1, pool_max: int = 10, echo: bool = False):
        self.url = url
        self.pool_min = pool_min
        self.pool_max = pool_max
        self.echo = echo
        self._engine: Optional[Engine] = None
        self._sessions: Optional[sessionmaker] = None

    # ----------------------- lifecycle -----------------------

    def open(self) -> None:
        """Create the engine (idempotent) and warm a connection."""
        if self._engine is not None:
            return
        kwargs = {"echo": self.echo, "pool_pre_ping": True}
        if self.url.startswith("sqlite"):
            # File databases are shared across worker threads; wait on writer locks.
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        else:
            kwargs["pool_size"] = self.pool_min
            kwargs["max_overflow"] = max(0, self.pool_max - self.pool_min)
        with DB_TIME.labels(route="pool_init").time():
            self._engine = create_engine(self.url, **kwargs)
        if self.url.startswith("sqlite"):
            _sqlite_transactions(self._engine)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        self.ping()
        log.info("database opened", extra={"dialect": self.dialect})

    def close(self) -> None:
        """Dispose the pool and clear the handle."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._sessions = None
            log.info("database closed")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    # ----------------------- sessions -----------------------

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session inside one transaction; commit on success, rollback on error."""
        if self._sessions is None:
            raise RuntimeError("Database is not open")
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert(self, table):
        """Return the dialect's INSERT construct (supports ON CONFLICT)."""
        if self.dialect == "postgresql":
            return postgresql.insert(table)
        if self.dialect == "sqlite":
            return sqlite.insert(table)
        raise RuntimeError(f"Unsupported dialect for upsert: {self.dialect}")

    # ----------------------- schema / health -----------------------

    def ensure_schema(self) -> None:
        """Create all tables and indexes if missing (dev/test; prod uses alembic)."""
        with DB_TIME.labels(route="schema").time():
            Base.metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Run SELECT 1; raise on failure."""
        with DB_TIME.labels(route="ping").time():
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        return True

    def healthy(self) -> bool:
        """Non-raising variant of ping() for readiness probes."""
        try:
            return self.ping()
        except Exception as e:
            log.warning("database ping failed", extra={"err": str(e)})
            return False

    # ----------------------- ASYNC wrappers -----------------------

    async def aopen(self) -> None:
        await asyncio.to_thread(self.open)

    async def aclose(self) -> None:
        await asyncio.to_thread(self.close)

    async def aensure_schema(self) -> None:
        await asyncio.to_thread(self.ensure_schema)
