"""SQLite adapter for local development and tests.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend.

Key differences from the PostgreSQL backend:

* No connection pooling to speak of (SQLite is single-writer).
* ``set_tenant_context()`` is a no-op (no row-level security).
* Transactions open with ``BEGIN IMMEDIATE`` so writers queue on the
  database lock (bounded by ``busy_timeout``) instead of failing midway
  through a transaction with ``database is locked``.  This keeps the
  atomic upserts and lease acquisition semantics identical to PostgreSQL
  when several sessions race.
* JSONB columns fall back to SQLite's TEXT (JSON stored as strings).

INVARIANT: The same ORM code paths are exercised in local and production
modes.  Only the engine URL and tenant context differ.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_MS = 15_000


def get_local_engine(db_path: Path | str = ".billing/state.db") -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are created
        automatically.  Use ``:memory:`` for an ephemeral in-memory database
        (all sessions then share one connection).

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if db_path == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False, "timeout": _BUSY_TIMEOUT_MS / 1000},
    )
    _install_transaction_hooks(engine)
    logger.info("Created SQLite engine: %s", url)
    return engine


def _install_transaction_hooks(engine: AsyncEngine) -> None:
    """Take over transaction control from the sqlite3 driver.

    The driver's implicit transaction handling defers ``BEGIN`` until the
    first DML statement, which breaks SAVEPOINT semantics and lets two
    writers interleave reads.  Disabling it and emitting ``BEGIN IMMEDIATE``
    ourselves gives each transaction the write lock up front.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: Any, _: Any) -> None:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables.  Idempotent; safe on every startup."""
    from billing_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite tables created/verified")
