"""
core/database.py -- Async SQLAlchemy engine construction.

One engine (and therefore one connection pool) per process. It is built here,
handed to auth.store.AuthStore, and disposed by whoever opened it (the FastAPI
lifespan or the CLI). Nothing in the code base holds an engine in a module
global.

Drivers:
  sqlite+aiosqlite:///path.db  -- local development and tests
  sqlite+aiosqlite://          -- in-memory; a StaticPool keeps the single
                                  connection alive so every session sees the
                                  same schema
  postgresql+asyncpg://...     -- production

TLS for PostgreSQL is driven by DATABASE_SSL:
  disable  -- plain connection
  require  -- TLS, verified against the system trust store (or
              DATABASE_SSL_CA_CERT when given)
  verify   -- TLS, verified against DATABASE_SSL_CA_CERT only (required)
DATABASE_SSL_ALLOW_INSECURE turns verification off and is rejected by the
settings validator in production.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import ssl

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from core.config import Settings

logger = logging.getLogger("accessgate.store")


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.rstrip("/").endswith(":") or ":memory:" in url)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def build_ssl_context(settings: Settings) -> ssl.SSLContext | None:
    """Return the TLS context for PostgreSQL connections, or None when disabled.

    DATABASE_SSL_CA_CERT holds PEM text; literal "\\n" sequences are accepted so
    the certificate fits in a single-line environment variable.
    """
    mode = settings.database_ssl
    if mode == "disable":
        return None

    ca_pem = settings.database_ssl_ca_cert.replace("\\n", "\n").strip()
    if mode == "verify" and not ca_pem:
        raise ValueError("DATABASE_SSL=verify requires DATABASE_SSL_CA_CERT.")

    context = ssl.create_default_context(cadata=ca_pem or None)
    if settings.database_ssl_allow_insecure:
        logger.warning("Database TLS certificate verification is DISABLED (development only).")
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def build_engine(url: str, settings: Settings | None = None) -> AsyncEngine:
    """Create the process-wide AsyncEngine for the given database URL."""
    if url.startswith("sqlite"):
        if _is_memory_sqlite(url):
            engine = create_async_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_async_engine(url, connect_args={"check_same_thread": False})
            event.listen(engine.sync_engine, "connect", _set_wal_mode)
        return engine

    connect_args: dict = {}
    if settings is not None:
        context = build_ssl_context(settings)
        if context is not None:
            connect_args["ssl"] = context
    return create_async_engine(url, connect_args=connect_args, pool_pre_ping=True)
