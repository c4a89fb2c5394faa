from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2 import sql
from psycopg2.pool import ThreadedConnectionPool

from payrecon.config import settings

logger = logging.getLogger(__name__)

_pool: ThreadedConnectionPool | None = None


def init_pool() -> None:
    global _pool
    if _pool is not None:
        return
    if not settings.db_enabled:
        return
    _pool = ThreadedConnectionPool(
        settings.db_pool_min,
        settings.db_pool_max,
        dsn=settings.db_dsn,
        connect_timeout=settings.db_connect_timeout,
    )


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn() -> Iterator[psycopg2.extensions.connection]:
    """Yield a pooled connection wrapped in one database transaction.

    Yields None when the database is not configured. Commits on normal exit
    and rolls back when the block raises.
    """
    if _pool is None:
        init_pool()
    if _pool is None:
        yield None  # type: ignore[misc]
        return
    conn: psycopg2.extensions.connection | None = None
    try:
        # Retry once when the pool hands back a connection the server closed
        for attempt in range(2):
            conn = _pool.getconn()
            try:
                if settings.db_schema:
                    with conn.cursor() as cur:
                        cur.execute(
                            sql.SQL("SET search_path TO {}").format(sql.Identifier(settings.db_schema))
                        )
                break
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                logger.info("discarding stale db connection", extra={"event": "db_reconnect"})
                _pool.putconn(conn, close=True)
                conn = None
                if attempt == 1:
                    raise
        yield conn
        conn.commit()
    except Exception:
        if conn is not None and not conn.closed:
            conn.rollback()
        raise
    finally:
        if conn is not None:
            _pool.putconn(conn)
