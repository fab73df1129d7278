# db.py
from contextlib import contextmanager

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

from settings import settings

_pool: ThreadedConnectionPool | None = None


def init_pool() -> ThreadedConnectionPool:
    """
    Open the grant store's connection pool on first use.
    Request handlers run in FastAPI's threadpool, so the pool is thread-safe.
    """
    global _pool
    if _pool is None:
        dsn = (settings.DATABASE_URL or "").strip()
        if not dsn:
            raise RuntimeError("DATABASE_URL is not set.")
        psycopg2.extras.register_default_jsonb()
        _pool = ThreadedConnectionPool(
            minconn=1,
            maxconn=settings.DB_POOL_MAX,
            dsn=dsn,
            connect_timeout=5,
        )
    return _pool


def close_pool() -> None:
    global _pool
    if _pool:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn():
    """
    One transaction per block: commit on success, rollback on error.

    Grant row locks (SELECT ... FOR UPDATE) are held until the block exits,
    so keep upstream HTTP calls outside of it.
    """
    pool = init_pool()
    conn = pool.getconn()

    try:
        with conn.cursor() as cur:
            # a stuck lock on one pool must not pin a worker thread
            cur.execute("SET statement_timeout = %s;", (f"{settings.DB_STATEMENT_TIMEOUT_MS}ms",))
            cur.execute("SET lock_timeout = %s;", (f"{settings.DB_LOCK_TIMEOUT_MS}ms",))
            cur.execute("SET application_name = 'kanzu_pools';")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        pool.putconn(conn)
