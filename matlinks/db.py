import threading
from contextlib import contextmanager

from psycopg2.extras import RealDictCursor
from psycopg2.pool import SimpleConnectionPool

from matlinks.config import DB_HOST, DB_NAME, DB_PASSWORD, DB_POOL_MAX, DB_PORT, DB_SSLMODE, DB_USER


_POOL = None
_POOL_LOCK = threading.Lock()


def _require(value: str, name: str) -> str:
    if not value:
        raise RuntimeError(f"Missing required DB setting: {name}")
    return value


def _get_pool() -> SimpleConnectionPool:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            _POOL = SimpleConnectionPool(
                minconn=1,
                maxconn=DB_POOL_MAX,
                host=_require(DB_HOST, "DB_HOST"),
                port=DB_PORT,
                dbname=_require(DB_NAME, "DB_NAME"),
                user=_require(DB_USER, "DB_USER"),
                password=_require(DB_PASSWORD, "DB_PASSWORD"),
                sslmode=DB_SSLMODE,
            )
        return _POOL


@contextmanager
def get_conn():
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
    finally:
        pool.putconn(conn)


@contextmanager
def transaction():
    """Yield a dict cursor whose statements commit together or not at all."""
    with get_conn() as conn:
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def fetch_all(query: str, params=()):
    with get_conn() as conn:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return cur.fetchall()


def fetch_one(query: str, params=()):
    with get_conn() as conn:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return cur.fetchone()


def execute(query: str, params=()):
    with get_conn() as conn:
        try:
            with conn.cursor() as cur:
                cur.execute(query, params)
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def execute_returning_one(query: str, params=()):
    with get_conn() as conn:
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return row
