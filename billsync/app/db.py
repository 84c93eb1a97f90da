import os
from contextlib import contextmanager

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .config import settings


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)

# Opened lazily so importing the app (tests, worker --help) never dials the database.
_pool = ConnectionPool(
    conninfo=settings.db_url,
    min_size=_POOL_MIN,
    max_size=_POOL_MAX,
    kwargs={"row_factory": dict_row},
    open=False,
)


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` commits whatever is still open on success,
    # rolls back on exception and returns the connection to the pool.
    # Handlers that need several commits (webhook log, per-row bulk work)
    # open their own `conn.transaction()` blocks inside.
    if pool.closed:
        pool.open()
    with pool.connection() as conn:
        yield conn


def get_conn():
    return _pooled_conn(_pool)


def close_pools() -> None:
    # Best-effort shutdown hook (uvicorn shutdown).
    try:
        _pool.close()
    except Exception:
        pass
