"""
db.py

PostgreSQL (psycopg2) helpers with a process-global connection pool.

The remediation store, lawbook provider and audit sink all run several
statements per operation, so they check out one connection via ``db_conn()``
(or ``db_transaction()``) and use the *_conn helpers below on it.

JSON columns are written through ``to_jsonb`` and read back as Python values
(psycopg2 decodes JSONB automatically).
"""

from __future__ import annotations

import atexit
import json
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from apps.backend.db_metrics import measure_query
from contracts.canonical import to_jsonable
from infra.config import DatabaseConfig, get_settings

logger = logging.getLogger(__name__)


def _db_config() -> DatabaseConfig:
    cfg = get_settings().db
    if not cfg.url:
        raise RuntimeError("DB_URL is not set")
    return cfg


# Keep a single global pool per process.
_POOL = None
_POOL_DSN: str | None = None


def _get_pool():
    """Return a process-global psycopg2 pool, creating it on first use."""
    global _POOL, _POOL_DSN

    cfg = _db_config()
    if _POOL is not None and _POOL_DSN == cfg.url:
        return _POOL

    from psycopg2.pool import SimpleConnectionPool

    _POOL = SimpleConnectionPool(
        minconn=1,
        maxconn=int(cfg.pool_maxconn),
        dsn=cfg.url,
        connect_timeout=int(cfg.connect_timeout),
    )
    _POOL_DSN = cfg.url
    return _POOL


def _close_pool() -> None:
    """Close the pool on process exit."""
    global _POOL
    try:
        if _POOL is not None:
            _POOL.closeall()
    except Exception as exc:
        logger.debug("db pool close failed: %s", exc)
    finally:
        _POOL = None


atexit.register(_close_pool)


@contextmanager
def db_conn() -> Iterator[Any]:
    """Yield a pooled psycopg2 connection.

    Callers must not close the connection; it is returned to the pool. Any open
    transaction is rolled back before the connection goes back.
    """
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
    finally:
        try:
            conn.rollback()
        except Exception as exc:
            logger.debug("db rollback on release failed: %s", exc)
        try:
            pool.putconn(conn)
        except Exception:
            conn.close()


@contextmanager
def db_transaction() -> Iterator[Any]:
    """Yield a pooled connection and commit on success, roll back on error."""
    with db_conn() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _query_name(sql: str, *, operation: str) -> str:
    """Return a stable query operation label for metrics/logging."""
    text = " ".join(str(sql or "").strip().split())
    if not text:
        return operation
    first_token = text.split(" ", 1)[0].lower()
    return f"{operation}:{first_token}"


def execute_conn(conn: Any, sql: str, params: Sequence[Any] | None = None) -> int:
    """Execute a statement on an existing connection and return the rowcount."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_conn")):
            cur.execute(sql, params or ())
        return int(cur.rowcount or 0)


def _cols_from_description(desc: Any) -> list[str]:
    """Extract column names from cursor.description."""
    if not desc:
        return []
    cols: list[str] = []
    for i, d in enumerate(desc):
        try:
            name = d[0]
        except (IndexError, KeyError, TypeError):
            name = None
        cols.append(str(name) if name else f"col_{i}")
    return cols


def fetch_one_dict_conn(conn: Any, sql: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
    """Execute a query and return one row as a dict (or None)."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_one_dict_conn")):
            cur.execute(sql, params or ())
        row = cur.fetchone()
        if row is None:
            return None
        cols = _cols_from_description(getattr(cur, "description", None))
        if not cols:
            return None
        return dict(zip(cols, row, strict=False))


def fetch_all_dict_conn(conn: Any, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
    """Execute a query and return all rows as dicts."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_all_dict_conn")):
            cur.execute(sql, params or ())
        rows = cur.fetchall()
        cols = _cols_from_description(getattr(cur, "description", None))
        if not cols:
            return []
        return [dict(zip(cols, r, strict=False)) for r in rows]


def to_jsonb(value: Any) -> str | None:
    """Serialize a Python object to a JSON string suitable for ``%s::jsonb``."""
    if value is None:
        return None
    return json.dumps(to_jsonable(value), ensure_ascii=False, separators=(",", ":"))
