from __future__ import annotations

import functools
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, TypeVar

import psycopg
from loguru import logger
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from . import sql as q
from .errors import SchemaMissing, StoreError, map_db_error

R = TypeVar("R")


@dataclass
class _Cfg:
    dsn: str
    app_name: Optional[str] = "formsync"
    connect_timeout: float = 10.0
    statement_timeout_ms: Optional[int] = None
    pool_min: int = 1
    pool_max: int = int(os.environ.get("FORMSYNC_POOL_MAX", "10"))


class Database:
    """Pooled Postgres access shared by every formsync store.

    Usage:
        db = Database({"dsn": "postgresql://..."})
        queue = WorkQueueStore(db)
    """

    def __init__(self, config: dict):
        c = _Cfg(**config)
        self._cfg = c
        self._pool = ConnectionPool(
            conninfo=c.dsn,
            min_size=c.pool_min,
            max_size=c.pool_max,
            timeout=c.connect_timeout,
            kwargs={},
            open=False,
        )
        self._pool.open(wait=False)

    def close(self) -> None:
        self._pool.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        """Connection in a transaction; commits on success, rolls back and maps errors otherwise."""
        try:
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    if self._cfg.app_name:
                        cur.execute("SET application_name = %s", (self._cfg.app_name,))
                    if self._cfg.statement_timeout_ms is not None:
                        cur.execute(
                            "SET statement_timeout = %s", (f"{self._cfg.statement_timeout_ms}ms",)
                        )
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except psycopg.Error as e:
            raise map_db_error(e) from e

    @contextmanager
    def cursor(self) -> Iterator[psycopg.Cursor]:
        with self.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            yield cur

    # ---------- admin / health ----------

    def health(self) -> bool:
        with self.connection() as conn, conn.cursor() as cur:
            cur.execute(q.HEALTH)
            _ = cur.fetchone()
            return True

    def schema_version(self) -> Optional[str]:
        try:
            with self.connection() as conn, conn.cursor() as cur:
                cur.execute(q.SCHEMA_VERSION)
                row = cur.fetchone()
                return row[0] if row else None
        except SchemaMissing:
            return None

    def table_exists(self, table: q.Table) -> bool:
        with self.connection() as conn, conn.cursor() as cur:
            cur.execute(q.TABLE_EXISTS, {"name": q.Table(table).value})
            row = cur.fetchone()
            return bool(row and row[0])

    def row_count(self, table: q.Table) -> int:
        try:
            with self.connection() as conn, conn.cursor() as cur:
                cur.execute(q.count_rows(q.Table(table)))
                row = cur.fetchone()
                return int(row[0]) if row else 0
        except SchemaMissing:
            return 0


def degrade_on_store_error(default: Callable[[], Any]):
    """Return ``default()`` instead of raising when a read hits a missing or broken store.

    Dashboards and health checks call these reads; a half-initialized install
    must not crash them.
    """

    def deco(fn: Callable[..., R]) -> Callable[..., R]:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except StoreError as e:
                logger.warning(f"{fn.__qualname__} degraded ({type(e).__name__}): {e}")
                return default()

        return wrapper

    return deco
