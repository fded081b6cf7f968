"""
TimescaleDB persistence sink.

Thin wrapper over a psycopg async connection pool: schema bootstrap, batch
transactions for the batch writer, and a most-recent-first diagnostic query.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import psycopg
from loguru import logger
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from ..errors import ConnectError, StorageError, map_db_error
from ..models import InsertRow, StoredRecord
from . import sql as q

if TYPE_CHECKING:
    from ..config import RelaySettings


class TimescaleTransaction:
    """One pooled connection holding an open transaction.

    The connection goes back to the pool on commit or rollback, whichever
    comes first.
    """

    def __init__(self, pool: AsyncConnectionPool, conn: psycopg.AsyncConnection, table: str):
        self._pool = pool
        self._conn: Optional[psycopg.AsyncConnection] = conn
        self._insert = q.insert_row(table)

    @property
    def open(self) -> bool:
        return self._conn is not None

    async def insert(self, row: InsertRow) -> None:
        if self._conn is None:
            raise StorageError("transaction already finished")
        await self._conn.execute(
            self._insert,
            (row.timestamp, row.source_address, row.size, row.raw_data),
        )

    async def commit(self) -> None:
        if self._conn is None:
            raise StorageError("transaction already finished")
        try:
            await self._conn.commit()
        finally:
            await self._release()

    async def rollback(self) -> None:
        """Roll back and return the connection.

        If the rollback fails or is cancelled the connection state is unknown,
        so it is closed before going back to the pool, which then discards it.
        """
        if self._conn is None:
            return
        try:
            await self._conn.rollback()
        except BaseException:
            await self._release(broken=True)
            raise
        await self._release()

    async def _release(self, broken: bool = False) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        if broken:
            await conn.close()
        await self._pool.putconn(conn)


class TimescaleSink:
    def __init__(
        self,
        dsn: str,
        *,
        table: str = "udp_binary_data",
        pool_min: int = 1,
        pool_max: int = 25,
        max_lifetime: float = 300.0,
        max_idle: float = 600.0,
        connect_timeout: float = 5.0,
        app_name: Optional[str] = "edge_relay",
    ):
        self._dsn = dsn
        self._table = table
        self._pool_min = pool_min
        self._pool_max = pool_max
        self._max_lifetime = max_lifetime
        self._max_idle = max_idle
        self._connect_timeout = connect_timeout
        self._app_name = app_name
        self._pool: Optional[AsyncConnectionPool] = None

    @classmethod
    def from_settings(cls, settings: "RelaySettings") -> "TimescaleSink":
        return cls(
            settings.dsn,
            table=settings.table_name,
            pool_min=settings.pool_min,
            pool_max=settings.pool_max,
            max_lifetime=settings.pool_max_lifetime,
            max_idle=settings.pool_max_idle,
            connect_timeout=settings.connect_timeout,
        )

    @property
    def table(self) -> str:
        return self._table

    @property
    def connected(self) -> bool:
        return self._pool is not None

    def _require_pool(self) -> AsyncConnectionPool:
        if self._pool is None:
            raise StorageError("TimescaleDB sink is not connected")
        return self._pool

    # ---------- lifecycle ----------

    async def connect(self) -> None:
        kwargs: dict = {"autocommit": False}
        if self._app_name:
            kwargs["application_name"] = self._app_name
        pool = AsyncConnectionPool(
            conninfo=self._dsn,
            min_size=self._pool_min,
            max_size=self._pool_max,
            max_lifetime=self._max_lifetime,
            max_idle=self._max_idle,
            timeout=self._connect_timeout,
            kwargs=kwargs,
            open=False,
        )
        try:
            await pool.open(wait=self._pool_min > 0, timeout=self._connect_timeout)
            async with pool.connection() as conn:
                await conn.execute(q.HEALTH)
        except (psycopg.Error, PoolTimeout, OSError) as exc:
            await pool.close()
            raise ConnectError(f"failed to connect to TimescaleDB: {exc}") from exc

        self._pool = pool
        logger.info(f"Connected to TimescaleDB (pool {self._pool_min}-{self._pool_max})")

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            logger.info("Closing TimescaleDB connection...")
            await pool.close()

    # ---------- schema ----------

    async def ensure_schema(self, table: Optional[str] = None) -> None:
        """Create the table if absent and try to turn it into a hypertable."""
        table = table or self._table
        pool = self._require_pool()
        try:
            async with pool.connection() as conn:
                await conn.execute(q.create_table(table))
        except psycopg.Error as exc:
            raise map_db_error(exc) from exc

        try:
            async with pool.connection() as conn:
                await conn.execute(q.create_hypertable(table))
        except psycopg.Error as exc:
            logger.info(f"Note: {exc} (normal if the table is already a hypertable)")

        logger.info(f"Table '{table}' initialized")

    # ---------- writes ----------

    async def begin_batch(self) -> TimescaleTransaction:
        pool = self._require_pool()
        try:
            conn = await pool.getconn()
        except (psycopg.Error, PoolTimeout) as exc:
            raise map_db_error(exc) from exc
        return TimescaleTransaction(pool, conn, self._table)

    # ---------- reads ----------

    async def health(self) -> bool:
        pool = self._require_pool()
        try:
            async with pool.connection() as conn:
                await conn.execute(q.HEALTH)
        except (psycopg.Error, PoolTimeout) as exc:
            raise map_db_error(exc) from exc
        return True

    async def query_recent(self, table: Optional[str] = None, limit: int = 10) -> list[StoredRecord]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        pool = self._require_pool()
        try:
            async with pool.connection() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(q.recent_rows(table or self._table), (limit,))
                    rows = await cur.fetchall()
        except (psycopg.Error, PoolTimeout) as exc:
            raise map_db_error(exc) from exc
        return [StoredRecord(**r) for r in rows]
