"""
SQLite connection and the single writer.

Reads run directly on the shared aiosqlite connection. Every write goes
through one queue drained by one task, so writes commit in submission order
and never contend for the SQLite write lock. A queued item is a batch of
statements committed as one transaction.
"""
import asyncio
import logging
import os
from typing import Any, List, NamedTuple, Optional, Sequence, Tuple

import aiosqlite

from chatbridge.database.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

Statement = Tuple[str, Tuple]


class WriteResult(NamedTuple):
    lastrowid: Optional[int]
    rowcount: int


class DatabaseCore:
    """Connection lifecycle, schema bootstrap and the write queue"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[aiosqlite.Connection] = None
        self._writes: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.done()

    async def connect(self) -> None:
        if self.db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)

        self.conn = await aiosqlite.connect(self.db_path)
        self.conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self.conn.execute("PRAGMA journal_mode=WAL;")
        await self.conn.execute("PRAGMA synchronous=NORMAL;")
        await self.conn.executescript(SCHEMA_SQL)
        await self.conn.commit()

        self._writes = asyncio.Queue()
        self._writer = asyncio.create_task(self._write_loop())
        logger.info(f"💾 Database connected: {self.db_path}")

    async def close(self) -> None:
        if self._writer is not None:
            # Let queued writes land before the connection goes away
            await self._writes.join()
            self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)
            self._writer = None
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
        logger.info("💾 Database closed")

    async def _write_loop(self) -> None:
        while True:
            statements, future = await self._writes.get()
            try:
                results = []
                for query, args in statements:
                    cursor = await self.conn.execute(query, args)
                    results.append(WriteResult(cursor.lastrowid, cursor.rowcount))
                await self.conn.commit()
            except Exception as e:
                await self.conn.rollback()
                logger.error(f"❌ Write batch of {len(statements)} statement(s) rolled back: {e}")
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(results)
            finally:
                self._writes.task_done()

    async def _execute_write_batch(self, statements: Sequence[Statement]) -> List[WriteResult]:
        """Run statements in one transaction, in order. All commit or none do."""
        if not self.is_connected:
            raise RuntimeError("Database is not connected")
        future = asyncio.get_running_loop().create_future()
        await self._writes.put((list(statements), future))
        return await future

    async def _execute_write(self, query: str, args: Tuple = ()) -> WriteResult:
        return (await self._execute_write_batch([(query, args)]))[0]

    async def _fetch_one(self, query: str, args: Tuple = ()) -> Optional[aiosqlite.Row]:
        async with self.conn.execute(query, args) as cursor:
            return await cursor.fetchone()

    async def _fetch_all(self, query: str, args: Tuple = ()) -> List[aiosqlite.Row]:
        async with self.conn.execute(query, args) as cursor:
            return list(await cursor.fetchall())

    async def _fetch_value(self, query: str, args: Tuple = ()) -> Any:
        row = await self._fetch_one(query, args)
        return row[0] if row else None
