# statcube/db/runner.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)

# Generated statements carry no bind parameters; never let the driver interpolate them.
NO_PARAMETERS = {"no_parameters": True}


class StatementRunner(Protocol):
    """What the cube engines need from the database."""

    script: list[str]

    async def execute(self, sql: str) -> None: ...

    async def fetch_all(self, sql: str) -> list[dict[str, Any]]: ...

    async def fetch_scalar(self, sql: str) -> Any: ...


class SqlRunner:
    """Executes generated SQL one statement at a time on a single connection."""

    def __init__(self, conn: AsyncConnection, script: Optional[list[str]] = None):
        self.conn = conn
        self.script = script if script is not None else []

    @property
    def last_statement(self) -> Optional[str]:
        return self.script[-1] if self.script else None

    async def execute(self, sql: str) -> None:
        self.script.append(sql)
        logger.debug("Executing: %s", sql)
        await self.conn.exec_driver_sql(sql, execution_options=NO_PARAMETERS)

    async def fetch_all(self, sql: str) -> list[dict[str, Any]]:
        logger.debug("Fetching: %s", sql)
        result = await self.conn.exec_driver_sql(sql, execution_options=NO_PARAMETERS)
        return [dict(row) for row in result.mappings().all()]

    async def fetch_scalar(self, sql: str) -> Any:
        logger.debug("Fetching scalar: %s", sql)
        result = await self.conn.exec_driver_sql(sql, execution_options=NO_PARAMETERS)
        return result.scalar()


class CubeDatabase:
    """Hands out transactional runners bound to the async engine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @asynccontextmanager
    async def transaction(
        self, script: Optional[list[str]] = None
    ) -> AsyncIterator[StatementRunner]:
        async with self.engine.begin() as conn:
            yield SqlRunner(conn, script)


_database: Optional[CubeDatabase] = None


def get_cube_database() -> CubeDatabase:
    global _database
    if _database is None:
        from statcube.db.engine import get_engine

        _database = CubeDatabase(get_engine())
    return _database
