# statcube/api/healthcheck.py
from __future__ import annotations

import logging

from sqlalchemy import text

from statcube.core.config import settings
from statcube.db.engine import get_engine

logger = logging.getLogger(__name__)

SCHEMA_EXISTS = text("SELECT 1 FROM pg_namespace WHERE nspname = :schema")


async def health_checks() -> dict[str, bool]:
    """
    Database connectivity plus the two schemas the ingestion pipeline fills.

    A missing source schema does not stop reads of built cubes, but every
    build would fail on it.
    """
    checks = {
        "database": False,
        settings.data_tables_schema: False,
        settings.lookup_tables_schema: False,
    }
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
            checks["database"] = True
            for schema in (settings.data_tables_schema, settings.lookup_tables_schema):
                result = await conn.execute(SCHEMA_EXISTS, {"schema": schema})
                checks[schema] = result.first() is not None
    except Exception as e:
        logger.error("Database connectivity failed: %s", e)

    for name, ok in checks.items():
        if not ok:
            logger.warning("Health check failed: %s", name)
    return checks


async def is_healthly() -> bool:
    """True when the database itself cannot be reached."""
    return not (await health_checks())["database"]
