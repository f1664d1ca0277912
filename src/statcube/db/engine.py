# statcube/db/engine.py
"""
Engines for the two drivers in use.

Builds, promotion and the query API run on asyncpg; the CLI inspection
commands use a blocking psycopg engine. Both are derived from the single
``database_url`` setting, whichever driver it names.
"""
from __future__ import annotations

from typing import Any, AsyncGenerator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from statcube.core.config import settings

APPLICATION_NAME = "statcube"

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


def with_driver(database_url: str, driver: str) -> str:
    """postgresql[+anything]://... -> postgresql+<driver>://..."""
    url = make_url(database_url)
    return url.set(drivername=f"postgresql+{driver}").render_as_string(hide_password=False)


def _async_connect_args() -> dict[str, Any]:
    server_settings = {"application_name": APPLICATION_NAME}
    if settings.db_statement_timeout_ms:
        server_settings["statement_timeout"] = str(settings.db_statement_timeout_ms)
    return {"server_settings": server_settings}


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None:
        _engine = create_async_engine(
            with_driver(settings.database_url, "asyncpg"),
            pool_size=settings.db_pool_size,
            pool_pre_ping=True,
            connect_args=_async_connect_args(),
        )
        _sessionmaker = async_sessionmaker(
            bind=_engine,
            expire_on_commit=False,
            autoflush=False,
            class_=AsyncSession,
        )
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessionmaker is None:
        get_engine()
    assert _sessionmaker is not None
    return _sessionmaker


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_sessionmaker()() as session:
        yield session


async def dispose_engine() -> None:
    """Close pooled connections, required before the event loop that opened them ends."""
    if _engine is not None:
        await _engine.dispose()


def get_sync_engine(database_url: Optional[str] = None) -> Engine:
    """Blocking psycopg engine for CLI inspection commands."""
    return create_engine(
        with_driver(database_url or settings.database_url, "psycopg"),
        connect_args={"application_name": f"{APPLICATION_NAME}-cli"},
    )
