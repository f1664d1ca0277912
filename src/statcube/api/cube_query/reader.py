# statcube/api/cube_query/reader.py
"""
Read side of a built cube.

Views are resolved per locale, preferring the materialized variant once
promotion has happened, and queried with parameterised SQLAlchemy Core
statements built against the column list recorded in the cube metadata.
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

from fastapi import HTTPException
from sqlalchemy import Select, column, func, select, table, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from statcube.core.config import settings
from statcube.core.i18n import lang_code, t
from statcube.cube import sql as cube_sql
from statcube.cube.views import columns_key, materialized_view_name, view_name
from statcube.schemas.cube_query import CubeQueryModel, CubeQueryResult

logger = logging.getLogger(__name__)

RELATION_EXISTS = text(
    """
    SELECT 1
    FROM pg_class c
    JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = :schema AND c.relname = :name
    """
)


def _clamp_limit(limit: int) -> int:
    if limit <= 0:
        return settings.default_page_size
    return min(limit, settings.max_page_size)


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


async def read_cube_metadata(db: AsyncSession, revision_id: str) -> dict[str, Optional[str]]:
    metadata = table(
        cube_sql.METADATA_TABLE_NAME, column("key"), column("value"), schema=revision_id
    )
    try:
        result = await db.execute(select(metadata.c.key, metadata.c.value))
    except DBAPIError as exc:
        logger.debug(f"Metadata lookup failed for {revision_id}: {exc}")
        raise HTTPException(404, f"No cube found for revision {revision_id}") from None
    return {row.key: row.value for row in result}


async def relation_exists(db: AsyncSession, schema: str, name: str) -> bool:
    result = await db.execute(RELATION_EXISTS, {"schema": schema, "name": name})
    return result.first() is not None


async def resolve_view_name(
    db: AsyncSession, revision_id: str, view: str, locale: str
) -> str:
    """`<view>_mat_<lang>` once promoted, `<view>_<lang>` before."""
    lang = lang_code(locale)
    materialized = materialized_view_name(view, lang)
    if await relation_exists(db, revision_id, materialized):
        return materialized
    plain = view_name(view, lang)
    if await relation_exists(db, revision_id, plain):
        return plain
    raise HTTPException(404, f"View {view} not available for {locale}")


def view_columns(metadata: dict[str, Optional[str]], view: str, locale: str) -> list[str]:
    raw = metadata.get(columns_key(view, lang_code(locale)))
    if not raw:
        raise HTTPException(404, f"No column list recorded for view {view}")
    return list(json.loads(raw))


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------


def variant_column(available: list[str], name: str, suffix: str) -> str:
    """Prefer `<name>_<suffix>` when the view carries it."""
    candidate = f"{name}_{suffix}"
    return candidate if candidate in available else name


def build_data_query(
    schema: str,
    relation: str,
    available: list[str],
    query: CubeQueryModel,
) -> tuple[Select, Select, list[str]]:
    """Returns the paginated statement, its count statement and the output columns."""
    selected = query.columns or available
    unknown = [c for c in selected if c not in available]
    if unknown:
        raise HTTPException(400, f"Unknown columns: {', '.join(unknown)}")

    view = table(relation, *(column(c) for c in available), schema=schema)
    stmt = select(*(view.c[c] for c in selected))

    reference = t("column_headers.reference", query.locale)
    for name, values in query.filters.items():
        if name not in available:
            raise HTTPException(400, f"Unknown filter column: {name}")
        target = variant_column(available, name, reference)
        stmt = stmt.where(view.c[target].in_(values))

    count_stmt = select(func.count()).select_from(stmt.subquery())

    sort = t("column_headers.sort", query.locale)
    for spec in query.sort:
        if spec.column not in available:
            raise HTTPException(400, f"Unknown sort column: {spec.column}")
        target = view.c[variant_column(available, spec.column, sort)]
        stmt = stmt.order_by(target.desc() if spec.direction == "desc" else target.asc())

    return stmt, count_stmt, list(selected)


async def prepare_query(
    db: AsyncSession, revision_id: str, query: CubeQueryModel
) -> tuple[str, Select, Select, list[str]]:
    metadata = await read_cube_metadata(db, revision_id)
    relation = await resolve_view_name(db, revision_id, query.view, query.locale)
    available = view_columns(metadata, query.view, query.locale)
    stmt, count_stmt, columns = build_data_query(revision_id, relation, available, query)
    return relation, stmt, count_stmt, columns


async def execute_cube_query(
    db: AsyncSession, revision_id: str, query: CubeQueryModel
) -> CubeQueryResult:
    relation, stmt, count_stmt, columns = await prepare_query(db, revision_id, query)
    limit = _clamp_limit(query.limit)
    offset = max(query.offset, 0)

    try:
        total = int((await db.execute(count_stmt)).scalar_one())
        result = await db.execute(stmt.limit(limit).offset(offset))
    except DBAPIError as exc:
        logger.error(f"Cube query failed on {revision_id}.{relation}: {exc}")
        raise HTTPException(400, "Cube query failed") from None

    items = [dict(row) for row in result.mappings().all()]
    return CubeQueryResult(
        view=relation,
        columns=columns,
        items=items,
        offset=offset,
        limit=limit,
        count=len(items),
        total=total,
    )


async def stream_batches(
    db: AsyncSession, stmt: Select, batch_size: Optional[int] = None
) -> AsyncIterator[list[dict[str, Any]]]:
    """Server-side cursor over the whole result, `batch_size` rows at a time."""
    result = await db.stream(stmt)
    async for partition in result.mappings().partitions(
        batch_size or settings.export_batch_size
    ):
        yield [dict(row) for row in partition]
