# statcube/routes/cube_query.py
from __future__ import annotations

import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Response
from fastapi.responses import StreamingResponse
from sqlalchemy import Select
from sqlalchemy.ext.asyncio import AsyncSession

from statcube.api.cube_query.export import (
    MEDIA_TYPES,
    csv_chunks,
    excel_bytes,
    json_chunks,
)
from statcube.api.cube_query.filters import get_filters
from statcube.api.cube_query.reader import (
    execute_cube_query,
    prepare_query,
    stream_batches,
)
from statcube.db.engine import get_session, get_sessionmaker
from statcube.schemas.cube_query import (
    CubeExportModel,
    CubeFilter,
    CubeQueryModel,
    CubeQueryResult,
    ExportFormat,
)

logger = logging.getLogger(__name__)

router = APIRouter()
tags = ["cube query"]


@router.post(
    "/cubes/{revision_id}/query",
    response_model=CubeQueryResult,
    description="Query a cube view",
    name="Cube query",
)
async def query_cube(
    revision_id: str,
    body: CubeQueryModel,
    db: AsyncSession = Depends(get_session),
):
    return await execute_cube_query(db, revision_id, body)


@router.get(
    "/cubes/{revision_id}/filters",
    response_model=list[CubeFilter],
    description="Hierarchical filter values of every dimension",
    name="Cube filters",
)
async def cube_filters(
    revision_id: str,
    locale: str = "en-GB",
    db: AsyncSession = Depends(get_session),
):
    return await get_filters(db, revision_id, locale)


async def _stream_rows(stmt: Select):
    # the request session may be closed before streaming starts
    async with get_sessionmaker()() as session:
        async for batch in stream_batches(session, stmt):
            yield batch


@router.post(
    "/cubes/{revision_id}/export",
    description="Export a cube view as JSON, CSV or Excel",
    name="Cube export",
)
async def export_cube(
    revision_id: str,
    body: CubeExportModel,
    db: AsyncSession = Depends(get_session),
):
    relation, stmt, _, columns = await prepare_query(db, revision_id, body)
    filename = f"{revision_id}_{relation}.{body.format.value}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    media_type = MEDIA_TYPES[body.format]
    logger.info(f"Exporting {revision_id}.{relation} as {body.format.value}")

    if body.format == ExportFormat.XLSX:
        content = await excel_bytes(columns, stream_batches(db, stmt))
        return Response(content=content, media_type=media_type, headers=headers)

    chunks: AsyncIterator[str]
    if body.format == ExportFormat.JSON:
        chunks = json_chunks(_stream_rows(stmt))
    else:
        chunks = csv_chunks(columns, _stream_rows(stmt))
    return StreamingResponse(chunks, media_type=media_type, headers=headers)
