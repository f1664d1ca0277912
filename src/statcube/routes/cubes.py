# statcube/routes/cubes.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from statcube.api.cube_query.reader import read_cube_metadata
from statcube.core.exceptions import (
    CubeValidationException,
    CubeValidationType,
    DatasetNotFound,
    FactTableValidationException,
)
from statcube.cube.builder import CubeBuilder
from statcube.cube.jobs import PromotionJobRegistry, get_job_registry
from statcube.db.engine import get_session
from statcube.schemas.cube import (
    BuildResult,
    CubeBuildStatus,
    CubeBuildType,
    CubeStatus,
    PromotionJobInfo,
)

logger = logging.getLogger(__name__)

router = APIRouter()
tags = ["cubes"]

SERVER_ERRORS = (CubeValidationType.CUBE_CREATION_FAILED, CubeValidationType.UNKNOWN_ERROR)

# Keys worth returning from the metadata table; view SQL and the build script stay internal
STATUS_KEYS = (
    "revision_id",
    "build_id",
    "build_type",
    "build_start",
    "build_status",
    "build_finished",
    "fact_count",
    "start_date",
    "end_date",
    "note_codes",
    "lookup_tables",
    "views",
    "materialization_error",
)


def get_cube_builder() -> CubeBuilder:
    return CubeBuilder()


def build_error_to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, DatasetNotFound):
        return HTTPException(404, str(exc))
    if isinstance(exc, FactTableValidationException):
        return HTTPException(
            400, {"type": exc.type.value, "message": exc.message, "columns": exc.columns}
        )
    if isinstance(exc, CubeValidationException):
        code = 500 if exc.type in SERVER_ERRORS else 400
        return HTTPException(code, {"type": exc.type.value, "message": exc.message})
    return HTTPException(500, "Cube build failed")


@router.post(
    "/datasets/{dataset_id}/revisions/{revision_id}/cube",
    response_model=BuildResult,
    status_code=status.HTTP_201_CREATED,
    description="Build the cube for a dataset revision",
    name="Build cube",
)
async def build_cube(
    dataset_id: str,
    revision_id: str,
    build_type: Optional[CubeBuildType] = None,
    builder: CubeBuilder = Depends(get_cube_builder),
):
    try:
        return await builder.build_cube(dataset_id, revision_id, build_type)
    except (DatasetNotFound, CubeValidationException, FactTableValidationException) as exc:
        logger.error(f"Cube build for {dataset_id}/{revision_id} failed: {exc}")
        raise build_error_to_http(exc) from None


@router.get(
    "/cubes/{revision_id}/status",
    response_model=CubeStatus,
    description="Build status of the cube for a revision",
    name="Cube status",
)
async def cube_status(
    revision_id: str,
    db: AsyncSession = Depends(get_session),
    jobs: PromotionJobRegistry = Depends(get_job_registry),
):
    metadata = await read_cube_metadata(db, revision_id)
    build_status = metadata.get("build_status")
    return CubeStatus(
        revision_id=revision_id,
        status=CubeBuildStatus(build_status) if build_status else None,
        metadata={k: metadata[k] for k in STATUS_KEYS if k in metadata},
        job=jobs.latest_for(revision_id),
    )


@router.post(
    "/cubes/{revision_id}/promote",
    response_model=PromotionJobInfo,
    status_code=status.HTTP_202_ACCEPTED,
    description="Queue promotion of the cube views to materialized views",
    name="Promote cube",
)
async def promote_cube(
    revision_id: str,
    db: AsyncSession = Depends(get_session),
    jobs: PromotionJobRegistry = Depends(get_job_registry),
):
    # 404 before queueing anything for a revision without a cube
    await read_cube_metadata(db, revision_id)
    return jobs.submit(revision_id)
