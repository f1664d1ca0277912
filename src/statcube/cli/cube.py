# statcube/cli/cube.py
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
from sqlalchemy import Engine, column, inspect, select, table
from sqlalchemy.exc import SQLAlchemyError

from statcube.cli.utils import dump_yaml, mask_url, setup_cli_logging
from statcube.core.config import settings
from statcube.core.exceptions import (
    CubeValidationException,
    DatasetNotFound,
    FactTableValidationException,
)
from statcube.cube import sql as cube_sql
from statcube.cube.builder import (
    CubeBuilder,
    promote_cube,
    record_materialization_error,
)
from statcube.cube.jobs import PromotionJobRegistry
from statcube.db.engine import dispose_engine, get_sync_engine
from statcube.repositories.datasets import YamlDatasetRepository
from statcube.schemas.cube import CubeBuildType, JobStatus

logger = logging.getLogger(__name__)

cube_app = typer.Typer(name="cube", help="Build, promote and inspect cubes")

SYSTEM_SCHEMAS = {"pg_catalog", "pg_toast", "information_schema", "public"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _build(
    dataset_id: str,
    revision_id: str,
    build_type: Optional[CubeBuildType],
    datasets_dir: Optional[Path],
    promote: bool,
):
    jobs = PromotionJobRegistry(promote_cube, record_materialization_error)
    builder = CubeBuilder(repository=YamlDatasetRepository(datasets_dir), jobs=jobs)
    try:
        result = await builder.build_cube(dataset_id, revision_id, build_type)
        if result.job is not None:
            if promote:
                result.job = await jobs.wait(result.job.id)
            else:
                await jobs.shutdown()
        return result
    finally:
        await dispose_engine()


async def _promote(revision_id: str) -> bool:
    try:
        return await promote_cube(revision_id)
    finally:
        await dispose_engine()


def _cube_metadata(engine: Engine, schema: str) -> dict[str, Optional[str]]:
    metadata = table(
        cube_sql.METADATA_TABLE_NAME, column("key"), column("value"), schema=schema
    )
    with engine.connect() as conn:
        rows = conn.execute(select(metadata.c.key, metadata.c.value)).all()
    return {row.key: row.value for row in rows}


def _list_cube_schemas(engine: Engine) -> List[str]:
    """Schemas holding a fact table and a metadata table."""
    inspector = inspect(engine)
    cubes = []
    for schema in inspector.get_schema_names():
        if schema in SYSTEM_SCHEMAS or schema in (
            settings.data_tables_schema,
            settings.lookup_tables_schema,
        ):
            continue
        tables = set(inspector.get_table_names(schema=schema))
        if {cube_sql.FACT_TABLE_NAME, cube_sql.METADATA_TABLE_NAME} <= tables:
            cubes.append(schema)
    return sorted(cubes)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@cube_app.command("build")
def build_cmd(
    dataset_id: str = typer.Argument(..., help="Dataset id (<datasets-dir>/<id>.yaml)."),
    revision_id: str = typer.Argument(..., help="Revision to build the cube for."),
    build_type: Optional[CubeBuildType] = typer.Option(
        None, "--type", help="full, base or validation. Defaults to what the dataset allows."
    ),
    datasets_dir: Optional[Path] = typer.Option(
        None, "--datasets-dir", "-d", help="Directory of dataset YAML documents."
    ),
    promote: bool = typer.Option(
        True,
        "--promote/--no-promote",
        help="Materialize the views before exiting.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Build the cube for one dataset revision.
    """
    setup_cli_logging(verbose)
    try:
        result = asyncio.run(
            _build(dataset_id, revision_id, build_type, datasets_dir, promote)
        )
    except DatasetNotFound as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    except (CubeValidationException, FactTableValidationException) as exc:
        typer.echo(f"Build failed: {exc}", err=True)
        raise typer.Exit(code=2)

    typer.echo(f"Built {result.build_type.value} cube {result.schema_name} ({result.status.value})")
    if result.job is not None and result.job.status == JobStatus.FAILED:
        typer.echo(f"Promotion failed: {result.job.error}", err=True)
        raise typer.Exit(code=3)


@cube_app.command("promote")
def promote_cmd(
    revision_id: str = typer.Argument(..., help="Revision whose cube should be promoted."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Replace the plain views of a built cube with materialized views.
    """
    setup_cli_logging(verbose)
    promoted = asyncio.run(_promote(revision_id))
    typer.echo("Promoted" if promoted else "Already promoted")


@cube_app.command("status")
def status_cmd(
    revision_id: str = typer.Argument(...),
    database_url: Optional[str] = typer.Option(
        None, "--database-url", envvar="DATABASE_URL", help="Defaults to settings.database_url."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Print the build metadata of a cube.
    """
    setup_cli_logging(verbose)
    engine = get_sync_engine(database_url)
    try:
        metadata = _cube_metadata(engine, revision_id)
    except SQLAlchemyError as exc:
        logger.debug("Metadata lookup failed: %s", exc)
        typer.echo(f"No cube found for revision {revision_id}", err=True)
        raise typer.Exit(code=1)
    metadata.pop("build_script", None)
    typer.echo(dump_yaml(metadata))


@cube_app.command("list")
def list_cmd(
    database_url: Optional[str] = typer.Option(
        None, "--database-url", envvar="DATABASE_URL", help="Defaults to settings.database_url."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    List cube schemas with their build status.
    """
    setup_cli_logging(verbose)
    db_url = database_url or settings.database_url
    typer.echo(f"Connecting to database: {mask_url(db_url)}")
    engine = get_sync_engine(db_url)
    for schema in _list_cube_schemas(engine):
        status = _cube_metadata(engine, schema).get("build_status") or "unknown"
        typer.echo(f"{schema}\t{status}")
