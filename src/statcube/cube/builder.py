# statcube/cube/builder.py
"""
Cube build orchestrator.

A build writes into a fresh `build_<uuid>` schema, one transaction per stage.
On success the schema is renamed to the revision id and a promotion job is
queued; on failure it is marked failed and dropped, leaving any previously
accepted cube for the revision untouched.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from statcube.core.config import settings
from statcube.core.exceptions import (
    CubeValidationException,
    CubeValidationType,
    DatasetNotFound,
    FactTableValidationException,
)
from statcube.cube import sql
from statcube.cube.context import BuildContext
from statcube.cube.dimensions import setup_dimensions
from statcube.cube.fact_table import (
    create_base_tables_statements,
    create_fact_table_statement,
    create_primary_key,
    create_validation_table,
    fact_table_info,
    load_fact_tables,
)
from statcube.cube.jobs import PromotionJobRegistry, get_job_registry
from statcube.cube.measure import setup_measure
from statcube.cube.notes import setup_notes
from statcube.cube.view_config import load_view_configs
from statcube.cube.views import create_views, promote_views
from statcube.db.runner import CubeDatabase, StatementRunner, get_cube_database
from statcube.repositories.datasets import DatasetRepository, get_dataset_repository
from statcube.schemas.cube import (
    BuildResult,
    CubeBuildStatus,
    CubeBuildType,
    CubeViewConfig,
)
from statcube.schemas.dataset import Dataset, Revision

logger = logging.getLogger(__name__)

Stage = Callable[[StatementRunner], Awaitable[None]]


def new_build_id() -> str:
    return f"build_{uuid.uuid4()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_build_type(dataset: Dataset, requested: Optional[CubeBuildType]) -> CubeBuildType:
    if requested == CubeBuildType.VALIDATION:
        return CubeBuildType.VALIDATION
    fact = fact_table_info(dataset)
    if fact.data_values_column is None and fact.notes_column is None:
        return CubeBuildType.BASE
    return requested or CubeBuildType.FULL


def rename_statements(build_id: str, revision_id: str) -> list[str]:
    return [
        sql.statement("SELECT pg_advisory_xact_lock(hashtext({}))", sql.lit(revision_id)),
        sql.drop_schema(revision_id),
        sql.rename_schema(build_id, revision_id),
        sql.update_metadata(
            revision_id, "build_status", CubeBuildStatus.AWAITING_MATERIALIZATION.value
        ),
    ]


class CubeBuilder:
    def __init__(
        self,
        database: Optional[CubeDatabase] = None,
        repository: Optional[DatasetRepository] = None,
        jobs: Optional[PromotionJobRegistry] = None,
        view_configs: Optional[list[CubeViewConfig]] = None,
        locales: Optional[list[str]] = None,
    ):
        self.database = database or get_cube_database()
        self.repository = repository or get_dataset_repository()
        self._jobs = jobs
        self.view_configs = (
            list(view_configs) if view_configs is not None else list(load_view_configs())
        )
        self.locales = list(locales or settings.supported_locales)

    @property
    def jobs(self) -> PromotionJobRegistry:
        if self._jobs is None:
            self._jobs = get_job_registry()
        return self._jobs

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_stage(self, name: str, script: list[str], stage: Stage) -> None:
        logger.debug("Running build stage %s", name)
        async with self.database.transaction(script) as runner:
            await stage(runner)

    def _stages(
        self, ctx: BuildContext, dataset: Dataset, revision: Revision
    ) -> list[tuple[str, Stage]]:
        assert ctx.fact is not None
        fact = ctx.fact
        base = ctx.build_type != CubeBuildType.FULL

        async def base_tables(runner: StatementRunner) -> None:
            await runner.execute(create_fact_table_statement(ctx.schema, fact))
            for statement in create_base_tables_statements(ctx.schema):
                await runner.execute(statement)
            for key, value in (
                ("revision_id", ctx.revision_id),
                ("build_id", ctx.build_id),
                ("build_type", ctx.build_type.value),
                ("build_start", _now().isoformat()),
                ("build_status", CubeBuildStatus.INCOMPLETE.value),
            ):
                await runner.execute(sql.insert_metadata(ctx.schema, key, value))

        async def facts(runner: StatementRunner) -> None:
            await load_fact_tables(runner, ctx, dataset)
            await create_primary_key(runner, ctx)

        async def validation(runner: StatementRunner) -> None:
            await create_validation_table(runner, ctx, base=base)

        async def dimensions(runner: StatementRunner) -> None:
            await setup_dimensions(runner, ctx, dataset, revision)

        async def measure(runner: StatementRunner) -> None:
            await setup_measure(runner, ctx, dataset, revision)

        async def notes(runner: StatementRunner) -> None:
            await setup_notes(runner, ctx)

        async def views(runner: StatementRunner) -> None:
            await create_views(runner, ctx)

        stages: list[tuple[str, Stage]] = [
            ("base_tables", base_tables),
            ("fact_table", facts),
            ("validation_table", validation),
        ]
        if not base:
            stages += [("dimensions", dimensions), ("measure", measure), ("notes", notes)]
        stages.append(("views", views))
        return stages

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _classify(self, exc: Exception, ctx: BuildContext, script: list[str]) -> Exception:
        last_sql = script[-1] if script else None
        if isinstance(exc, CubeValidationException):
            exc.sql = exc.sql or last_sql
            return exc.with_context(
                dataset_id=ctx.dataset_id, revision_id=ctx.revision_id, build_id=ctx.build_id
            )
        if isinstance(exc, FactTableValidationException):
            return exc
        return CubeValidationException(
            f"Unknown error building cube: {exc}",
            CubeValidationType.UNKNOWN_ERROR,
            dataset_id=ctx.dataset_id,
            revision_id=ctx.revision_id,
            build_id=ctx.build_id,
            sql=last_sql,
        )

    async def _cleanup(self, ctx: BuildContext) -> None:
        try:
            async with self.database.transaction() as runner:
                await runner.execute(
                    sql.update_metadata(
                        ctx.schema, "build_status", CubeBuildStatus.FAILED.value
                    )
                )
        except Exception as exc:
            logger.warning("Could not mark build %s as failed: %s", ctx.build_id, exc)

        if settings.preserve_failed_builds:
            logger.info("Keeping failed build schema %s", ctx.schema)
            return
        try:
            async with self.database.transaction() as runner:
                await runner.execute(sql.drop_schema(ctx.schema))
        except Exception:
            logger.exception("Could not drop failed build schema %s", ctx.schema)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def build_cube(
        self,
        dataset_id: str,
        revision_id: str,
        build_type: Optional[CubeBuildType] = None,
    ) -> BuildResult:
        started_at = _now()
        dataset = await self.repository.get_dataset(dataset_id)
        revision = dataset.get_revision(revision_id)
        if revision is None:
            raise DatasetNotFound(
                f"Revision {revision_id} not found in dataset {dataset_id}"
            )

        resolved = resolve_build_type(dataset, build_type)
        ctx = BuildContext(
            dataset_id=dataset.id,
            revision_id=revision_id,
            build_id=new_build_id(),
            locales=self.locales,
            view_configs=self.view_configs,
            build_type=resolved,
            fact=fact_table_info(dataset),
        )
        logger.info(
            "Building %s cube %s for dataset %s revision %s",
            resolved.value,
            ctx.build_id,
            dataset_id,
            revision_id,
        )

        script: list[str] = []
        try:
            async with self.database.transaction(script) as runner:
                await runner.execute(sql.create_schema(ctx.schema))
        except Exception as exc:
            logger.error("Unable to create build schema %s: %s", ctx.schema, exc)
            raise CubeValidationException(
                f"Unable to create cube schema {ctx.schema}",
                CubeValidationType.CUBE_CREATION_FAILED,
                dataset_id=dataset_id,
                revision_id=revision_id,
                build_id=ctx.build_id,
                sql=script[-1] if script else None,
            ) from exc

        try:
            for name, stage in self._stages(ctx, dataset, revision):
                await self._run_stage(name, script, stage)
            async with self.database.transaction() as runner:
                for statement in sql.replace_metadata(
                    ctx.schema, "build_script", "\n".join(script)
                ):
                    await runner.execute(statement)
        except Exception as exc:
            error = self._classify(exc, ctx, script)
            logger.error(
                "Cube build %s failed for dataset %s revision %s: %s\nFailing SQL: %s",
                ctx.build_id,
                dataset_id,
                revision_id,
                error,
                getattr(error, "sql", None),
            )
            await self._cleanup(ctx)
            if error is exc:
                raise
            raise error from exc

        if resolved == CubeBuildType.VALIDATION:
            logger.info("Validation cube %s kept under its build id", ctx.build_id)
            return BuildResult(
                dataset_id=dataset_id,
                revision_id=revision_id,
                build_id=ctx.build_id,
                build_type=resolved,
                schema_name=ctx.schema,
                status=CubeBuildStatus.INCOMPLETE,
                started_at=started_at,
                finished_at=_now(),
            )

        try:
            async with self.database.transaction() as runner:
                for statement in rename_statements(ctx.build_id, revision_id):
                    await runner.execute(statement)
        except Exception as exc:
            logger.error("Unable to move %s into place as %s: %s", ctx.schema, revision_id, exc)
            await self._cleanup(ctx)
            raise CubeValidationException(
                f"Unable to rename cube schema {ctx.schema} to {revision_id}",
                CubeValidationType.UNKNOWN_ERROR,
                dataset_id=dataset_id,
                revision_id=revision_id,
                build_id=ctx.build_id,
            ) from exc

        job = self.jobs.submit(revision_id)
        logger.info("Cube for revision %s is awaiting materialization", revision_id)
        return BuildResult(
            dataset_id=dataset_id,
            revision_id=revision_id,
            build_id=ctx.build_id,
            build_type=resolved,
            schema_name=revision_id,
            status=CubeBuildStatus.AWAITING_MATERIALIZATION,
            started_at=started_at,
            finished_at=_now(),
            job=job,
        )


# ---------------------------------------------------------------------------
# Promotion hooks used by the job registry and the CLI
# ---------------------------------------------------------------------------


async def promote_cube(revision_id: str, database: Optional[CubeDatabase] = None) -> bool:
    database = database or get_cube_database()
    async with database.transaction() as runner:
        return await promote_views(
            runner, revision_id, create_indexes=settings.create_view_indexes
        )


async def record_materialization_error(
    revision_id: str, message: str, database: Optional[CubeDatabase] = None
) -> None:
    database = database or get_cube_database()
    async with database.transaction() as runner:
        for statement in sql.replace_metadata(revision_id, "materialization_error", message):
            await runner.execute(statement)
