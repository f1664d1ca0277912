# tests/cube/test_builder.py
import pytest

from fakes import LOCALES, VIEW_CONFIGS, YEAR_VALUES, FakeDatabase, FakeRepository, key_error
from statcube.core.exceptions import CubeValidationException, CubeValidationType, DatasetNotFound
from statcube.cube.builder import CubeBuilder, promote_cube, rename_statements, resolve_build_type
from statcube.cube.jobs import PromotionJobRegistry
from statcube.schemas.cube import CubeBuildStatus, CubeBuildType, JobStatus
from statcube.schemas.dataset import FactTableColumnType


class PromoteRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, revision_id):
        self.calls.append(revision_id)
        return True


def make_builder(dataset, database):
    promote = PromoteRecorder()
    jobs = PromotionJobRegistry(promote, max_attempts=1, retry_delay=0)
    builder = CubeBuilder(
        database=database,
        repository=FakeRepository(dataset),
        jobs=jobs,
        view_configs=VIEW_CONFIGS,
        locales=LOCALES,
    )
    return builder, jobs, promote


def test_resolve_build_type(dataset):
    assert resolve_build_type(dataset, None) == CubeBuildType.FULL
    assert resolve_build_type(dataset, CubeBuildType.VALIDATION) == CubeBuildType.VALIDATION

    for column in dataset.fact_table:
        if column.column_type in (FactTableColumnType.DATA_VALUES, FactTableColumnType.NOTE_CODES):
            column.column_type = FactTableColumnType.UNKNOWN
    assert resolve_build_type(dataset, CubeBuildType.FULL) == CubeBuildType.BASE


def test_rename_replaces_any_previous_cube_under_a_lock():
    statements = rename_statements("build_1", "rev_1")

    assert statements[0] == "SELECT pg_advisory_xact_lock(hashtext('rev_1'))"
    assert statements[1] == 'DROP SCHEMA IF EXISTS "rev_1" CASCADE'
    assert statements[2] == 'ALTER SCHEMA "build_1" RENAME TO "rev_1"'
    assert "awaiting_materialization" in statements[3]


@pytest.mark.asyncio
async def test_successful_build_is_renamed_and_queued_for_promotion(dataset):
    database = FakeDatabase(responses=YEAR_VALUES)
    builder, jobs, promote = make_builder(dataset, database)

    result = await builder.build_cube(dataset.id, "rev_2")

    assert result.status == CubeBuildStatus.AWAITING_MATERIALIZATION
    assert result.build_type == CubeBuildType.FULL
    assert result.schema_name == "rev_2"
    assert result.build_id.startswith("build_")
    assert database.log[0] == f'CREATE SCHEMA IF NOT EXISTS "{result.build_id}"'
    assert f'ALTER SCHEMA "{result.build_id}" RENAME TO "rev_2"' in database.log
    assert any(s.startswith(f'CREATE VIEW "{result.build_id}"."frontend_cy"') for s in database.log)
    assert any("'build_script'" in s for s in database.log)

    job = await jobs.wait(result.job.id)
    assert job.status == JobStatus.SUCCEEDED
    assert promote.calls == ["rev_2"]


@pytest.mark.asyncio
async def test_each_stage_runs_in_its_own_transaction(dataset):
    database = FakeDatabase(responses=YEAR_VALUES)
    builder, jobs, _ = make_builder(dataset, database)

    await builder.build_cube(dataset.id, "rev_1")
    await jobs.shutdown()

    # schema, 7 stages, build script, rename
    assert database.transactions == 10


@pytest.mark.asyncio
async def test_failed_build_is_dropped_and_reported(dataset):
    database = FakeDatabase(
        fail_on="ADD PRIMARY KEY", error=key_error("could not create unique index")
    )
    builder, jobs, promote = make_builder(dataset, database)

    with pytest.raises(CubeValidationException) as err:
        await builder.build_cube(dataset.id, "rev_1")

    build_id = err.value.build_id
    assert err.value.type == CubeValidationType.UNKNOWN_DUPLICATE_FACT
    assert err.value.dataset_id == dataset.id
    assert "ADD PRIMARY KEY" in err.value.sql
    assert any("SET value = 'failed'" in s for s in database.log)
    assert database.log[-1] == f'DROP SCHEMA IF EXISTS "{build_id}" CASCADE'
    assert not any(s.startswith("ALTER SCHEMA") for s in database.log)
    assert jobs.list() == []


@pytest.mark.asyncio
async def test_unexpected_errors_become_unknown_error(dataset):
    database = FakeDatabase(fail_on='CREATE VIEW', responses=YEAR_VALUES)
    builder, _, _ = make_builder(dataset, database)

    with pytest.raises(CubeValidationException) as err:
        await builder.build_cube(dataset.id, "rev_1")

    assert err.value.type == CubeValidationType.UNKNOWN_ERROR
    assert err.value.sql.startswith("CREATE VIEW")


@pytest.mark.asyncio
async def test_schema_creation_failure(dataset):
    builder, _, _ = make_builder(dataset, FakeDatabase(fail_on="CREATE SCHEMA"))

    with pytest.raises(CubeValidationException) as err:
        await builder.build_cube(dataset.id, "rev_1")

    assert err.value.type == CubeValidationType.CUBE_CREATION_FAILED


@pytest.mark.asyncio
async def test_validation_build_stays_under_its_build_id(dataset):
    database = FakeDatabase()
    builder, jobs, _ = make_builder(dataset, database)

    result = await builder.build_cube(dataset.id, "rev_1", CubeBuildType.VALIDATION)

    assert result.status == CubeBuildStatus.INCOMPLETE
    assert result.schema_name == result.build_id
    assert result.job is None
    assert not any(s.startswith("ALTER SCHEMA") for s in database.log)
    assert not any('"."measure" (' in s for s in database.log)
    assert jobs.list() == []


@pytest.mark.asyncio
async def test_unknown_revision(dataset):
    builder, _, _ = make_builder(dataset, FakeDatabase())

    with pytest.raises(DatasetNotFound):
        await builder.build_cube(dataset.id, "rev_404")


@pytest.mark.asyncio
async def test_promote_cube_uses_stored_metadata():
    rows = [
        {"key": "build_status", "value": "awaiting_materialization"},
        {"key": "core_view_en", "value": 'SELECT 1 AS "a"'},
        {"key": "views", "value": "[]"},
    ]
    database = FakeDatabase(responses={'FROM "rev_1"."metadata"': rows})

    assert await promote_cube("rev_1", database) is True
    assert database.log[1] == 'CREATE MATERIALIZED VIEW "rev_1"."core_view_mat_en" AS SELECT 1 AS "a"'
