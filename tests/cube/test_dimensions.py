# tests/cube/test_dimensions.py
import json
from datetime import datetime

import pytest

from fakes import YEAR_VALUES, RecordingRunner
from statcube.core.exceptions import CubeValidationException, CubeValidationType
from statcube.cube.dimensions import effective_type, ordered_dimensions, setup_dimensions
from statcube.schemas.dataset import (
    Dimension,
    DimensionTask,
    DimensionType,
    NumberExtractor,
    NumberType,
    Revision,
    RevisionTasks,
)


@pytest.mark.asyncio
async def test_lookup_and_date_dimensions(ctx, dataset):
    runner = RecordingRunner(responses=YEAR_VALUES)
    await setup_dimensions(runner, ctx, dataset)

    assert runner.script[0] == (
        'CREATE TABLE "build_1"."area_lookup" AS SELECT * FROM "lookup_tables"."lt_area"'
    )
    assert any(s.startswith('CREATE TABLE "build_1"."year_lookup"') for s in runner.script)
    assert ctx.lookup_tables == ["area_lookup", "year_lookup"]
    assert [j.table_name for j in ctx.joins] == ["area_lookup", "year_lookup"]
    assert ctx.order_by[1].args["desc"] is True
    assert ctx.coverage_start == datetime(2020, 1, 1)
    assert ctx.coverage_end == datetime(2021, 12, 31, 23, 59, 59)

    en = ctx.locale_build("en-GB")
    assert en.columns[:4] == ["Area", "Area_reference", "Area_sort", "Area_hierarchy"]
    assert en.columns[4] == "Year"
    assert ctx.locale_build("cy-GB").columns[0] == "Ardal"

    metadata = [s for s in runner.script if '"build_1"."metadata"' in s]
    assert any(json.dumps(["area_lookup", "year_lookup"]) in s for s in metadata)
    assert any("'start_date', '2020-01-01T00:00:00'" in s for s in metadata)


@pytest.mark.asyncio
async def test_date_dimension_without_values_is_built_raw(ctx, dataset):
    runner = RecordingRunner()
    await setup_dimensions(runner, ctx, dataset)

    assert ctx.lookup_tables == ["area_lookup"]
    assert ctx.coverage_start is None
    assert not any("start_date" in s for s in runner.script)


@pytest.mark.asyncio
async def test_lookup_copy_failure_reports_missing_column(ctx, dataset):
    runner = RecordingRunner(fail_on='"lookup_tables"."lt_area"')

    with pytest.raises(CubeValidationException) as err:
        await setup_dimensions(runner, ctx, dataset)

    assert err.value.type == CubeValidationType.FACT_TABLE_COLUMN_MISSING
    assert "lt_area" in err.value.sql


@pytest.mark.asyncio
async def test_dimension_on_unknown_column(ctx, dataset):
    dataset.dimensions.append(Dimension(id="dim_x", fact_table_column="missing"))

    with pytest.raises(CubeValidationException) as err:
        await setup_dimensions(RecordingRunner(responses=YEAR_VALUES), ctx, dataset)

    assert err.value.type == CubeValidationType.FACT_TABLE_COLUMN_MISSING


@pytest.mark.asyncio
async def test_stale_lookup_dimension_is_built_raw(ctx, dataset):
    revision = Revision(
        id="rev_1",
        tasks=RevisionTasks(dimensions=[DimensionTask(id="dim_area", lookup_table_updated=False)]),
    )
    runner = RecordingRunner(responses=YEAR_VALUES)
    await setup_dimensions(runner, ctx, dataset, revision)

    assert effective_type(dataset.dimensions[0], revision) == DimensionType.RAW
    assert "area_lookup" not in ctx.lookup_tables
    assert not any('"lookup_tables"."lt_area"' in s for s in runner.script)
    assert any(
        s.startswith('INSERT INTO "build_1"."filter_table" SELECT DISTINCT CAST("fact_table"."area"')
        for s in runner.script
    )


@pytest.mark.asyncio
async def test_decimal_numeric_dimension(ctx, dataset):
    dimension = dataset.dimensions[0]
    dimension.type = DimensionType.NUMERIC
    dimension.extractor = NumberExtractor(type=NumberType.DECIMAL, decimal_places=2)
    dimension.lookup_table = None
    dataset.dimensions = [dimension]

    await setup_dimensions(RecordingRunner(), ctx, dataset)

    rendered = ctx.locale_build("en-GB").select[0].sql(dialect="postgres")
    assert "'FM999,999,990.00'" in rendered
    assert rendered.endswith('AS "Area"')


def test_dimensions_follow_fact_table_order(dataset):
    dataset.dimensions.reverse()
    assert [d.id for d in ordered_dimensions(dataset)] == ["dim_area", "dim_year"]
