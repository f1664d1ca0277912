# statcube/cube/dimensions.py
"""
Dimension engine.

Every dimension contributes four columns per locale (value, reference, sort,
hierarchy) to the core view and one filter row per distinct value. Lookup and
date dimensions also copy or generate a `<col>_lookup` table that the core
view joins on.
"""
from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import DBAPIError
from sqlglot import exp

from statcube.core.config import settings
from statcube.core.exceptions import CubeValidationException, CubeValidationType
from statcube.core.i18n import language_value
from statcube.cube import sql
from statcube.cube.context import BuildContext, VariantNames, lookup_table_name
from statcube.cube.dates import coverage, date_references, sort_orders
from statcube.db.runner import StatementRunner
from statcube.schemas.dataset import (
    DateExtractor,
    Dataset,
    Dimension,
    DimensionType,
    FactTableColumn,
    FactTableColumnType,
    NumberExtractor,
    NumberType,
    Revision,
)

logger = logging.getLogger(__name__)

DIMENSION_COLUMN_TYPES = (
    FactTableColumnType.DIMENSION,
    FactTableColumnType.TIME,
    FactTableColumnType.UNKNOWN,
)
DATE_TYPES = (DimensionType.DATE, DimensionType.DATE_PERIOD)

DimensionHandler = Callable[
    [StatementRunner, BuildContext, Dimension, FactTableColumn], Awaitable[None]
]


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------


def _filter_target(ctx: BuildContext) -> exp.Table:
    return sql.table(sql.FILTER_TABLE_NAME, ctx.schema)


def distinct_values_filter_statement(
    ctx: BuildContext, column: str, locale: str, dimension_name: str
) -> str:
    """Filter rows straight from the fact table: description is the value itself."""
    value = sql.cast(sql.fact_col(column), "VARCHAR")
    return sql.statement(
        "INSERT INTO {} SELECT DISTINCT {}, {}, {}, {}, {}, NULL FROM {} WHERE {} IS NOT NULL",
        _filter_target(ctx),
        value,
        sql.lit(language_value(locale)),
        sql.lit(column),
        sql.lit(dimension_name),
        value.copy(),
        sql.table(sql.FACT_TABLE_NAME, ctx.schema),
        sql.fact_col(column),
    )


def lookup_filter_statement(
    ctx: BuildContext, lookup: str, column: str, locale: str, dimension_name: str
) -> str:
    return sql.statement(
        "INSERT INTO {} SELECT DISTINCT {}, language, {}, {}, description, {} FROM {} "
        "WHERE language = {}",
        _filter_target(ctx),
        sql.cast(sql.col(column), "VARCHAR"),
        sql.lit(column),
        sql.lit(dimension_name),
        sql.cast(sql.col("hierarchy"), "VARCHAR"),
        sql.table(lookup, ctx.schema),
        sql.lit(language_value(locale)),
    )


def _pass_through(
    ctx: BuildContext,
    dimension: Dimension,
    value: exp.Expression,
    reference: exp.Expression,
    sort: exp.Expression,
) -> list[str]:
    statements = []
    for locale in ctx.locales:
        names = ctx.claim_variant_names(locale, dimension.display_name(locale))
        ctx.add_variants(
            locale,
            names,
            value=value.copy(),
            reference=reference.copy(),
            sort=sort.copy(),
            hierarchy=exp.null(),
        )
        ctx.add_variants_to_views(locale, names)
        statements.append(
            distinct_values_filter_statement(
                ctx, dimension.fact_table_column, locale, names.value
            )
        )
    ctx.add_order_by(sort.copy())
    return statements


def _add_lookup_columns(
    ctx: BuildContext, dimension: Dimension, lookup: str, *, is_date: bool
) -> list[VariantNames]:
    column = dimension.fact_table_column
    claimed = []
    for locale in ctx.locales:
        names = ctx.claim_variant_names(locale, dimension.display_name(locale))
        ctx.add_variants(
            locale,
            names,
            value=sql.col("description", lookup),
            reference=sql.col(column, lookup),
            sort=sql.col("sort_order", lookup),
            hierarchy=sql.col("hierarchy", lookup),
        )
        ctx.add_variants_to_views(locale, names, is_date=is_date)
        claimed.append(names)

    ctx.add_join(
        lookup,
        sql.eq(
            sql.cast(sql.col(column, lookup), "VARCHAR"),
            sql.cast(sql.fact_col(column), "VARCHAR"),
        ),
        sql.col("language", lookup),
    )
    ctx.add_order_by(sql.col("sort_order", lookup), desc=is_date)
    ctx.lookup_tables.append(lookup)
    return claimed


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def setup_raw_dimension(
    runner: StatementRunner, ctx: BuildContext, dimension: Dimension, column: FactTableColumn
) -> None:
    value = sql.fact_col(column.column_name)
    for statement in _pass_through(ctx, dimension, value, value, value):
        await runner.execute(statement)


async def setup_text_dimension(
    runner: StatementRunner, ctx: BuildContext, dimension: Dimension, column: FactTableColumn
) -> None:
    value = sql.cast(sql.fact_col(column.column_name), "VARCHAR")
    for statement in _pass_through(ctx, dimension, value, value, value):
        await runner.execute(statement)


async def setup_numeric_dimension(
    runner: StatementRunner, ctx: BuildContext, dimension: Dimension, column: FactTableColumn
) -> None:
    extractor = dimension.extractor
    if not isinstance(extractor, NumberExtractor):
        extractor = NumberExtractor()
    source = sql.fact_col(column.column_name)
    if extractor.type == NumberType.INTEGER:
        value = sql.cast(source, "INTEGER")
        reference = sort = value
    else:
        value = sql.format_decimal(source, extractor.decimal_places)
        reference = sort = sql.cast(source.copy(), "DECIMAL")
    for statement in _pass_through(ctx, dimension, value, reference, sort):
        await runner.execute(statement)


async def setup_lookup_dimension(
    runner: StatementRunner, ctx: BuildContext, dimension: Dimension, column: FactTableColumn
) -> None:
    if dimension.lookup_table is None:
        raise CubeValidationException(
            f"Dimension {dimension.id} has no lookup table",
            CubeValidationType.FACT_TABLE_COLUMN_MISSING,
        )
    lookup = lookup_table_name(column.column_name)
    statement = sql.statement(
        "CREATE TABLE {} AS SELECT * FROM {}",
        sql.table(lookup, ctx.schema),
        sql.table(dimension.lookup_table.id, settings.lookup_tables_schema),
    )
    try:
        await runner.execute(statement)
    except DBAPIError as exc:
        raise CubeValidationException(
            f"Lookup table {dimension.lookup_table.id} for dimension {dimension.id} "
            "could not be copied",
            CubeValidationType.FACT_TABLE_COLUMN_MISSING,
            sql=statement,
        ) from exc

    names = _add_lookup_columns(ctx, dimension, lookup, is_date=False)
    for locale, variant in zip(ctx.locales, names):
        await runner.execute(
            lookup_filter_statement(ctx, lookup, column.column_name, locale, variant.value)
        )


def date_lookup_statements(
    ctx: BuildContext, lookup: str, column: str, rows: list[tuple]
) -> list[str]:
    target = sql.table(lookup, ctx.schema)
    return [
        sql.statement(
            "CREATE TABLE {} ({} VARCHAR, language VARCHAR, description VARCHAR, "
            "hierarchy VARCHAR, date_type VARCHAR, start_date TIMESTAMP, "
            "end_date TIMESTAMP, sort_order INTEGER)",
            target,
            sql.ident(column),
        ),
        *sql.insert_rows(target, rows),
    ]


async def setup_date_dimension(
    runner: StatementRunner, ctx: BuildContext, dimension: Dimension, column: FactTableColumn
) -> None:
    extractor = dimension.extractor
    if not isinstance(extractor, DateExtractor):
        extractor = DateExtractor()

    present = await runner.fetch_all(
        sql.statement(
            "SELECT DISTINCT {} AS value FROM {} WHERE {} IS NOT NULL",
            sql.cast(sql.fact_col(column.column_name), "VARCHAR"),
            sql.table(sql.FACT_TABLE_NAME, ctx.schema),
            sql.fact_col(column.column_name),
        )
    )
    values = sorted(str(row["value"]) for row in present)
    if not values:
        logger.warning("Date dimension %s has no values, building it as raw", dimension.id)
        await setup_raw_dimension(runner, ctx, dimension, column)
        return

    try:
        references = date_references(extractor, values, ctx.locales)
    except ValueError as exc:
        raise CubeValidationException(
            f"Could not build periods for dimension {dimension.id}: {exc}",
            CubeValidationType.UNKNOWN_ERROR,
        ) from exc

    positions = sort_orders(references)
    rows = [r.as_row(positions[(r.code, r.language)]) for r in references]
    lookup = lookup_table_name(column.column_name)
    for statement in date_lookup_statements(ctx, lookup, column.column_name, rows):
        await runner.execute(statement)

    span = coverage(references, set(values))
    if span is not None:
        ctx.extend_coverage(*span)

    names = _add_lookup_columns(ctx, dimension, lookup, is_date=True)
    for locale, variant in zip(ctx.locales, names):
        await runner.execute(
            lookup_filter_statement(ctx, lookup, column.column_name, locale, variant.value)
        )


DIMENSION_HANDLERS: dict[DimensionType, DimensionHandler] = {
    DimensionType.RAW: setup_raw_dimension,
    DimensionType.SYMBOL: setup_raw_dimension,
    DimensionType.TEXT: setup_text_dimension,
    DimensionType.NUMERIC: setup_numeric_dimension,
    DimensionType.LOOKUP_TABLE: setup_lookup_dimension,
    DimensionType.DATE: setup_date_dimension,
    DimensionType.DATE_PERIOD: setup_date_dimension,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def ordered_dimensions(dataset: Dataset) -> list[Dimension]:
    positions = {c.column_name: c.column_index for c in dataset.fact_table}
    return sorted(
        dataset.dimensions, key=lambda d: positions.get(d.fact_table_column, -1)
    )


def effective_type(dimension: Dimension, revision: Optional[Revision]) -> DimensionType:
    if revision is not None and revision.needs_raw_dimension(dimension.id):
        return DimensionType.RAW
    return dimension.type


async def setup_dimensions(
    runner: StatementRunner,
    ctx: BuildContext,
    dataset: Dataset,
    revision: Optional[Revision] = None,
) -> None:
    logger.info("Setting up dimension tables...")
    for dimension in ordered_dimensions(dataset):
        column = dataset.fact_column(dimension.fact_table_column)
        if column is None or column.column_type not in DIMENSION_COLUMN_TYPES:
            raise CubeValidationException(
                f"No fact table column found for dimension {dimension.id} in dataset {dataset.id}",
                CubeValidationType.FACT_TABLE_COLUMN_MISSING,
            )
        dimension_type = effective_type(dimension, revision)
        if dimension_type != dimension.type:
            logger.info(
                "Dimension %s has not been revalidated, building it as raw", dimension.id
            )
        logger.info(
            "Setting up %s dimension %s for fact table column %s",
            dimension_type.value,
            dimension.id,
            dimension.fact_table_column,
        )
        await DIMENSION_HANDLERS[dimension_type](runner, ctx, dimension, column)

    for statement in sql.replace_metadata(
        ctx.schema, "lookup_tables", json.dumps(ctx.lookup_tables)
    ):
        await runner.execute(statement)
    if ctx.coverage_start is not None and ctx.coverage_end is not None:
        for key, value in (("start_date", ctx.coverage_start), ("end_date", ctx.coverage_end)):
            for statement in sql.replace_metadata(ctx.schema, key, value.isoformat()):
                await runner.execute(statement)
