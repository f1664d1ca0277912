# statcube/cube/measure.py
"""
Measure engine: data value variants and the measure lookup.

With measure rows the data values are formatted per measure reference using a
CASE expression and the `measure` table is joined for descriptions, sort order
and hierarchy. Without them the raw values pass straight through.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlglot import exp

from statcube.core.i18n import language_value, t
from statcube.cube import sql
from statcube.cube.context import BuildContext, FactTableInfo, VariantNames
from statcube.cube.dimensions import distinct_values_filter_statement
from statcube.db.runner import StatementRunner
from statcube.schemas.dataset import Dataset, MeasureRow, Revision

logger = logging.getLogger(__name__)

DECIMAL_FORMATS = ("decimal", "float", "long", "percentage")
INTEGER_FORMATS = ("integer",)
TEXT_FORMATS = ("string", "text", "date", "datetime", "time")


@dataclass(frozen=True)
class DataValueNames:
    value: str
    formatted: str
    annotated: str
    sort: str


def claim_data_value_names(ctx: BuildContext, locale: str) -> DataValueNames:
    base = t("column_headers.data_values", locale)
    value = ctx.claim_name(locale, base)
    return DataValueNames(
        value=value,
        formatted=ctx.claim_name(locale, f"{base}_{t('column_headers.formatted', locale)}"),
        annotated=ctx.claim_name(locale, f"{base}_{t('column_headers.annotated', locale)}"),
        sort=ctx.claim_name(locale, f"{base}_{t('column_headers.sort', locale)}"),
    )


def add_data_values_to_views(ctx: BuildContext, locale: str, names: DataValueNames) -> None:
    for view in ctx.locale_build(locale).views.values():
        cfg = view.config
        if cfg.data_values == "annotated":
            view.add(names.annotated, names.value)
        elif cfg.data_values == "formatted":
            view.add(names.formatted, names.value)
        else:
            view.add(names.value)
        if cfg.sort_orders:
            view.add(names.sort)


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------


def unique_references(rows: list[MeasureRow]) -> list[MeasureRow]:
    """First row per reference wins."""
    seen: dict[str, MeasureRow] = {}
    for row in rows:
        seen.setdefault(row.reference, row)
    return list(seen.values())


def format_rule(row: MeasureRow) -> Optional[Callable[[exp.Expression], exp.Expression]]:
    fmt = (row.format or "").lower()
    if fmt in DECIMAL_FORMATS:
        decimals = row.decimals or 0
        return lambda value: sql.format_decimal(value, decimals)
    if fmt in INTEGER_FORMATS:
        return sql.format_integer
    if fmt in TEXT_FORMATS:
        return lambda value: sql.cast(value, "VARCHAR")
    return None


def formatted_value_case(rows: list[MeasureRow], data_values: str) -> exp.Expression:
    """CASE WHEN measure.reference = <ref> THEN <format rule> ... ELSE value END"""
    fallback = sql.cast(sql.fact_col(data_values), "VARCHAR")
    case = exp.Case()
    branches = 0
    for row in unique_references(rows):
        rule = format_rule(row)
        if rule is None:
            logger.warning(
                "Unknown measure format %r for reference %s, value left unformatted",
                row.format,
                row.reference,
            )
            continue
        case = case.when(
            sql.eq(sql.col("reference", sql.MEASURE_TABLE_NAME), sql.lit(row.reference)),
            rule(sql.fact_col(data_values)),
        )
        branches += 1
    if not branches:
        return fallback
    return case.else_(fallback)


# ---------------------------------------------------------------------------
# Measure table
# ---------------------------------------------------------------------------


def measure_table_statements(
    schema: str, measure_column_datatype: str, rows: list[MeasureRow]
) -> list[str]:
    target = sql.table(sql.MEASURE_TABLE_NAME, schema)
    reference_type = sql.data_type(measure_column_datatype)
    values = [
        (
            row.reference,
            row.language.lower(),
            row.description,
            row.notes or None,
            row.sort_order,
            row.format,
            row.decimals,
            row.measure_type or None,
            row.hierarchy or None,
        )
        for row in rows
    ]
    return [
        sql.statement(
            "CREATE TABLE {} (reference {}, language TEXT, description TEXT, notes TEXT, "
            "sort_order INTEGER, format TEXT, decimals INTEGER, measure_type TEXT, "
            "hierarchy {})",
            target,
            reference_type,
            reference_type.copy(),
        ),
        *sql.insert_rows(target, values),
    ]


def measure_filter_statement(
    ctx: BuildContext, measure_column: str, locale: str, dimension_name: str
) -> str:
    return sql.statement(
        "INSERT INTO {} SELECT DISTINCT CAST(reference AS VARCHAR), language, {}, {}, "
        "description, CAST(hierarchy AS VARCHAR) FROM {} WHERE language = {}",
        sql.table(sql.FILTER_TABLE_NAME, ctx.schema),
        sql.lit(measure_column),
        sql.lit(dimension_name),
        sql.table(sql.MEASURE_TABLE_NAME, ctx.schema),
        sql.lit(language_value(locale)),
    )


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def _add_data_values(
    ctx: BuildContext,
    fact: FactTableInfo,
    formatted: exp.Expression,
    annotated: exp.Expression,
) -> None:
    assert fact.data_values_column is not None
    raw = sql.fact_col(fact.data_values_column.column_name)
    for locale in ctx.locales:
        names = claim_data_value_names(ctx, locale)
        ctx.add_column(locale, raw.copy(), names.value)
        ctx.add_column(locale, formatted.copy(), names.formatted)
        ctx.add_column(locale, annotated.copy(), names.annotated)
        ctx.add_column(locale, raw.copy(), names.sort)
        add_data_values_to_views(ctx, locale, names)


def _annotated(fact: FactTableInfo, value: exp.Expression) -> exp.Expression:
    if fact.notes_column is None:
        assert fact.data_values_column is not None
        return sql.fact_col(fact.data_values_column.column_name)
    return sql.annotate(value, sql.fact_col(fact.notes_column.column_name))


async def setup_measure_no_lookup(runner: StatementRunner, ctx: BuildContext) -> None:
    fact = ctx.fact
    assert fact is not None
    if fact.data_values_column is not None:
        raw = sql.fact_col(fact.data_values_column.column_name)
        _add_data_values(ctx, fact, raw, _annotated(fact, sql.cast(raw, "VARCHAR")))

    if fact.measure_column is None:
        return
    source = sql.fact_col(fact.measure_column.column_name)
    for locale in ctx.locales:
        names = ctx.claim_variant_names(locale, t("column_headers.measure", locale))
        ctx.add_variants(
            locale,
            names,
            value=source.copy(),
            reference=source.copy(),
            sort=source.copy(),
            hierarchy=exp.null(),
        )
        ctx.add_variants_to_views(locale, names)
        await runner.execute(
            distinct_values_filter_statement(
                ctx, fact.measure_column.column_name, locale, names.value
            )
        )


async def setup_measure_with_lookup(
    runner: StatementRunner, ctx: BuildContext, rows: list[MeasureRow]
) -> None:
    fact = ctx.fact
    assert fact is not None and fact.measure_column is not None
    measure_column = fact.measure_column.column_name

    for statement in measure_table_statements(
        ctx.schema, fact.measure_column.column_datatype, rows
    ):
        await runner.execute(statement)

    if fact.data_values_column is not None:
        case = formatted_value_case(rows, fact.data_values_column.column_name)
        _add_data_values(ctx, fact, case, _annotated(fact, case))

    measure = sql.MEASURE_TABLE_NAME
    claimed: list[VariantNames] = []
    for locale in ctx.locales:
        names = ctx.claim_variant_names(locale, t("column_headers.measure", locale))
        ctx.add_variants(
            locale,
            names,
            value=sql.col("description", measure),
            reference=sql.col("reference", measure),
            sort=sql.col("sort_order", measure),
            hierarchy=sql.col("hierarchy", measure),
        )
        ctx.add_variants_to_views(locale, names)
        claimed.append(names)

    ctx.add_join(
        measure,
        sql.eq(sql.col("reference", measure), sql.fact_col(measure_column)),
        sql.col("language", measure),
    )
    ctx.add_order_by(sql.col("sort_order", measure))
    ctx.add_order_by(sql.col("reference", measure))
    ctx.lookup_tables.append(measure)

    for locale, names in zip(ctx.locales, claimed):
        await runner.execute(measure_filter_statement(ctx, measure_column, locale, names.value))
    for statement in sql.replace_metadata(
        ctx.schema, "lookup_tables", json.dumps(ctx.lookup_tables)
    ):
        await runner.execute(statement)


async def setup_measure(
    runner: StatementRunner,
    ctx: BuildContext,
    dataset: Dataset,
    revision: Optional[Revision] = None,
) -> None:
    logger.info("Setting up measure and data values...")
    assert ctx.fact is not None
    rows = dataset.measure.measure_table if dataset.measure else []
    skip_lookup = revision is not None and revision.skips_measure_lookup()
    if rows and ctx.fact.measure_column is not None and not skip_lookup:
        await setup_measure_with_lookup(runner, ctx, rows)
    else:
        if skip_lookup:
            logger.info("Measure has not been revalidated, building it without its lookup")
        await setup_measure_no_lookup(runner, ctx)
