# statcube/cube/fact_table.py
"""
Fact table engine: DDL, revision replay and the composite key.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import DBAPIError
from sqlglot import exp

from statcube.core.exceptions import CubeValidationException, CubeValidationType
from statcube.cube import sql
from statcube.cube.context import BuildContext, FactTableInfo
from statcube.cube.replay import apply_action
from statcube.db.runner import StatementRunner
from statcube.schemas.dataset import (
    DataTable,
    Dataset,
    FactTableColumnType,
)

logger = logging.getLogger(__name__)

KEY_COLUMN_TYPES = (
    FactTableColumnType.DIMENSION,
    FactTableColumnType.MEASURE,
    FactTableColumnType.TIME,
)


def fact_table_info(dataset: Dataset) -> FactTableInfo:
    columns = tuple(dataset.ordered_fact_table())
    if not columns:
        raise CubeValidationException(
            "Dataset has no fact table columns",
            CubeValidationType.FACT_TABLE,
            dataset_id=dataset.id,
        )
    return FactTableInfo(
        columns=columns,
        composite_key=tuple(
            c.column_name for c in columns if c.column_type in KEY_COLUMN_TYPES
        ),
        data_values_column=dataset.column_of_type(FactTableColumnType.DATA_VALUES),
        notes_column=dataset.column_of_type(FactTableColumnType.NOTE_CODES),
        measure_column=dataset.column_of_type(FactTableColumnType.MEASURE),
    )


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------


def create_fact_table_statement(schema: str, fact: FactTableInfo) -> str:
    definitions = [
        exp.ColumnDef(this=sql.ident(c.column_name), kind=sql.data_type(c.column_datatype))
        for c in fact.columns
    ]
    return sql.statement(
        "CREATE TABLE {} ({})", sql.table(sql.FACT_TABLE_NAME, schema), definitions
    )


def create_base_tables_statements(schema: str) -> list[str]:
    """metadata and filter_table, created before anything else in the build schema."""
    return [
        sql.statement(
            "CREATE TABLE {} (key VARCHAR PRIMARY KEY, value VARCHAR)",
            sql.table(sql.METADATA_TABLE_NAME, schema),
        ),
        sql.statement(
            "CREATE TABLE {} (reference VARCHAR, language VARCHAR, fact_table_column VARCHAR, "
            "dimension_name VARCHAR, description VARCHAR, hierarchy VARCHAR, "
            "PRIMARY KEY (reference, language, fact_table_column))",
            sql.table(sql.FILTER_TABLE_NAME, schema),
        ),
    ]


def primary_key_statement(schema: str, fact: FactTableInfo) -> str:
    return sql.statement(
        "ALTER TABLE {} ADD PRIMARY KEY ({})",
        sql.table(sql.FACT_TABLE_NAME, schema),
        [sql.ident(name) for name in fact.composite_key],
    )


def normalise_notes_statement(schema: str, fact: FactTableInfo) -> Optional[str]:
    if fact.notes_column is None:
        return None
    notes = sql.ident(fact.notes_column.column_name)
    return sql.statement(
        "UPDATE {} SET {} = NULL WHERE {} = ''",
        sql.table(sql.FACT_TABLE_NAME, schema),
        notes,
        notes,
    )


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


def replay_set(dataset: Dataset, revision_id: str) -> list[DataTable]:
    """
    Data tables to replay, oldest first.

    A published target replays every published revision up to and including
    itself; a draft target replays every published revision plus its own upload.
    """
    if not dataset.revisions:
        raise CubeValidationException(
            "Dataset has no revisions",
            CubeValidationType.NO_FIRST_REVISION,
            dataset_id=dataset.id,
            revision_id=revision_id,
        )
    target = dataset.get_revision(revision_id)
    if target is None:
        raise CubeValidationException(
            f"Revision {revision_id} does not belong to dataset {dataset.id}",
            CubeValidationType.NO_FIRST_REVISION,
            dataset_id=dataset.id,
            revision_id=revision_id,
        )

    published = sorted(
        (r for r in dataset.revisions if r.is_published),
        key=lambda r: r.revision_index or 0,
    )
    if target.is_published:
        chosen = [r for r in published if (r.revision_index or 0) <= (target.revision_index or 0)]
    else:
        chosen = [*published, target]

    if not chosen or chosen[0].data_table is None:
        raise CubeValidationException(
            "Unable to find first revision data table",
            CubeValidationType.NO_FIRST_REVISION,
            dataset_id=dataset.id,
            revision_id=revision_id,
        )

    data_tables = [r.data_table for r in chosen if r.data_table is not None]
    logger.debug(
        "Replaying %d data tables for revision %s", len(data_tables), revision_id
    )
    return data_tables


async def load_fact_tables(
    runner: StatementRunner, ctx: BuildContext, dataset: Dataset
) -> None:
    assert ctx.fact is not None
    for data_table in replay_set(dataset, ctx.revision_id):
        for statement in apply_action(ctx.schema, ctx.fact, data_table):
            await runner.execute(statement)

    normalise = normalise_notes_statement(ctx.schema, ctx.fact)
    if normalise:
        await runner.execute(normalise)


def classify_key_error(exc: DBAPIError) -> CubeValidationException:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    if "could not create unique index" in message:
        return CubeValidationException(
            "Duplicate facts found in the fact table",
            CubeValidationType.UNKNOWN_DUPLICATE_FACT,
        )
    if "contains null values" in message:
        return CubeValidationException(
            "Some facts have no value for a key column",
            CubeValidationType.INCOMPLETE_FACTS,
        )
    return CubeValidationException(
        f"Unable to create the fact table primary key: {message}",
        CubeValidationType.UNKNOWN_ERROR,
    )


async def create_primary_key(runner: StatementRunner, ctx: BuildContext) -> None:
    assert ctx.fact is not None
    if not ctx.fact.composite_key:
        logger.warning("Fact table for %s has no key columns", ctx.dataset_id)
        return
    statement = primary_key_statement(ctx.schema, ctx.fact)
    try:
        await runner.execute(statement)
    except DBAPIError as exc:
        error = classify_key_error(exc)
        error.sql = statement
        logger.error("Failed to apply fact table primary key: %s", error.message)
        raise error.with_context(
            dataset_id=ctx.dataset_id, revision_id=ctx.revision_id, build_id=ctx.build_id
        ) from exc


# ---------------------------------------------------------------------------
# Validation table and counts
# ---------------------------------------------------------------------------


def validation_columns(fact: FactTableInfo, base: bool) -> list[str]:
    if not base:
        return list(fact.composite_key)
    skip = {
        c.column_name
        for c in (fact.data_values_column, fact.notes_column)
        if c is not None
    }
    return [name for name in fact.column_names if name not in skip]


def validation_table_statements(schema: str, fact: FactTableInfo, base: bool = False) -> list[str]:
    target = sql.table(sql.VALIDATION_TABLE_NAME, schema)
    statements = [
        sql.statement(
            "CREATE TABLE {} (reference TEXT, fact_table_column TEXT, "
            "PRIMARY KEY (reference, fact_table_column))",
            target,
        )
    ]
    for name in validation_columns(fact, base):
        column = sql.ident(name)
        statements.append(
            sql.statement(
                "INSERT INTO {} (reference, fact_table_column) "
                "SELECT DISTINCT CAST({} AS TEXT), {} FROM {} WHERE {} IS NOT NULL",
                target,
                column,
                sql.lit(name),
                sql.table(sql.FACT_TABLE_NAME, schema),
                column,
            )
        )
    statements.append(
        sql.statement(
            "CREATE INDEX {} ON {} (fact_table_column)",
            sql.ident(f"{sql.VALIDATION_TABLE_NAME}_column_idx"),
            target,
        )
    )
    return statements


def fact_count_statement(schema: str) -> str:
    return sql.statement(
        "INSERT INTO {} (key, value) SELECT 'fact_count', CAST(COUNT(*) AS VARCHAR) FROM {}",
        sql.table(sql.METADATA_TABLE_NAME, schema),
        sql.table(sql.FACT_TABLE_NAME, schema),
    )


async def create_validation_table(
    runner: StatementRunner, ctx: BuildContext, base: bool = False
) -> None:
    assert ctx.fact is not None
    for statement in validation_table_statements(ctx.schema, ctx.fact, base):
        await runner.execute(statement)
    await runner.execute(fact_count_statement(ctx.schema))
