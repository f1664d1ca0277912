# statcube/cube/notes.py
from __future__ import annotations

import logging

from statcube.core.i18n import language_value, t
from statcube.cube import sql
from statcube.cube.context import BuildContext
from statcube.db.runner import StatementRunner

logger = logging.getLogger(__name__)

# (code, translation tag)
NOTE_CODES: tuple[tuple[str, str], ...] = (
    ("a", "average"),
    ("b", "break_in_series"),
    ("c", "confidential"),
    ("e", "estimated"),
    ("f", "forecast"),
    ("k", "low_figure"),
    ("ns", "not_statistically_significant"),
    ("p", "provisional"),
    ("r", "revised"),
    ("s", "statistically_significant_at_level_1"),
    ("ss", "statistically_significant_at_level_2"),
    ("sss", "statistically_significant_at_level_3"),
    ("t", "total"),
    ("u", "low_reliability"),
    ("w", "not_recorded"),
    ("x", "missing_data"),
    ("z", "not_applicable"),
)


def note_code_rows(locales: list[str]) -> list[tuple]:
    return [
        (code, language_value(locale), tag, t(f"note_codes.{tag}", locale), None)
        for locale in locales
        for code, tag in NOTE_CODES
    ]


def note_codes_statements(schema: str, locales: list[str]) -> list[str]:
    target = sql.table(sql.NOTE_CODES_TABLE_NAME, schema)
    return [
        sql.statement(
            "CREATE TABLE {} (code VARCHAR, language VARCHAR, tag VARCHAR, "
            "description VARCHAR, notes VARCHAR)",
            target,
        ),
        *sql.insert_rows(target, note_code_rows(locales)),
    ]


def all_notes_statement(schema: str, notes_column: str) -> str:
    """One localised, comma joined description per distinct raw notes string."""
    notes = sql.fact_col(notes_column)
    return sql.statement(
        "CREATE TABLE {} AS SELECT {} AS code, note_codes.language AS language, "
        "string_agg(DISTINCT note_codes.description, ', ') AS description "
        "FROM {} JOIN {} ON array_position({}, note_codes.code) IS NOT NULL "
        "GROUP BY {}, note_codes.language",
        sql.table(sql.ALL_NOTES_TABLE_NAME, schema),
        notes,
        sql.table(sql.FACT_TABLE_NAME, schema),
        sql.table(sql.NOTE_CODES_TABLE_NAME, schema),
        sql.notes_array(notes.copy(), compact=True),
        notes.copy(),
    )


def note_codes_metadata_statement(schema: str, notes_column: str) -> str:
    """Distinct codes present in the data, used for the legend."""
    notes = sql.ident(notes_column)
    return sql.statement(
        "INSERT INTO {} (key, value) SELECT 'note_codes', "
        "ARRAY_TO_STRING(ARRAY(SELECT DISTINCT unnest(string_to_array({}, ',')) "
        "FROM {} WHERE {} IS NOT NULL), ',')",
        sql.table(sql.METADATA_TABLE_NAME, schema),
        notes,
        sql.table(sql.FACT_TABLE_NAME, schema),
        notes.copy(),
    )


async def setup_notes(runner: StatementRunner, ctx: BuildContext) -> None:
    assert ctx.fact is not None
    if ctx.fact.notes_column is None:
        logger.info("No notes column, skipping notes table")
        return
    notes_column = ctx.fact.notes_column.column_name
    logger.info("Creating notes table...")

    for statement in note_codes_statements(ctx.schema, ctx.locales):
        await runner.execute(statement)
    await runner.execute(all_notes_statement(ctx.schema, notes_column))

    for locale in ctx.locales:
        name = ctx.claim_name(locale, t("column_headers.notes", locale))
        ctx.add_column(locale, sql.col("description", sql.ALL_NOTES_TABLE_NAME), name)
        for view in ctx.locale_build(locale).views.values():
            if view.config.note_descriptions:
                view.add(name)

    ctx.add_join(
        sql.ALL_NOTES_TABLE_NAME,
        sql.eq(sql.col("code", sql.ALL_NOTES_TABLE_NAME), sql.fact_col(notes_column)),
        sql.col("language", sql.ALL_NOTES_TABLE_NAME),
    )
    await runner.execute(note_codes_metadata_statement(ctx.schema, notes_column))
