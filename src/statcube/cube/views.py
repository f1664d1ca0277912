# statcube/cube/views.py
"""
View engine.

Assembles one core view per locale from the BuildContext, projects the named
views on top of it and records everything needed to rebuild them in the
schema's metadata table. Promotion to materialized views works from that
metadata alone so it can run long after the build that produced it.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import sqlglot
from sqlglot import exp

from statcube.core.i18n import lang_code
from statcube.cube import sql
from statcube.cube.context import BuildContext, NamedViewColumns
from statcube.db.runner import StatementRunner
from statcube.schemas.cube import CubeBuildStatus, CubeBuildType

logger = logging.getLogger(__name__)

MATERIALIZED_INFIX = "mat"


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


def view_name(name: str, lang: str) -> str:
    return f"{name}_{lang}"


def materialized_view_name(name: str, lang: str) -> str:
    return f"{name}_{MATERIALIZED_INFIX}_{lang}"


def core_view_name(lang: str) -> str:
    return view_name(sql.CORE_VIEW_NAME, lang)


def columns_key(name: str, lang: str) -> str:
    if name == sql.CORE_VIEW_NAME:
        return f"{sql.CORE_VIEW_NAME}_columns_{lang}"
    return f"{view_name(name, lang)}_columns"


def index_columns_key(lang: str) -> str:
    return f"{sql.CORE_VIEW_NAME}_index_columns_{lang}"


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def core_select(ctx: BuildContext, locale: str, schema: str) -> exp.Select:
    build = ctx.locale_build(locale)
    if build.select:
        select = exp.select(*(e.copy() for e in build.select))
    else:
        select = exp.select(exp.Star())
    select = select.from_(sql.table(sql.FACT_TABLE_NAME, schema))

    for join in ctx.joins:
        on = join.on.copy()
        if join.language_column is not None:
            on = exp.and_(on, sql.eq(join.language_column.copy(), sql.lit(build.language)))
        select = select.join(
            sql.table(join.table_name, schema), on=on, join_type="left"
        )
    if ctx.order_by:
        select = select.order_by(*(o.copy() for o in ctx.order_by))
    return select


def named_view_select(
    view: NamedViewColumns, schema: str, source_view: str, fallback: list[str]
) -> tuple[exp.Select, list[str]]:
    projection = view.projection or [(name, name) for name in fallback]
    columns = [
        sql.col(source) if source == name else sql.alias(sql.col(source), name)
        for source, name in projection
    ]
    select = exp.select(*columns).from_(sql.table(source_view, schema))
    return select, [name for _, name in projection]


def persisted_schema(ctx: BuildContext) -> str:
    """Schema the stored view SQL refers to once the build is in place."""
    if ctx.build_type == CubeBuildType.VALIDATION:
        return ctx.schema
    return ctx.revision_schema


def view_statements(ctx: BuildContext, fallback_columns: list[str]) -> list[str]:
    assert ctx.fact is not None
    target = persisted_schema(ctx)
    statements: list[str] = []
    view_names: list[str] = []

    for locale in ctx.locales:
        build = ctx.locale_build(locale)
        lang = lang_code(locale)
        core = core_view_name(lang)
        live = core_select(ctx, locale, ctx.schema)

        statements.append(
            sql.statement("CREATE VIEW {} AS {}", sql.table(core, ctx.schema), live)
        )
        columns = build.columns or list(ctx.fact.column_names)
        for key, value in (
            (core, sql.render(core_select(ctx, locale, target))),
            (columns_key(sql.CORE_VIEW_NAME, lang), json.dumps(columns)),
            (index_columns_key(lang), json.dumps(build.index_columns)),
        ):
            statements.extend(sql.replace_metadata(ctx.schema, key, value))

        for name, view in build.views.items():
            if name not in view_names:
                view_names.append(name)
            named = view_name(name, lang)
            live_view, output = named_view_select(view, ctx.schema, core, fallback_columns)
            stored_view, _ = named_view_select(view, target, core, fallback_columns)
            statements.append(
                sql.statement("CREATE VIEW {} AS {}", sql.table(named, ctx.schema), live_view)
            )
            statements.extend(
                sql.replace_metadata(ctx.schema, named, sql.render(stored_view))
            )
            statements.extend(
                sql.replace_metadata(ctx.schema, columns_key(name, lang), json.dumps(output))
            )

    statements.extend(sql.replace_metadata(ctx.schema, "views", json.dumps(view_names)))
    return statements


async def create_views(runner: StatementRunner, ctx: BuildContext) -> None:
    assert ctx.fact is not None
    logger.info("Creating core and named views for %s", ctx.build_id)
    for statement in view_statements(ctx, ctx.fact.column_names):
        await runner.execute(statement)


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------


def stored_languages(metadata: dict[str, Optional[str]]) -> list[str]:
    prefix = f"{sql.CORE_VIEW_NAME}_"
    return sorted(
        key[len(prefix):]
        for key in metadata
        if key.startswith(prefix) and "_" not in key[len(prefix):]
    )


def retarget(stored_sql: str, source: str, target: str) -> str:
    """Point a stored named-view SELECT at another relation in the same schema."""
    tree = sqlglot.parse_one(stored_sql, read=sql.DIALECT)
    for node in tree.find_all(exp.Table):
        if node.name == source:
            node.set("this", sql.ident(target))
    return tree.sql(dialect=sql.DIALECT)


def promotion_statements(
    schema: str,
    metadata: dict[str, Optional[str]],
    create_indexes: bool = True,
    finished_at: Optional[datetime] = None,
) -> list[str]:
    languages = stored_languages(metadata)
    if not languages:
        raise ValueError(f"No core views recorded in {schema}.metadata")
    named = json.loads(metadata.get("views") or "[]")
    statements: list[str] = []

    for lang in languages:
        core = core_view_name(lang)
        materialized = materialized_view_name(sql.CORE_VIEW_NAME, lang)
        core_sql = metadata[core]
        statements.append(
            f"CREATE MATERIALIZED VIEW {sql.render(sql.table(materialized, schema))} AS {core_sql}"
        )
        for name in named:
            stored = metadata.get(view_name(name, lang))
            if not stored:
                logger.warning("No stored SQL for view %s_%s, skipping", name, lang)
                continue
            statements.append(
                f"CREATE VIEW {sql.render(sql.table(materialized_view_name(name, lang), schema))} "
                f"AS {retarget(stored, core, materialized)}"
            )
            statements.append(
                sql.statement(
                    "DROP VIEW IF EXISTS {}", sql.table(view_name(name, lang), schema)
                )
            )
        statements.append(sql.statement("DROP VIEW IF EXISTS {}", sql.table(core, schema)))

        if create_indexes:
            for column in json.loads(metadata.get(index_columns_key(lang)) or "[]"):
                statements.append(
                    sql.statement(
                        "CREATE INDEX ON {} ({})",
                        sql.table(materialized, schema),
                        sql.ident(column),
                    )
                )

    finished = (finished_at or datetime.now(timezone.utc)).isoformat()
    statements.append(
        sql.update_metadata(schema, "build_status", CubeBuildStatus.COMPLETE.value)
    )
    statements.extend(sql.replace_metadata(schema, "build_finished", finished))
    statements.extend(sql.replace_metadata(schema, "materialization_error", None))
    return statements


async def read_metadata(runner: StatementRunner, schema: str) -> dict[str, Optional[str]]:
    rows = await runner.fetch_all(sql.select_metadata(schema))
    return {row["key"]: row["value"] for row in rows}


async def promote_views(
    runner: StatementRunner, schema: str, create_indexes: bool = True
) -> bool:
    """Returns False when the schema was already promoted."""
    metadata = await read_metadata(runner, schema)
    if metadata.get("build_status") == CubeBuildStatus.COMPLETE.value:
        logger.info("Views in %s are already materialized", schema)
        return False
    for statement in promotion_statements(schema, metadata, create_indexes):
        await runner.execute(statement)
    logger.info("Promoted views in %s to materialized views", schema)
    return True
