# statcube/api/cube_query/filters.py
from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy import column, select, table
from sqlalchemy.ext.asyncio import AsyncSession

from statcube.core.i18n import language_value
from statcube.cube import sql as cube_sql
from statcube.schemas.cube_query import CubeFilter, FilterNode

logger = logging.getLogger(__name__)

FILTER_COLUMNS = (
    "reference",
    "language",
    "fact_table_column",
    "dimension_name",
    "description",
    "hierarchy",
)


def transform_hierarchy(rows: Iterable[dict[str, Any]]) -> list[FilterNode]:
    """
    Rebuild the tree from flat filter rows.

    Each row becomes a node keyed by reference; a row whose hierarchy names
    another known reference is linked under it, everything else is a root.
    Input order is preserved at every level.
    """
    nodes: dict[str, FilterNode] = {}
    order: list[FilterNode] = []
    for row in rows:
        reference = str(row["reference"])
        if reference in nodes:
            continue
        node = FilterNode(
            reference=reference,
            description=row.get("description"),
            hierarchy=row.get("hierarchy"),
        )
        nodes[reference] = node
        order.append(node)

    children: set[str] = set()
    for node in order:
        parent = nodes.get(node.hierarchy) if node.hierarchy else None
        if parent is None or parent is node:
            continue
        parent.children.append(node)
        children.add(node.reference)

    return [node for node in order if node.reference not in children]


def group_filters(rows: Iterable[dict[str, Any]]) -> list[CubeFilter]:
    grouped: dict[str, tuple[str, list[dict[str, Any]]]] = {}
    for row in rows:
        key = row["fact_table_column"]
        if key not in grouped:
            grouped[key] = (row["dimension_name"], [])
        grouped[key][1].append(row)
    return [
        CubeFilter(
            fact_table_column=key,
            dimension_name=name,
            values=transform_hierarchy(items),
        )
        for key, (name, items) in grouped.items()
    ]


async def get_filters(db: AsyncSession, revision_id: str, locale: str) -> list[CubeFilter]:
    filter_table = table(
        cube_sql.FILTER_TABLE_NAME,
        *(column(c) for c in FILTER_COLUMNS),
        schema=revision_id,
    )
    stmt = select(filter_table).where(
        filter_table.c.language == language_value(locale)
    )
    result = await db.execute(stmt)
    rows = [dict(row) for row in result.mappings().all()]
    logger.debug(f"Loaded {len(rows)} filter rows for {revision_id} ({locale})")
    return group_filters(rows)
