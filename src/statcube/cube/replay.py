# statcube/cube/replay.py
"""
Merge semantics for replaying one upload into the fact table.

Each action is composed from the same primitives; `apply_action` returns the
ordered statements that merge one data table into the fact table.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from sqlglot import exp

from statcube.core.config import settings
from statcube.core.exceptions import (
    FactTableValidationException,
    FactTableValidationType,
)
from statcube.cube import sql
from statcube.cube.context import FactTableInfo
from statcube.schemas.dataset import DataTable, DataTableAction

logger = logging.getLogger(__name__)

PROVISIONAL = "p"
FORECAST = "f"
REVISED = "r"
TRANSIENT_FLAGS = (PROVISIONAL, FORECAST, REVISED)


@dataclass
class FactTableReplay:
    schema: str
    fact: FactTableInfo
    data_table: DataTable
    staging_name: str
    source_schema: str = "data_tables"

    @classmethod
    def for_data_table(
        cls, schema: str, fact: FactTableInfo, data_table: DataTable
    ) -> "FactTableReplay":
        return cls(
            schema=schema,
            fact=fact,
            data_table=data_table,
            staging_name=f"staging_{uuid.uuid4().hex}",
            source_schema=settings.data_tables_schema,
        )

    # ------------------------------------------------------------------
    # Column mapping
    # ------------------------------------------------------------------

    def data_column(self, fact_column: str) -> str:
        for description in self.data_table.descriptions:
            if description.fact_table_column == fact_column:
                return description.column_name
        return fact_column

    def check_key_columns(self) -> None:
        if not self.data_table.descriptions:
            return
        mapped = {d.fact_table_column for d in self.data_table.descriptions}
        missing = [c for c in self.fact.composite_key if c not in mapped]
        if missing:
            raise FactTableValidationException(
                f"Data table {self.data_table.id} has no columns for {', '.join(missing)}",
                FactTableValidationType.UNMATCHED_COLUMNS,
                columns=missing,
            )

    @property
    def fact_table(self) -> exp.Table:
        return sql.table(sql.FACT_TABLE_NAME, self.schema)

    @property
    def staging(self) -> exp.Table:
        return sql.table(self.staging_name)

    @property
    def source(self) -> exp.Table:
        return sql.table(self.data_table.id, self.source_schema)

    def staged(self, fact_column: str) -> exp.Column:
        return sql.col(self.data_column(fact_column), self.staging_name)

    def key_match(self) -> exp.Expression:
        """CAST(fact.k AS VARCHAR) = CAST(staging.k AS VARCHAR) for every key column."""
        return exp.and_(
            *(
                sql.eq(
                    sql.cast(sql.fact_col(name), "VARCHAR"),
                    sql.cast(self.staged(name), "VARCHAR"),
                )
                for name in self.fact.composite_key
            )
        )

    def _value_and_notes_from_staging(self) -> list[exp.Expression]:
        assignments = []
        for column in (self.fact.data_values_column, self.fact.notes_column):
            if column is not None:
                assignments.append(
                    sql.eq(sql.ident(column.column_name), self.staged(column.column_name))
                )
        return assignments

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def delete_all(self) -> list[str]:
        return [sql.statement("DELETE FROM {}", self.fact_table)]

    def load_all(self) -> list[str]:
        return [
            sql.statement(
                "INSERT INTO {} ({}) SELECT {} FROM {}",
                self.fact_table,
                [sql.ident(name) for name in self.fact.column_names],
                [sql.col(self.data_column(name)) for name in self.fact.column_names],
                self.source,
            )
        ]

    def strip_flags(self, codes: tuple[str, ...] = TRANSIENT_FLAGS) -> list[str]:
        notes = self.fact.notes_column
        if notes is None:
            return []
        return [
            sql.statement(
                "UPDATE {} SET {} = {}",
                self.fact_table,
                sql.ident(notes.column_name),
                sql.remove_note_code(sql.fact_col(notes.column_name), code),
            )
            for code in codes
        ]

    def stage(self) -> list[str]:
        return [
            sql.statement(
                "CREATE TEMPORARY TABLE {} AS SELECT * FROM {}", self.staging, self.source
            )
        ]

    def finalise_provisional(self) -> list[str]:
        """Existing p/f rows take the staged value before the flags are stripped."""
        values, notes = self.fact.data_values_column, self.fact.notes_column
        if values is None or notes is None:
            return []
        return [
            sql.statement(
                "UPDATE {} SET {} = {} FROM {} WHERE {}",
                self.fact_table,
                sql.ident(values.column_name),
                self.staged(values.column_name),
                self.staging,
                exp.and_(
                    self.key_match(),
                    sql.has_any_note_code(
                        sql.fact_col(notes.column_name), (PROVISIONAL, FORECAST)
                    ),
                ),
            )
        ]

    def merge_provisional(self) -> list[str]:
        """Staged p/f rows overwrite their fact row and leave the staging table."""
        notes = self.fact.notes_column
        assignments = self._value_and_notes_from_staging()
        if notes is None or not assignments:
            return []
        staged_flagged = sql.has_any_note_code(
            self.staged(notes.column_name), (PROVISIONAL, FORECAST)
        )
        return [
            sql.statement(
                "UPDATE {} SET {} FROM {} WHERE {}",
                self.fact_table,
                assignments,
                self.staging,
                exp.and_(self.key_match(), staged_flagged),
            ),
            sql.statement(
                "DELETE FROM {} USING {} WHERE {}",
                self.staging,
                self.fact_table,
                exp.and_(staged_flagged.copy(), self.key_match()),
            ),
        ]

    def flag_revised(self) -> list[str]:
        """Staged rows whose value differs from the existing fact carry 'r'."""
        values, notes = self.fact.data_values_column, self.fact.notes_column
        if notes is None:
            return []
        staged_notes = self.staged(notes.column_name)
        statements = [
            sql.statement(
                "UPDATE {} SET {} = {}",
                self.staging,
                sql.ident(self.data_column(notes.column_name)),
                sql.remove_note_code(staged_notes, REVISED),
            )
        ]
        if values is None:
            return statements
        differs = exp.NullSafeNEQ(
            this=sql.fact_col(values.column_name),
            expression=self.staged(values.column_name),
        )
        statements.append(
            sql.statement(
                "UPDATE {} SET {} = {} FROM {} WHERE {}",
                self.staging,
                sql.ident(self.data_column(notes.column_name)),
                sql.append_note_code(staged_notes.copy(), REVISED),
                self.fact_table,
                exp.and_(self.key_match(), differs),
            )
        )
        return statements

    def merge_matched(self) -> list[str]:
        assignments = self._value_and_notes_from_staging()
        if not assignments:
            return []
        return [
            sql.statement(
                "UPDATE {} SET {} FROM {} WHERE {}",
                self.fact_table,
                assignments,
                self.staging,
                self.key_match(),
            )
        ]

    def append_unmatched(self) -> list[str]:
        return [
            sql.statement(
                "INSERT INTO {} ({}) SELECT {} FROM {} WHERE NOT EXISTS "
                "(SELECT 1 FROM {} WHERE {})",
                self.fact_table,
                [sql.ident(name) for name in self.fact.column_names],
                [self.staged(name) for name in self.fact.column_names],
                self.staging,
                self.fact_table,
                self.key_match(),
            )
        ]

    def drop_staging(self) -> list[str]:
        return [sql.statement("DROP TABLE IF EXISTS {}", self.staging)]


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def _replace_all(replay: FactTableReplay) -> list[str]:
    return [*replay.delete_all(), *replay.load_all()]


def _add(replay: FactTableReplay) -> list[str]:
    return [*replay.strip_flags(), *replay.load_all()]


def _revise(replay: FactTableReplay) -> list[str]:
    return [
        *replay.stage(),
        *replay.finalise_provisional(),
        *replay.strip_flags(),
        *replay.merge_provisional(),
        *replay.flag_revised(),
        *replay.merge_matched(),
        *replay.drop_staging(),
    ]


def _add_revise(replay: FactTableReplay) -> list[str]:
    statements = _revise(replay)
    # unmatched rows are appended before the staging table goes away
    return [*statements[:-1], *replay.append_unmatched(), statements[-1]]


def _correction(replay: FactTableReplay) -> list[str]:
    return [*replay.stage(), *replay.merge_matched(), *replay.drop_staging()]


ACTIONS: dict[DataTableAction, Callable[[FactTableReplay], list[str]]] = {
    DataTableAction.REPLACE_ALL: _replace_all,
    DataTableAction.ADD: _add,
    DataTableAction.REVISE: _revise,
    DataTableAction.ADD_REVISE: _add_revise,
    DataTableAction.CORRECTION: _correction,
}


def apply_action(
    schema: str,
    fact: FactTableInfo,
    data_table: DataTable,
    replay: Optional[FactTableReplay] = None,
) -> list[str]:
    replay = replay or FactTableReplay.for_data_table(schema, fact, data_table)
    if data_table.action != DataTableAction.REPLACE_ALL:
        replay.check_key_columns()
    logger.debug(
        "Performing action %s on fact table for data table %s",
        data_table.action.value,
        data_table.id,
    )
    return ACTIONS[data_table.action](replay)
