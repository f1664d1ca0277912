# statcube/cube/sql.py
"""
Typed SQL building blocks for the cube builder.

Every identifier and literal that reaches the database is a sqlglot expression
rendered with the postgres dialect. Statements that sqlglot does not model well
(DDL, UPDATE ... FROM, DELETE ... USING) are written as constant templates whose
``{}`` slots only ever receive rendered expressions, never raw strings.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence, Union

from sqlglot import exp
from sqlglot.errors import ParseError

DIALECT = "postgres"

FACT_TABLE_NAME = "fact_table"
METADATA_TABLE_NAME = "metadata"
FILTER_TABLE_NAME = "filter_table"
VALIDATION_TABLE_NAME = "validation_table"
MEASURE_TABLE_NAME = "measure"
NOTE_CODES_TABLE_NAME = "note_codes"
ALL_NOTES_TABLE_NAME = "all_notes"
CORE_VIEW_NAME = "core_view"

Part = Union[exp.Expression, Sequence[exp.Expression]]


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def ident(name: str) -> exp.Identifier:
    return exp.to_identifier(name, quoted=True)


def table(name: str, schema: Optional[str] = None) -> exp.Table:
    return exp.table_(name, db=schema, quoted=True)


def col(name: str, table_name: Optional[str] = None) -> exp.Column:
    return exp.column(name, table=table_name, quoted=True)


def fact_col(name: str) -> exp.Column:
    return col(name, FACT_TABLE_NAME)


def lit(value: Any) -> exp.Expression:
    if value is None:
        return exp.null()
    if isinstance(value, bool):
        return exp.Boolean(this=value)
    if isinstance(value, (int, float)):
        return exp.Literal.number(value)
    return exp.Literal.string(str(value))


def func(name: str, *args: exp.Expression) -> exp.Anonymous:
    return exp.Anonymous(this=name, expressions=list(args))


def cast(expression: exp.Expression, to: str) -> exp.Cast:
    return exp.cast(expression, to, dialect=DIALECT)


def alias(expression: exp.Expression, name: str) -> exp.Alias:
    return exp.alias_(expression, name, quoted=True)


def eq(left: exp.Expression, right: exp.Expression) -> exp.EQ:
    return exp.EQ(this=left, expression=right)


def concat(*parts: exp.Expression) -> exp.Expression:
    result = parts[0]
    for part in parts[1:]:
        result = exp.DPipe(this=result, expression=part)
    return result


def ordered(expression: exp.Expression, desc: bool = False) -> exp.Ordered:
    # postgres puts NULLs last ascending and first descending
    return exp.Ordered(this=expression, desc=desc, nulls_first=desc)


def data_type(datatype: str) -> exp.DataType:
    """Parse a column datatype, DOUBLE becomes DOUBLE PRECISION on render."""
    try:
        return exp.DataType.build(datatype, dialect=DIALECT)
    except (ParseError, ValueError) as exc:
        raise ValueError(f"Unsupported column datatype: {datatype}") from exc


# ---------------------------------------------------------------------------
# Postgres helpers used by several engines
# ---------------------------------------------------------------------------


def notes_array(expression: exp.Expression, *, compact: bool = False) -> exp.Expression:
    """string_to_array(lower(notes), ',') with optional whitespace removal."""
    lowered: exp.Expression = func("lower", expression)
    if compact:
        lowered = func("replace", lowered, lit(" "), lit(""))
    return func("string_to_array", lowered, lit(","))


def remove_note_code(expression: exp.Expression, code: str, *, compact: bool = True) -> exp.Expression:
    return func(
        "array_to_string",
        func("array_remove", notes_array(expression, compact=compact), lit(code)),
        lit(","),
    )


def append_note_code(expression: exp.Expression, code: str) -> exp.Expression:
    """Remove then append a code so it is present exactly once."""
    return func(
        "array_to_string",
        func(
            "array_append",
            func("array_remove", notes_array(expression), lit(code)),
            lit(code),
        ),
        lit(","),
    )


def has_any_note_code(expression: exp.Expression, codes: Iterable[str]) -> exp.Expression:
    """string_to_array(lower(notes), ',') && ARRAY[codes]"""
    return func(
        "arrayoverlap",
        notes_array(expression),
        func("string_to_array", lit(",".join(codes)), lit(",")),
    )


def number_mask(decimals: int) -> str:
    zeros = "0" * decimals
    return f"FM999,999,990.{zeros}" if decimals > 0 else "FM999,999,990"


def format_decimal(expression: exp.Expression, decimals: int) -> exp.Expression:
    return func(
        "TO_CHAR",
        func("ROUND", cast(expression, "DECIMAL"), lit(decimals)),
        lit(number_mask(decimals)),
    )


def format_integer(expression: exp.Expression) -> exp.Expression:
    return func("TO_CHAR", cast(expression, "BIGINT"), lit(number_mask(0)))


def annotate(value: exp.Expression, notes: exp.Expression) -> exp.Expression:
    """value || ' [' || array_to_string(string_to_array(lower(notes), ','), '] [') || ']'"""
    return (
        exp.Case()
        .when(exp.Is(this=notes.copy(), expression=exp.null()), value.copy())
        .else_(
            concat(
                value.copy(),
                lit(" ["),
                func("array_to_string", notes_array(notes.copy()), lit("] [")),
                lit("]"),
            )
        )
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render(part: Part) -> str:
    if isinstance(part, exp.Expression):
        return part.sql(dialect=DIALECT)
    return ", ".join(render(p) for p in part)


def statement(template: str, *parts: Part) -> str:
    """Fill a constant SQL template with rendered expressions."""
    return template.format(*(render(p) for p in parts))


def values_rows(rows: Iterable[Sequence[Any]]) -> str:
    return ", ".join(render(exp.Tuple(expressions=[lit(v) for v in row])) for row in rows)


def chunked(rows: Sequence[Any], size: int = 500) -> Iterable[Sequence[Any]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def insert_rows(target: exp.Table, rows: Sequence[Sequence[Any]], size: int = 500) -> list[str]:
    return [
        f"INSERT INTO {render(target)} VALUES {values_rows(chunk)}"
        for chunk in chunked(rows, size)
    ]


# ---------------------------------------------------------------------------
# Common statements
# ---------------------------------------------------------------------------


def create_schema(schema: str) -> str:
    return statement("CREATE SCHEMA IF NOT EXISTS {}", ident(schema))


def drop_schema(schema: str) -> str:
    return statement("DROP SCHEMA IF EXISTS {} CASCADE", ident(schema))


def rename_schema(source: str, target: str) -> str:
    return statement("ALTER SCHEMA {} RENAME TO {}", ident(source), ident(target))


def insert_metadata(schema: str, key: str, value: Optional[str]) -> str:
    return statement(
        "INSERT INTO {} (key, value) VALUES ({}, {})",
        table(METADATA_TABLE_NAME, schema),
        lit(key),
        lit(value),
    )


def update_metadata(schema: str, key: str, value: Optional[str]) -> str:
    return statement(
        "UPDATE {} SET value = {} WHERE key = {}",
        table(METADATA_TABLE_NAME, schema),
        lit(value),
        lit(key),
    )


def replace_metadata(schema: str, key: str, value: Optional[str]) -> list[str]:
    return [
        statement(
            "DELETE FROM {} WHERE key = {}", table(METADATA_TABLE_NAME, schema), lit(key)
        ),
        insert_metadata(schema, key, value),
    ]


def select_metadata(schema: str) -> str:
    return statement("SELECT key, value FROM {}", table(METADATA_TABLE_NAME, schema))
