# statcube/schemas/dataset.py
"""
Dataset aggregate consumed by the cube builder.

These models mirror what the ingestion pipeline has already validated: the fact
table layout, dimensions with their extractors and lookup tables, the measure
with its rows and the ordered revision history with one upload per revision.
"""
from __future__ import annotations

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field


class FactTableColumnType(str, Enum):
    DIMENSION = "dimension"
    MEASURE = "measure"
    TIME = "time"
    DATA_VALUES = "data_values"
    NOTE_CODES = "note_codes"
    LINE_NUMBER = "line_number"
    UNKNOWN = "unknown"


class DimensionType(str, Enum):
    RAW = "raw"
    SYMBOL = "symbol"
    TEXT = "text"
    NUMERIC = "numeric"
    DATE = "date"
    DATE_PERIOD = "date_period"
    LOOKUP_TABLE = "lookup_table"


class DataTableAction(str, Enum):
    ADD = "add"
    REPLACE_ALL = "replace_all"
    REVISE = "revise"
    ADD_REVISE = "add_revise"
    CORRECTION = "correction"


class YearType(str, Enum):
    CALENDAR = "calendar"
    FINANCIAL = "financial"
    TAX = "tax"
    ACADEMIC = "academic"
    METEOROLOGICAL = "meteorological"
    ROLLING = "rolling"


class NumberType(str, Enum):
    INTEGER = "integer"
    DECIMAL = "decimal"


# ---------------------------------------------------------------------------
# Fact table
# ---------------------------------------------------------------------------


class FactTableColumn(BaseModel):
    column_name: str
    column_type: FactTableColumnType = FactTableColumnType.UNKNOWN
    column_datatype: str = "VARCHAR"
    column_index: int


# ---------------------------------------------------------------------------
# Dimensions
# ---------------------------------------------------------------------------


class DateExtractor(BaseModel):
    type: YearType = YearType.CALENDAR
    year_format: Optional[str] = "YYYY"
    quarter_format: Optional[str] = None
    month_format: Optional[str] = None
    date_format: Optional[str] = None
    quarter_total_is_fifth_quart: bool = False
    start_day: int = 1
    start_month: int = 1


class NumberExtractor(BaseModel):
    type: NumberType = NumberType.INTEGER
    decimal_places: int = 0


class LookupTable(BaseModel):
    id: str
    original_filename: Optional[str] = None


class DimensionMetadata(BaseModel):
    language: str
    name: Optional[str] = None


class Dimension(BaseModel):
    id: str
    fact_table_column: str
    type: DimensionType = DimensionType.RAW
    extractor: Optional[Union[DateExtractor, NumberExtractor]] = None
    lookup_table: Optional[LookupTable] = None
    metadata: List[DimensionMetadata] = Field(default_factory=list)

    def display_name(self, locale: str) -> str:
        for info in self.metadata:
            if info.language.lower() == locale.lower() and info.name:
                return info.name
        return self.fact_table_column


# ---------------------------------------------------------------------------
# Measure
# ---------------------------------------------------------------------------


class MeasureRow(BaseModel):
    reference: str
    language: str
    description: str
    notes: Optional[str] = None
    sort_order: Optional[int] = None
    format: str = "decimal"
    decimals: Optional[int] = None
    measure_type: Optional[str] = None
    hierarchy: Optional[str] = None


class Measure(BaseModel):
    id: str
    fact_table_column: str
    lookup_table: Optional[LookupTable] = None
    measure_table: List[MeasureRow] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Revisions
# ---------------------------------------------------------------------------


class DataTableDescription(BaseModel):
    column_name: str
    column_index: int = 0
    fact_table_column: Optional[str] = None


class DataTable(BaseModel):
    id: str
    action: DataTableAction = DataTableAction.ADD
    descriptions: List[DataTableDescription] = Field(default_factory=list)


class DimensionTask(BaseModel):
    id: str
    lookup_table_updated: bool = False


class MeasureTask(BaseModel):
    id: Optional[str] = None
    lookup_table_updated: bool = False


class RevisionTasks(BaseModel):
    dimensions: List[DimensionTask] = Field(default_factory=list)
    measure: Optional[MeasureTask] = None


class Revision(BaseModel):
    id: str
    revision_index: Optional[int] = None
    data_table: Optional[DataTable] = None
    tasks: Optional[RevisionTasks] = None

    @property
    def is_published(self) -> bool:
        return bool(self.revision_index and self.revision_index > 0)

    def needs_raw_dimension(self, dimension_id: str) -> bool:
        """A dimension listed in the tasks and not yet re-validated is built as raw."""
        if self.tasks is None:
            return False
        return any(
            task.id == dimension_id and not task.lookup_table_updated
            for task in self.tasks.dimensions
        )

    def skips_measure_lookup(self) -> bool:
        if self.tasks is None or self.tasks.measure is None:
            return False
        return not self.tasks.measure.lookup_table_updated


class Dataset(BaseModel):
    id: str
    fact_table: List[FactTableColumn] = Field(default_factory=list)
    dimensions: List[Dimension] = Field(default_factory=list)
    measure: Optional[Measure] = None
    revisions: List[Revision] = Field(default_factory=list)
    draft_revision_id: Optional[str] = None
    end_revision_id: Optional[str] = None

    def get_revision(self, revision_id: str) -> Optional[Revision]:
        return next((r for r in self.revisions if r.id == revision_id), None)

    def ordered_fact_table(self) -> list[FactTableColumn]:
        return sorted(self.fact_table, key=lambda col: col.column_index)

    def fact_column(self, name: str) -> Optional[FactTableColumn]:
        return next((c for c in self.fact_table if c.column_name == name), None)

    def column_of_type(self, column_type: FactTableColumnType) -> Optional[FactTableColumn]:
        return next(
            (c for c in self.ordered_fact_table() if c.column_type == column_type), None
        )
