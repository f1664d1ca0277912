# statcube/schemas/cube_query.py
from __future__ import annotations

from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field


class SortSpec(BaseModel):
    column: str
    direction: Literal["asc", "desc"] = "asc"


class CubeQueryModel(BaseModel):
    locale: str = "en-GB"
    view: str = Field(default="core_view", description="core_view or a named view")
    columns: Optional[List[str]] = Field(
        default=None, description="Subset of view columns, all of them when omitted"
    )
    filters: dict[str, List[str]] = Field(
        default_factory=dict,
        description="Column name -> accepted values, matched on the reference column",
    )
    sort: List[SortSpec] = Field(default_factory=list)
    limit: int = 100
    offset: int = 0


class CubeQueryResult(BaseModel):
    view: str
    columns: List[str]
    items: List[dict[str, Any]]
    offset: int
    limit: int
    count: int
    total: Optional[int] = None


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    XLSX = "xlsx"


class CubeExportModel(CubeQueryModel):
    format: ExportFormat = ExportFormat.CSV


class FilterNode(BaseModel):
    reference: str
    description: Optional[str] = None
    hierarchy: Optional[str] = None
    children: List["FilterNode"] = Field(default_factory=list)


class CubeFilter(BaseModel):
    fact_table_column: str
    dimension_name: str
    values: List[FilterNode] = Field(default_factory=list)


FilterNode.model_rebuild()
