from __future__ import annotations

from enum import Enum
from typing import Optional


class CubeValidationType(str, Enum):
    FACT_TABLE_COLUMN_MISSING = "fact_table_column_missing"
    FACT_TABLE = "fact_table"
    NO_FIRST_REVISION = "no_first_revision"
    UNKNOWN_DUPLICATE_FACT = "unknown_duplicate_fact"
    INCOMPLETE_FACTS = "incomplete_facts"
    CUBE_CREATION_FAILED = "cube_creation_failed"
    UNKNOWN_ERROR = "unknown_error"


class FactTableValidationType(str, Enum):
    UNMATCHED_COLUMNS = "unmatched_columns"
    UNKNOWN_ERROR = "unknown_error"


class CubeValidationException(Exception):
    """Raised when a cube cannot be built from the dataset as it stands."""

    def __init__(
        self,
        message: str,
        type: CubeValidationType = CubeValidationType.UNKNOWN_ERROR,
        *,
        dataset_id: Optional[str] = None,
        revision_id: Optional[str] = None,
        build_id: Optional[str] = None,
        sql: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.type = type
        self.dataset_id = dataset_id
        self.revision_id = revision_id
        self.build_id = build_id
        self.sql = sql

    def with_context(
        self,
        *,
        dataset_id: Optional[str] = None,
        revision_id: Optional[str] = None,
        build_id: Optional[str] = None,
    ) -> "CubeValidationException":
        self.dataset_id = self.dataset_id or dataset_id
        self.revision_id = self.revision_id or revision_id
        self.build_id = self.build_id or build_id
        return self

    def __str__(self) -> str:
        return f"{self.type.value}: {self.message}"


class FactTableValidationException(Exception):
    """Raised when an upload cannot be mapped onto the fact table."""

    def __init__(
        self,
        message: str,
        type: FactTableValidationType = FactTableValidationType.UNKNOWN_ERROR,
        *,
        columns: Optional[list[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.type = type
        self.columns = columns or []

    def __str__(self) -> str:
        return f"{self.type.value}: {self.message}"


class DatasetNotFound(LookupError):
    pass
