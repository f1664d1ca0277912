# statcube/schemas/cube.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class CubeBuildStatus(str, Enum):
    INCOMPLETE = "incomplete"
    AWAITING_MATERIALIZATION = "awaiting_materialization"
    COMPLETE = "complete"
    FAILED = "failed"


class CubeBuildType(str, Enum):
    FULL = "full"
    BASE = "base"
    VALIDATION = "validation"


class CubeViewConfig(BaseModel):
    """One named, config-driven view projected from the core view."""

    name: str
    refcodes: bool = False
    sort_orders: bool = False
    hierarchies: bool = False
    data_values: Literal["raw", "formatted", "annotated"] = "raw"
    dates: Literal["formatted", "raw", "none"] = "formatted"
    note_descriptions: bool = False


class CubeViewsFile(BaseModel):
    views: List[CubeViewConfig] = Field(default_factory=list)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PromotionJobInfo(BaseModel):
    id: str
    revision_id: str
    status: JobStatus
    attempts: int = 0
    error: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


class BuildResult(BaseModel):
    dataset_id: str
    revision_id: str
    build_id: str
    build_type: CubeBuildType
    schema_name: str
    status: CubeBuildStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    job: Optional[PromotionJobInfo] = None


class CubeStatus(BaseModel):
    revision_id: str
    status: Optional[CubeBuildStatus] = None
    metadata: dict[str, Optional[str]] = Field(default_factory=dict)
    job: Optional[PromotionJobInfo] = None
