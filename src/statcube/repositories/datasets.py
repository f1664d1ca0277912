# statcube/repositories/datasets.py
"""
Where dataset aggregates come from.

The cube builder only needs a read-only view of an already validated dataset.
`YamlDatasetRepository` reads one YAML document per dataset, which is what the
CLI and tests use; other sources implement the same protocol.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from pydantic import ValidationError

from statcube.core.config import settings
from statcube.core.exceptions import DatasetNotFound
from statcube.core.files import load_yaml_file
from statcube.schemas.dataset import Dataset

logger = logging.getLogger(__name__)


class DatasetRepository(Protocol):
    async def get_dataset(self, dataset_id: str) -> Dataset: ...


class YamlDatasetRepository:
    def __init__(self, datasets_dir: Optional[Path] = None):
        self.datasets_dir = Path(datasets_dir or settings.datasets_dir)

    def path_for(self, dataset_id: str) -> Path:
        path = (self.datasets_dir / f"{dataset_id}.yaml").resolve()
        if path.parent != self.datasets_dir.resolve():
            raise DatasetNotFound(f"Invalid dataset id: {dataset_id}")
        return path

    async def get_dataset(self, dataset_id: str) -> Dataset:
        path = self.path_for(dataset_id)
        try:
            raw = load_yaml_file(path)
        except FileNotFoundError as exc:
            raise DatasetNotFound(f"Dataset {dataset_id} not found") from exc
        try:
            dataset = Dataset.model_validate(raw)
        except ValidationError:
            logger.error("Dataset document %s is invalid", path)
            raise
        if dataset.id != dataset_id:
            logger.warning("Dataset document %s declares id %s", path, dataset.id)
        return dataset


_repository: Optional[DatasetRepository] = None


def get_dataset_repository() -> DatasetRepository:
    global _repository
    if _repository is None:
        _repository = YamlDatasetRepository()
    return _repository
