# tests/conftest.py
import pytest

from fakes import LOCALES, VIEW_CONFIGS, RecordingRunner, dataset_document
from statcube.cube.context import BuildContext
from statcube.cube.fact_table import fact_table_info
from statcube.schemas.cube import CubeBuildType
from statcube.schemas.dataset import Dataset


@pytest.fixture
def dataset() -> Dataset:
    return Dataset.model_validate(dataset_document())


@pytest.fixture
def fact(dataset):
    return fact_table_info(dataset)


@pytest.fixture
def ctx(dataset, fact) -> BuildContext:
    return BuildContext(
        dataset_id=dataset.id,
        revision_id="rev_1",
        build_id="build_1",
        locales=list(LOCALES),
        view_configs=list(VIEW_CONFIGS),
        build_type=CubeBuildType.FULL,
        fact=fact,
    )


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()
