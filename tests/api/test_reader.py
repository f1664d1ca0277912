# tests/api/test_reader.py
import json

import pytest
from fastapi import HTTPException

from statcube.api.cube_query.reader import build_data_query, variant_column, view_columns
from statcube.schemas.cube_query import CubeQueryModel, SortSpec

AVAILABLE = [
    "Area",
    "Area_reference",
    "Area_sort",
    "Year",
    "Year_sort",
    "Data values",
]


def test_variant_column_falls_back_to_the_column_itself():
    assert variant_column(AVAILABLE, "Area", "reference") == "Area_reference"
    assert variant_column(AVAILABLE, "Year", "reference") == "Year"


def test_view_columns_come_from_metadata():
    metadata = {"frontend_en_columns": json.dumps(["Area", "Data values"])}
    assert view_columns(metadata, "frontend", "en-GB") == ["Area", "Data values"]

    with pytest.raises(HTTPException) as err:
        view_columns(metadata, "frontend", "cy-GB")
    assert err.value.status_code == 404


def test_filters_match_reference_values_and_sort_uses_sort_column():
    query = CubeQueryModel(
        columns=["Area", "Data values"],
        filters={"Area": ["W92"], "Year": ["2020"]},
        sort=[SortSpec(column="Year", direction="desc")],
    )
    stmt, count_stmt, columns = build_data_query("rev_1", "frontend_mat_en", AVAILABLE, query)
    compiled = str(stmt.compile(compile_kwargs={"literal_binds": True}))

    assert columns == ["Area", "Data values"]
    assert "\"Area_reference\" IN ('W92')" in compiled
    assert "\"Year\" IN ('2020')" in compiled
    assert '"Year_sort" DESC' in compiled
    assert "count(*)" in str(count_stmt).lower()


def test_all_columns_by_default():
    _, _, columns = build_data_query("rev_1", "core_view_en", AVAILABLE, CubeQueryModel())
    assert columns == AVAILABLE


@pytest.mark.parametrize(
    "query",
    [
        CubeQueryModel(columns=["Nope"]),
        CubeQueryModel(filters={"Nope": ["1"]}),
        CubeQueryModel(sort=[SortSpec(column="Nope")]),
    ],
)
def test_unknown_columns_are_rejected(query):
    with pytest.raises(HTTPException) as err:
        build_data_query("rev_1", "core_view_en", AVAILABLE, query)
    assert err.value.status_code == 400
