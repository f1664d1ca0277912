# tests/api/test_export.py
import csv
import io
import json

import pytest
from openpyxl import load_workbook

from statcube.api.cube_query.export import csv_chunks, excel_bytes, json_chunks

COLUMNS = ["Area", "Data values"]


async def batches(rows, size=2):
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def sample_rows(count):
    return [{"Area": f"W{i}", "Data values": i * 1.5} for i in range(count)]


async def collect(chunks):
    return "".join([chunk async for chunk in chunks])


@pytest.mark.asyncio
async def test_json_export_is_one_array():
    text = await collect(json_chunks(batches(sample_rows(5))))
    assert json.loads(text) == sample_rows(5)


@pytest.mark.asyncio
async def test_json_export_of_nothing():
    assert await collect(json_chunks(batches([]))) == "[]"


@pytest.mark.asyncio
async def test_csv_export_writes_header_once():
    text = await collect(csv_chunks(COLUMNS, batches(sample_rows(3))))
    lines = list(csv.reader(io.StringIO(text)))

    assert lines[0] == COLUMNS
    assert lines[1:] == [["W0", "0.0"], ["W1", "1.5"], ["W2", "3.0"]]


@pytest.mark.asyncio
async def test_excel_export_starts_a_new_sheet_at_the_row_limit():
    content = await excel_bytes(COLUMNS, batches(sample_rows(5)), row_limit=2)
    workbook = load_workbook(io.BytesIO(content))

    assert workbook.sheetnames == ["Sheet-1", "Sheet-2", "Sheet-3"]
    first = list(workbook["Sheet-1"].values)
    assert first == [tuple(COLUMNS), ("W0", 0), ("W1", 1.5)]
    last = list(workbook["Sheet-3"].values)
    assert last == [tuple(COLUMNS), ("W4", 6)]
