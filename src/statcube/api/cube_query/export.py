# statcube/api/cube_query/export.py
from __future__ import annotations

import csv
import io
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Optional

from openpyxl import Workbook

from statcube.core.config import settings
from statcube.schemas.cube_query import ExportFormat

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    ExportFormat.JSON: "application/json",
    ExportFormat.CSV: "text/csv",
    ExportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

Batches = AsyncIterable[list[dict[str, Any]]]


async def json_chunks(batches: Batches) -> AsyncIterator[str]:
    yield "["
    first = True
    async for batch in batches:
        for row in batch:
            yield ("" if first else ",") + json.dumps(row, default=str)
            first = False
    yield "]"


async def csv_chunks(columns: list[str], batches: Batches) -> AsyncIterator[str]:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(columns)
    yield buffer.getvalue()
    async for batch in batches:
        buffer.seek(0)
        buffer.truncate()
        for row in batch:
            writer.writerow([row.get(c) for c in columns])
        yield buffer.getvalue()


def sheet_title(index: int) -> str:
    return f"Sheet-{index}"


async def excel_workbook(
    columns: list[str], batches: Batches, row_limit: Optional[int] = None
) -> Workbook:
    """Write-only workbook, a new sheet is started every `row_limit` data rows."""
    limit = row_limit or settings.excel_sheet_row_limit
    workbook = Workbook(write_only=True)
    sheet = workbook.create_sheet(sheet_title(1))
    sheet.append(columns)
    sheets, rows_in_sheet = 1, 0

    async for batch in batches:
        for row in batch:
            if rows_in_sheet >= limit:
                sheets += 1
                sheet = workbook.create_sheet(sheet_title(sheets))
                sheet.append(columns)
                rows_in_sheet = 0
            sheet.append([_cell(row.get(c)) for c in columns])
            rows_in_sheet += 1

    logger.debug("Excel export written across %d sheets", sheets)
    return workbook


def _cell(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float)):
        return value
    return str(value)


async def excel_bytes(
    columns: list[str], batches: Batches, row_limit: Optional[int] = None
) -> bytes:
    workbook = await excel_workbook(columns, batches, row_limit)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
