# statcube/cli/export.py
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from fastapi import HTTPException

from statcube.api.cube_query.export import csv_chunks, excel_bytes, json_chunks
from statcube.api.cube_query.reader import prepare_query, stream_batches
from statcube.cli.utils import setup_cli_logging
from statcube.db.engine import dispose_engine, get_sessionmaker
from statcube.schemas.cube_query import CubeExportModel, ExportFormat

export_app = typer.Typer(name="export", help="Export cube views to files")


async def _export(revision_id: str, query: CubeExportModel, output: Path) -> None:
    try:
        async with get_sessionmaker()() as session:
            _, stmt, _, columns = await prepare_query(session, revision_id, query)
            batches = stream_batches(session, stmt)
            if query.format == ExportFormat.XLSX:
                output.write_bytes(await excel_bytes(columns, batches))
                return
            chunks = (
                json_chunks(batches)
                if query.format == ExportFormat.JSON
                else csv_chunks(columns, batches)
            )
            with output.open("w", encoding="utf-8", newline="") as f:
                async for chunk in chunks:
                    f.write(chunk)
    finally:
        await dispose_engine()


@export_app.command("data")
def export_data_cmd(
    revision_id: str = typer.Argument(...),
    out: Path = typer.Option(..., "-o", "--output", help="File to write."),
    view: str = typer.Option("core_view", "--view", help="core_view or a named view."),
    locale: str = typer.Option("en-GB", "--locale", "-l"),
    fmt: ExportFormat = typer.Option(ExportFormat.CSV, "--format", "-f"),
    columns: Optional[list[str]] = typer.Option(None, "--column", "-c"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Export every row of a cube view.
    """
    setup_cli_logging(verbose)
    out.parent.mkdir(parents=True, exist_ok=True)
    query = CubeExportModel(
        view=view, locale=locale, format=fmt, columns=columns or None
    )
    try:
        asyncio.run(_export(revision_id, query, out))
    except HTTPException as exc:
        typer.echo(f"Error: {exc.detail}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Wrote {out}")
