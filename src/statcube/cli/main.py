# statcube/cli/main.py
from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

import typer
import uvicorn

from statcube.cli.cube import cube_app
from statcube.cli.export import export_app
from statcube.core.config import settings

app = typer.Typer(help="Statistical cube command-line utilities", no_args_is_help=True)

app.add_typer(cube_app, name="cube")
app.add_typer(export_app, name="export")


@app.callback()
def main(
    log_sql: bool = typer.Option(
        False, "--log-sql", help="Log every generated SQL statement (with --verbose)."
    ),
):
    settings.log_sql = settings.log_sql or log_sql


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Run the cube API."""
    uvicorn.run("statcube.main:create_app", factory=True, host=host, port=port, reload=reload)


@app.command("version")
def version_cmd():
    """Print the installed statcube version."""
    try:
        typer.echo(version("statcube"))
    except PackageNotFoundError:
        typer.echo("unknown")


def run():
    app()


if __name__ == "__main__":
    run()
