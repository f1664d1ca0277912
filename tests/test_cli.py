# tests/test_cli.py
from datetime import datetime, timezone

from typer.testing import CliRunner

from statcube.cli.main import app
from statcube.cli.utils import mask_url
from statcube.schemas.cube import BuildResult, CubeBuildStatus, CubeBuildType

runner = CliRunner()


def test_help_lists_command_groups():
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    assert "cube" in result.output
    assert "export" in result.output


def test_mask_url():
    assert mask_url("postgresql+psycopg://user:secret@db:5432/cubes") == (
        "postgresql+psycopg://user:***@db:5432/cubes"
    )
    assert mask_url("sqlite://") == "sqlite://"


def test_build_command_reports_the_cube(monkeypatch):
    calls = []

    async def fake_build(dataset_id, revision_id, build_type, datasets_dir, promote):
        calls.append((dataset_id, revision_id, build_type, promote))
        now = datetime.now(timezone.utc)
        return BuildResult(
            dataset_id=dataset_id,
            revision_id=revision_id,
            build_id="build_1",
            build_type=CubeBuildType.FULL,
            schema_name=revision_id,
            status=CubeBuildStatus.AWAITING_MATERIALIZATION,
            started_at=now,
        )

    monkeypatch.setattr("statcube.cli.cube._build", fake_build)
    result = runner.invoke(app, ["cube", "build", "ds_population", "rev_1", "--no-promote"])

    assert result.exit_code == 0, result.output
    assert calls == [("ds_population", "rev_1", None, False)]
    assert "Built full cube rev_1" in result.output


def test_log_sql_flag_enables_statement_logging(monkeypatch):
    from statcube.core.config import settings

    monkeypatch.setattr(settings, "log_sql", False)
    result = runner.invoke(app, ["--log-sql", "version"])

    assert result.exit_code == 0, result.output
    assert settings.log_sql is True


def test_serve_runs_the_app_factory(monkeypatch):
    calls = []
    monkeypatch.setattr("statcube.cli.main.uvicorn.run", lambda *a, **kw: calls.append((a, kw)))

    result = runner.invoke(app, ["serve", "--port", "9000"])

    assert result.exit_code == 0, result.output
    (args, kwargs), = calls
    assert args == ("statcube.main:create_app",)
    assert kwargs["factory"] is True
    assert kwargs["port"] == 9000
