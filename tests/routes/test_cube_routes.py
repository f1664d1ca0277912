# tests/routes/test_cube_routes.py
import pytest
from httpx import ASGITransport, AsyncClient

from fakes import LOCALES, VIEW_CONFIGS, YEAR_VALUES, FakeDatabase, FakeRepository, key_error
from statcube.cube.builder import CubeBuilder
from statcube.cube.jobs import PromotionJobRegistry, get_job_registry
from statcube.db.engine import get_session
from statcube.main import create_app
from statcube.routes.cubes import get_cube_builder
from statcube.schemas.cube_query import CubeFilter, CubeQueryResult, FilterNode


async def no_promotion(revision_id):
    return True


@pytest.fixture
def jobs():
    return PromotionJobRegistry(no_promotion, max_attempts=1, retry_delay=0)


@pytest.fixture
def database():
    return FakeDatabase(responses=YEAR_VALUES)


@pytest.fixture
async def client(dataset, database, jobs):
    async def override_get_session():
        yield None

    def override_builder():
        return CubeBuilder(
            database=database,
            repository=FakeRepository(dataset),
            jobs=jobs,
            view_configs=VIEW_CONFIGS,
            locales=LOCALES,
        )

    app = create_app(use_lifespan=False)
    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_cube_builder] = override_builder
    app.dependency_overrides[get_job_registry] = lambda: jobs

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    await jobs.shutdown()
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_build_cube(client, dataset):
    resp = await client.post(f"/datasets/{dataset.id}/revisions/rev_1/cube")

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "awaiting_materialization"
    assert body["schema_name"] == "rev_1"
    assert body["job"]["revision_id"] == "rev_1"


@pytest.mark.asyncio
async def test_build_cube_unknown_dataset(client):
    resp = await client.post("/datasets/nope/revisions/rev_1/cube")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_build_cube_with_duplicate_facts(client, dataset, database):
    database.fail_on = "ADD PRIMARY KEY"
    database.error = key_error("could not create unique index")

    resp = await client.post(f"/datasets/{dataset.id}/revisions/rev_1/cube")

    assert resp.status_code == 400
    assert resp.json()["detail"]["type"] == "unknown_duplicate_fact"


@pytest.mark.asyncio
async def test_cube_status(client, jobs, monkeypatch):
    async def fake_metadata(db, revision_id):
        return {"build_status": "complete", "fact_count": "12", "build_script": "SELECT 1"}

    monkeypatch.setattr("statcube.routes.cubes.read_cube_metadata", fake_metadata)
    resp = await client.get("/cubes/rev_1/status")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "complete"
    assert body["metadata"] == {"build_status": "complete", "fact_count": "12"}
    assert body["job"] is None


@pytest.mark.asyncio
async def test_promote_queues_a_job(client, jobs, monkeypatch):
    async def fake_metadata(db, revision_id):
        return {"build_status": "awaiting_materialization"}

    monkeypatch.setattr("statcube.routes.cubes.read_cube_metadata", fake_metadata)
    resp = await client.post("/cubes/rev_1/promote")

    assert resp.status_code == 202
    assert jobs.latest_for("rev_1").id == resp.json()["id"]


@pytest.mark.asyncio
async def test_query_cube(client, monkeypatch):
    async def fake_query(db, revision_id, query):
        return CubeQueryResult(
            view="frontend_mat_en",
            columns=["Area"],
            items=[{"Area": "Wales"}],
            offset=query.offset,
            limit=query.limit,
            count=1,
            total=1,
        )

    monkeypatch.setattr("statcube.routes.cube_query.execute_cube_query", fake_query)
    resp = await client.post("/cubes/rev_1/query", json={"view": "frontend", "limit": 10})

    assert resp.status_code == 200
    assert resp.json()["items"] == [{"Area": "Wales"}]


@pytest.mark.asyncio
async def test_cube_filters(client, monkeypatch):
    async def fake_filters(db, revision_id, locale):
        assert locale == "cy-GB"
        return [
            CubeFilter(
                fact_table_column="area",
                dimension_name="Ardal",
                values=[FilterNode(reference="W92", description="Cymru")],
            )
        ]

    monkeypatch.setattr("statcube.routes.cube_query.get_filters", fake_filters)
    resp = await client.get("/cubes/rev_1/filters", params={"locale": "cy-GB"})

    assert resp.status_code == 200
    assert resp.json()[0]["values"][0]["reference"] == "W92"


@pytest.mark.asyncio
async def test_health_reports_missing_source_schema(client, monkeypatch):
    async def checks():
        return {"database": True, "data_tables": False, "lookup_tables": True}

    monkeypatch.setattr("statcube.routes.health.health_checks", checks)
    resp = await client.get("/health")

    assert resp.status_code == 503
    assert resp.json()["detail"]["checks"]["data_tables"] is False


@pytest.mark.asyncio
async def test_health_ready(client, monkeypatch):
    async def checks():
        return {"database": True, "data_tables": True, "lookup_tables": True}

    monkeypatch.setattr("statcube.routes.health.health_checks", checks)
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ready"


@pytest.mark.asyncio
async def test_excel_export_is_downloaded_as_attachment(client, monkeypatch):
    async def fake_prepare(db, revision_id, query):
        return "download_mat_en", None, None, ["Area", "Data values"]

    async def fake_batches(db, stmt):
        yield [{"Area": "Wales", "Data values": "1,024"}]

    monkeypatch.setattr("statcube.routes.cube_query.prepare_query", fake_prepare)
    monkeypatch.setattr("statcube.routes.cube_query.stream_batches", fake_batches)
    resp = await client.post(
        "/cubes/rev_1/export", json={"view": "download", "format": "xlsx"}
    )

    assert resp.status_code == 200
    assert resp.headers["content-disposition"] == (
        'attachment; filename="rev_1_download_mat_en.xlsx"'
    )
    assert resp.content[:2] == b"PK"
