# statcube/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from statcube.api.healthcheck import is_healthly
from statcube.core.config import settings
from statcube.core.exceptions import DatasetNotFound
from statcube.core.logging import setup_logging
from statcube.cube.jobs import get_job_registry
from statcube.cube.view_config import load_view_configs
from statcube.db.engine import dispose_engine
from statcube.routes import register_routes

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Check the database and the named view configuration before serving,
    cancel outstanding promotion jobs on the way out.
    """
    views = load_view_configs()
    logger.info(
        "Starting %s (%s mode), locales %s, named views %s",
        settings.app_name,
        settings.env,
        ", ".join(settings.supported_locales),
        ", ".join(v.name for v in views),
    )

    if await is_healthly():
        raise RuntimeError("System failed health check at startup")

    yield

    await get_job_registry().shutdown()
    await dispose_engine()
    logger.info("Shutting down %s", settings.app_name)


async def dataset_not_found_handler(request: Request, exc: DatasetNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_exception_handler(DatasetNotFound, dataset_not_found_handler)
    register_routes(app)

    return app
