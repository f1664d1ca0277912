# statcube/routes/health.py
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from statcube.api.healthcheck import health_checks

logger = logging.getLogger(__name__)

router = APIRouter()
tags = ["health"]


@router.get("/health")
async def healthcheck():
    checks = await health_checks()
    if not all(checks.values()):
        raise HTTPException(status_code=503, detail={"status": "unhealthy", "checks": checks})
    return {"status": "ready", "checks": checks}
