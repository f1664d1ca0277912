# statcube/cube/jobs.py
"""
Background promotion of built cubes to materialized views.

Promotion runs detached from the build request. Every job is observable
through the registry and is retried with a linear backoff; a final failure is
recorded in the cube metadata while the plain views keep serving reads.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from statcube.core.config import settings
from statcube.schemas.cube import JobStatus, PromotionJobInfo

logger = logging.getLogger(__name__)

Promote = Callable[[str], Awaitable[Any]]
RecordFailure = Callable[[str, str], Awaitable[None]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PromotionJobRegistry:
    def __init__(
        self,
        promote: Promote,
        record_failure: Optional[RecordFailure] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.promote = promote
        self.record_failure = record_failure
        self.max_attempts = max(1, max_attempts or settings.materialization_max_attempts)
        self.retry_delay = (
            settings.materialization_retry_delay if retry_delay is None else retry_delay
        )
        self._jobs: dict[str, PromotionJobInfo] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def submit(self, revision_id: str) -> PromotionJobInfo:
        job = PromotionJobInfo(
            id=uuid.uuid4().hex,
            revision_id=revision_id,
            status=JobStatus.QUEUED,
            created_at=_now(),
        )
        self._jobs[job.id] = job
        self._tasks[job.id] = asyncio.create_task(self._run(job))
        logger.info("Queued promotion job %s for revision %s", job.id, revision_id)
        return job

    def get(self, job_id: str) -> Optional[PromotionJobInfo]:
        return self._jobs.get(job_id)

    def latest_for(self, revision_id: str) -> Optional[PromotionJobInfo]:
        for job in reversed(self._jobs.values()):
            if job.revision_id == revision_id:
                return job
        return None

    def list(self) -> list[PromotionJobInfo]:
        # submission order
        return list(self._jobs.values())

    async def wait(self, job_id: str) -> PromotionJobInfo:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self._jobs[job_id]

    async def _run(self, job: PromotionJobInfo) -> None:
        job.status = JobStatus.RUNNING
        while job.attempts < self.max_attempts:
            job.attempts += 1
            try:
                await self.promote(job.revision_id)
            except asyncio.CancelledError:
                job.status = JobStatus.FAILED
                job.error = "cancelled"
                job.finished_at = _now()
                raise
            except Exception as exc:
                job.error = str(exc)
                logger.warning(
                    "Promotion of %s failed (attempt %d/%d): %s",
                    job.revision_id,
                    job.attempts,
                    self.max_attempts,
                    exc,
                )
                if job.attempts < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * job.attempts)
                continue
            job.status = JobStatus.SUCCEEDED
            job.error = None
            job.finished_at = _now()
            logger.info("Promotion job %s for %s succeeded", job.id, job.revision_id)
            return

        job.status = JobStatus.FAILED
        job.finished_at = _now()
        logger.error(
            "Promotion of %s failed after %d attempts, plain views remain in use: %s",
            job.revision_id,
            job.attempts,
            job.error,
        )
        if self.record_failure is not None:
            try:
                await self.record_failure(job.revision_id, job.error or "unknown error")
            except Exception:
                logger.exception("Could not record promotion failure for %s", job.revision_id)

    async def shutdown(self) -> None:
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


_registry: Optional[PromotionJobRegistry] = None


def get_job_registry() -> PromotionJobRegistry:
    global _registry
    if _registry is None:
        from statcube.cube.builder import promote_cube, record_materialization_error

        _registry = PromotionJobRegistry(promote_cube, record_materialization_error)
    return _registry
