"""Queue handlers that run sync stages for a server."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from ..errors import PipelineError
from ..models import Job, JobName, ResultStatus, SyncStage
from ..sync.base import SyncOptions
from ..sync.metrics import SyncResult
from ..sync.orchestrator import SyncOrchestrator
from .queue import JobQueue

logger = logging.getLogger(__name__)

# (team_size, team_concurrency) per job type
TEAM_SETTINGS: dict[JobName, tuple[int, int]] = {
    JobName.FULL_SYNC: (1, 1),
    JobName.USERS_SYNC: (2, 2),
    JobName.LIBRARIES_SYNC: (2, 2),
    JobName.ITEMS_SYNC: (1, 1),
    JobName.ACTIVITIES_SYNC: (2, 2),
    JobName.RECENT_ITEMS_SYNC: (3, 3),
    JobName.RECENT_ACTIVITIES_SYNC: (3, 3),
}

STAGE_JOBS: dict[JobName, SyncStage] = {
    JobName.USERS_SYNC: SyncStage.USERS,
    JobName.LIBRARIES_SYNC: SyncStage.LIBRARIES,
    JobName.ITEMS_SYNC: SyncStage.ITEMS,
    JobName.ACTIVITIES_SYNC: SyncStage.ACTIVITIES,
    JobName.RECENT_ITEMS_SYNC: SyncStage.RECENT_ITEMS,
    JobName.RECENT_ACTIVITIES_SYNC: SyncStage.RECENT_ACTIVITIES,
}


class SyncJobPayload(BaseModel):
    """Payload accepted by every sync job."""

    server_id: int
    options: SyncOptions | None = None


def job_output(result: SyncResult) -> dict[str, Any]:
    """Serialize a sync result for the jobs table and result log."""
    return {
        "success": result.status is not ResultStatus.ERROR,
        "status": result.status.value,
        "data": result.data,
        "error": result.error,
        "errors": result.errors,
        "metrics": result.metrics.model_dump(mode="json"),
    }


def make_handler(orchestrator: SyncOrchestrator, name: JobName) -> Callable[[Job], Awaitable[dict[str, Any]]]:
    """Build the queue handler for one job type."""

    async def handle(job: Job) -> dict[str, Any]:
        payload = SyncJobPayload.model_validate(job.payload)
        if name is JobName.FULL_SYNC:
            result = await orchestrator.perform_full_sync(payload.server_id, payload.options)
        else:
            result = await orchestrator.run_stage(payload.server_id, STAGE_JOBS[name], payload.options)

        if result.status is ResultStatus.ERROR:
            # Raising hands the job back to the queue's retry policy
            raise PipelineError(result.error or f"{name.value} failed")
        return job_output(result)

    return handle


def register_workers(queue: JobQueue, orchestrator: SyncOrchestrator) -> None:
    """Register a handler for every sync job type."""
    for name, (team_size, team_concurrency) in TEAM_SETTINGS.items():
        queue.register(
            name.value,
            make_handler(orchestrator, name),
            team_size=team_size,
            team_concurrency=team_concurrency,
        )
    logger.info("Registered %d sync workers", len(TEAM_SETTINGS))
