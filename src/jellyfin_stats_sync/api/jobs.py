"""Job endpoints: result log, manual sync triggers and stuck-sync reset."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from ..database import get_db
from ..jobs.workers import SyncJobPayload
from ..models import JobName
from ..sync.base import SyncOptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["jobs"])

# Path segment -> queued job type
SYNC_JOB_TYPES: dict[str, JobName] = {
    "full": JobName.FULL_SYNC,
    "users": JobName.USERS_SYNC,
    "libraries": JobName.LIBRARIES_SYNC,
    "items": JobName.ITEMS_SYNC,
    "activities": JobName.ACTIVITIES_SYNC,
    "recent-items": JobName.RECENT_ITEMS_SYNC,
    "recent-activities": JobName.RECENT_ACTIVITIES_SYNC,
}


@router.get("/jobs/results")
async def get_job_results(limit: int = 50, job_name: str | None = None) -> list[dict[str, Any]]:
    """Most recent entries of the job result log."""
    db = await get_db()
    results = await db.get_recent_job_results(limit=limit, job_name=job_name)
    return [result.model_dump(mode="json") for result in results]


@router.post("/servers/{server_id}/sync/{job_type}")
async def trigger_sync(
    request: Request,
    server_id: int,
    job_type: str,
    options: SyncOptions | None = None,
) -> dict[str, Any]:
    """Queue a sync job for a server.

    ``job_type`` is either a short name (``full``, ``users``, ...) or the
    queue's job name (``full-sync``, ``users-sync``, ...).
    """
    name = SYNC_JOB_TYPES.get(job_type)
    if name is None:
        try:
            name = JobName(job_type)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown job type: {job_type}") from None

    db = await get_db()
    server = await db.get_server(server_id)
    if server is None:
        raise HTTPException(status_code=404, detail=f"Server not found: {server_id}")

    payload = SyncJobPayload(server_id=server_id, options=options)
    job_id = await request.app.state.queue.send(name.value, payload.model_dump(exclude_unset=True, exclude_none=True))
    logger.info("[%s] Queued %s via API (job %s)", server.name, name.value, job_id)
    return {"success": True, "job_id": job_id, "job_type": name.value}


@router.post("/servers/{server_id}/reset")
async def reset_sync(request: Request, server_id: int) -> dict[str, Any]:
    """Force a server that is stuck in syncing back to completed."""
    db = await get_db()
    if await db.get_server(server_id) is None:
        raise HTTPException(status_code=404, detail=f"Server not found: {server_id}")

    reset = await request.app.state.orchestrator.force_reset_server(server_id)
    return {
        "success": reset,
        "message": "Sync status reset" if reset else "Server is not syncing",
    }
