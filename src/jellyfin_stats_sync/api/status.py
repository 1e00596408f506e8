"""Status API endpoints for monitoring."""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

from .. import __version__
from ..database import get_db
from ..models import SyncStage, SyncStatus

router = APIRouter(prefix="/api", tags=["status"])


class ServerStatus(BaseModel):
    """Sync state of a registered server."""

    id: int
    name: str
    url: str
    sync_status: SyncStatus
    sync_progress: SyncStage
    sync_error: str | None = None
    last_sync_started: datetime | None = None
    last_sync_completed: datetime | None = None
    healthy: bool = False


class DatabaseStatus(BaseModel):
    """Database status."""

    connected: bool
    size_bytes: int
    items: int
    sessions: int


class OverallStatus(BaseModel):
    """Overall system status."""

    status: str  # healthy, degraded, unhealthy
    uptime_seconds: float
    version: str
    servers: list[ServerStatus]
    database: DatabaseStatus
    queue: dict[str, Any]
    scheduler: dict[str, Any]
    poller: dict[str, Any]


# Track service start time
_start_time: datetime | None = None


def get_start_time() -> datetime:
    """Get or initialize the service start time."""
    global _start_time
    if _start_time is None:
        _start_time = datetime.now(UTC)
    return _start_time


async def _server_statuses(request: Request) -> list[ServerStatus]:
    db = await get_db()
    server_health = await request.app.state.orchestrator.health_check_all()
    return [
        ServerStatus(
            id=s.id,
            name=s.name,
            url=s.url,
            sync_status=s.sync_status,
            sync_progress=s.sync_progress,
            sync_error=s.sync_error,
            last_sync_started=s.last_sync_started,
            last_sync_completed=s.last_sync_completed,
            healthy=server_health.get(s.name, False),
        )
        for s in await db.list_servers()
    ]


@router.get("/status", response_model=OverallStatus)
async def get_status(request: Request) -> OverallStatus:
    """Status of the database, queue, scheduler and session poller."""
    db = await get_db()
    state = request.app.state

    queue = await state.queue.get_status()
    scheduler = state.scheduler.get_status()
    poller = state.poller.get_status()
    servers = await _server_statuses(request)

    db_status = DatabaseStatus(
        connected=db.connected,
        size_bytes=db.get_database_size(),
        items=await db.count_items(),
        sessions=await db.count_sessions(),
    )

    # A failed sync degrades the service, a stopped queue makes it unusable
    if not (db_status.connected and queue.get("running")):
        status = "unhealthy"
    elif any(s.sync_status is SyncStatus.FAILED for s in servers):
        status = "degraded"
    else:
        status = "healthy"

    uptime = (datetime.now(UTC) - get_start_time()).total_seconds()

    return OverallStatus(
        status=status,
        uptime_seconds=uptime,
        version=__version__,
        servers=servers,
        database=db_status,
        queue=queue,
        scheduler=scheduler,
        poller=poller,
    )


@router.get("/servers")
async def get_servers(request: Request) -> list[ServerStatus]:
    """Sync state of all registered servers."""
    return await _server_statuses(request)


@router.get("/sessions")
async def get_sessions(request: Request) -> dict[str, Any]:
    """Playback sessions currently tracked by the poller, per server."""
    db = await get_db()
    poller = request.app.state.poller

    servers = []
    for server in await db.list_servers():
        tracked = poller.get_tracked_sessions(server.id)
        servers.append(
            {
                "server_id": server.id,
                "server_name": server.name,
                "sessions": [session.model_dump(mode="json") for session in tracked.values()],
            }
        )
    return {"servers": servers}
