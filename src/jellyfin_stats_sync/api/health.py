"""Health check endpoints for Kubernetes/Docker."""

from fastapi import APIRouter, Request, Response

from ..database import get_db
from ..jobs.queue import JobQueue

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> Response:
    """Liveness probe. The process answering is enough."""
    return Response(content="ok", media_type="text/plain")


@router.get("/readyz")
async def readyz(request: Request) -> Response:
    """
    Readiness probe.

    Checks:
    - Database is connected
    - Job queue is polling
    """
    try:
        db = await get_db()
        if not db.connected:
            return Response(content="database not connected", status_code=503, media_type="text/plain")

        queue: JobQueue | None = getattr(request.app.state, "queue", None)
        if queue is None:
            return Response(content="queue not initialized", status_code=503, media_type="text/plain")
        if not queue.running:
            return Response(content="queue not running", status_code=503, media_type="text/plain")

        return Response(content="ok", media_type="text/plain")

    except Exception as e:
        return Response(content=f"error: {e}", status_code=503, media_type="text/plain")
