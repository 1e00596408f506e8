"""API module."""

from .health import router as health_router
from .jobs import router as jobs_router
from .status import router as status_router

__all__ = ["health_router", "jobs_router", "status_router"]
