"""Main entry point for jellyfin-stats-sync."""

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from . import __version__
from .api import health_router, jobs_router, status_router
from .api.status import get_start_time
from .config import get_config, load_config
from .database import close_db, get_db
from .jobs.queue import JobQueue
from .jobs.scheduler import SyncScheduler
from .jobs.workers import register_workers
from .sessions.poller import SessionPoller
from .sync.orchestrator import SyncOrchestrator


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Silence noisy third-party loggers
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def init_config() -> None:
    """Load configuration from CONFIG_PATH (default ./config.yaml) and set up logging."""
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    if not Path(config_path).exists():
        print(f"Error: Configuration file not found: {config_path}")
        print("Create a config.yaml file or set CONFIG_PATH environment variable")
        sys.exit(1)

    config = load_config(config_path)
    setup_logging(config.logging.level)

    logger = logging.getLogger(__name__)
    logger.info("Loaded configuration from %s", config_path)
    logger.info("Configured servers: %s", [s.name for s in config.servers])


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger = logging.getLogger(__name__)
    logger.info("Starting jellyfin-stats-sync %s...", __version__)
    get_start_time()

    config = get_config()
    db = await get_db()
    logger.info("Database initialized at %s", db.db_path)

    for server_config in config.servers:
        server = await db.upsert_server(server_config.name, server_config.url, server_config.api_key)
        logger.info("Registered server %s (id=%d, status=%s)", server.name, server.id, server.sync_status.value)

    orchestrator = SyncOrchestrator(db, config)
    await orchestrator.reset_stuck_servers()

    # Health check all servers
    health = await orchestrator.health_check_all()
    for server_name, is_healthy in health.items():
        status = "healthy" if is_healthy else "unhealthy"
        logger.info("Server %s: %s", server_name, status)

    queue = JobQueue(db, config.queue)
    register_workers(queue, orchestrator)
    await queue.start()

    scheduler = SyncScheduler(db, queue, orchestrator, config.scheduler)
    await scheduler.start()

    poller = SessionPoller(db, config)
    await poller.start()

    # Store services in app state for access by routers
    app.state.orchestrator = orchestrator
    app.state.queue = queue
    app.state.scheduler = scheduler
    app.state.poller = poller

    yield

    logger.info("Shutting down jellyfin-stats-sync...")
    await poller.stop()
    await scheduler.stop()
    await queue.stop()
    await orchestrator.close()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    init_config()

    app = FastAPI(
        title="jellyfin-stats-sync",
        description="Mirrors Jellyfin users, libraries, items, activity and playback sessions into SQLite",
        version=__version__,
        lifespan=lifespan,
    )

    app.include_router(health_router)  # /healthz, /readyz
    app.include_router(status_router)  # /api/status, /api/servers, /api/sessions
    app.include_router(jobs_router)  # /api/jobs/results, /api/servers/{id}/sync/{type}

    return app


def main() -> None:
    """Main entry point."""
    app = create_app()
    config = get_config()

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
