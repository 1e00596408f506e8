"""Periodic enqueueing of incremental syncs and stuck-sync recovery."""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..config import SchedulerConfig
from ..database import Database
from ..models import JobName, SyncStatus
from ..sync.base import ActivitySyncOptions, ItemSyncOptions, SyncOptions
from ..sync.orchestrator import SyncOrchestrator
from .queue import JobQueue

logger = logging.getLogger(__name__)

SCHEDULED_JOB_OPTIONS: dict[str, Any] = {
    "expire_in": 30 * 60,
    "retry_limit": 1,
    "retry_delay": 60,
}
DEFAULT_ACTIVITY_LIMIT = 100
DEFAULT_RECENT_ITEMS_LIMIT = 100


class SyncScheduler:
    """Interval loops that keep completed servers up to date."""

    def __init__(
        self,
        db: Database,
        queue: JobQueue,
        orchestrator: SyncOrchestrator,
        config: SchedulerConfig | None = None,
    ):
        self.db = db
        self.queue = queue
        self.orchestrator = orchestrator
        self.config = config or SchedulerConfig()
        self._running = False
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if not self.config.enabled:
            logger.info("Scheduler disabled")
            return
        if self._running:
            return

        self._running = True
        config = self.config
        self._schedule("activity-sync", config.activity_sync_interval_seconds, self.enqueue_activity_syncs)
        self._schedule("recent-items-sync", config.recent_items_sync_interval_seconds, self.enqueue_recent_items_syncs)
        self._schedule("stuck-sync-check", config.stuck_sync_check_interval_seconds, self.check_stuck_syncs)
        logger.info("Scheduler started with %d tasks", len(self._tasks))

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        logger.info("Scheduler stopped")

    def _schedule(self, name: str, interval: float, tick: Callable[[], Awaitable[Any]]) -> None:
        self._tasks[name] = asyncio.create_task(self._interval_loop(name, interval, tick))

    async def _interval_loop(self, name: str, interval: float, tick: Callable[[], Awaitable[Any]]) -> None:
        while self._running:
            await asyncio.sleep(interval)
            try:
                await tick()
            except Exception as e:
                logger.exception("Error in scheduled task %s: %s", name, e)

    # ========== Ticks ==========

    async def enqueue_activity_syncs(self) -> list[str]:
        """Queue an intelligent recent-activities sync for every completed server."""
        servers = await self.db.list_servers(status=SyncStatus.COMPLETED)
        if not servers:
            logger.debug("No completed servers for activity sync")
            return []

        job_ids = []
        for server in servers:
            job_ids.append(await self._send_activity_sync(server.id, DEFAULT_ACTIVITY_LIMIT))
        logger.info("Scheduled activity sync for %d servers", len(job_ids))
        return job_ids

    async def enqueue_recent_items_syncs(self) -> list[str]:
        """Queue a recent-items sync for every completed server."""
        servers = await self.db.list_servers(status=SyncStatus.COMPLETED)
        if not servers:
            logger.debug("No completed servers for recent items sync")
            return []

        job_ids = []
        for server in servers:
            job_ids.append(await self._send_recent_items_sync(server.id, DEFAULT_RECENT_ITEMS_LIMIT))
        logger.info("Scheduled recent items sync for %d servers", len(job_ids))
        return job_ids

    async def check_stuck_syncs(self) -> list[int]:
        return await self.orchestrator.reset_stuck_servers()

    # ========== Manual Triggers ==========

    async def trigger_server_activity_sync(self, server_id: int, limit: int = DEFAULT_ACTIVITY_LIMIT) -> str:
        logger.info("Manually triggering activity sync for server %d (limit %d)", server_id, limit)
        return await self._send_activity_sync(server_id, limit)

    async def trigger_server_recent_items_sync(self, server_id: int, limit: int = DEFAULT_RECENT_ITEMS_LIMIT) -> str:
        logger.info("Manually triggering recent items sync for server %d (limit %d)", server_id, limit)
        return await self._send_recent_items_sync(server_id, limit)

    async def _send_activity_sync(self, server_id: int, limit: int) -> str:
        options = SyncOptions(activity_options=ActivitySyncOptions(page_size=limit, intelligent=True))
        return await self.queue.send(
            JobName.RECENT_ACTIVITIES_SYNC.value,
            {"server_id": server_id, "options": options.model_dump(exclude_unset=True)},
            **SCHEDULED_JOB_OPTIONS,
        )

    async def _send_recent_items_sync(self, server_id: int, limit: int) -> str:
        options = SyncOptions(item_options=ItemSyncOptions(recent_items_limit=limit))
        return await self.queue.send(
            JobName.RECENT_ITEMS_SYNC.value,
            {"server_id": server_id, "options": options.model_dump(exclude_unset=True)},
            **SCHEDULED_JOB_OPTIONS,
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "running": self._running,
            "activity_sync_interval_seconds": self.config.activity_sync_interval_seconds,
            "recent_items_sync_interval_seconds": self.config.recent_items_sync_interval_seconds,
            "stuck_sync_check_interval_seconds": self.config.stuck_sync_check_interval_seconds,
            "tasks": sorted(self._tasks),
        }
