"""Run sync pipelines for a server and keep its sync state machine current."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel

from ..config import Config, ServerConfig
from ..database import Database
from ..errors import PipelineError
from ..jellyfin.client import JellyfinClient
from ..models import ResultStatus, Server, SyncStage, SyncStatus
from .activities import ActivitySyncPipeline
from .base import SyncOptions, resolve_options
from .items import ItemSyncPipeline
from .libraries import LibrarySyncPipeline
from .metrics import SyncMetrics, SyncResult, create_sync_result
from .state import SyncEvent, SyncState, transition
from .users import UserSyncPipeline

logger = logging.getLogger(__name__)

FULL_SYNC_FAILED = "One or more sync operations failed"
STUCK_RESET_ERROR = "Reset due to stuck sync (>1 hour)"
FORCE_RESET_ERROR = "Force reset via API"


class FullSyncData(BaseModel):
    """Per-stage data of a full sync."""

    users: dict[str, Any]
    libraries: dict[str, Any]
    items: dict[str, Any]
    activities: dict[str, Any]
    total_duration: int  # Milliseconds


def partial_message(result: SyncResult) -> str:
    return f"Partial success with {len(result.errors or [])} errors"


class SyncOrchestrator:
    """Entry point for running syncs against registered servers."""

    def __init__(
        self,
        db: Database,
        config: Config,
        client_factory: Callable[[ServerConfig], JellyfinClient] = JellyfinClient,
    ):
        self.db = db
        self.config = config
        self.client_factory = client_factory
        self._clients: dict[int, JellyfinClient] = {}

    def client_for(self, server: Server) -> JellyfinClient:
        """Shared client per server, so all jobs of a server use one rate limiter."""
        client = self._clients.get(server.id)
        if client is None:
            server_config = self.config.get_server(server.name) or ServerConfig(
                name=server.name, url=server.url, api_key=server.api_key
            )
            client = self.client_factory(server_config)
            self._clients[server.id] = client
        return client

    async def health_check_all(self) -> dict[str, bool]:
        """Reachability of every registered server, by name."""
        servers = await self.db.list_servers()
        results = await asyncio.gather(*(self.client_for(server).health_check() for server in servers))
        return {server.name: healthy for server, healthy in zip(servers, results, strict=True)}

    async def close(self) -> None:
        """Close all HTTP clients."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    async def _load_server(self, server_id: int) -> Server:
        server = await self.db.get_server(server_id)
        if server is None:
            raise PipelineError(f"Server not found: {server_id}")
        return server

    async def _apply(
        self,
        server_id: int,
        state: SyncState,
        event: SyncEvent,
        stage: SyncStage | None = None,
        error: str | None = None,
    ) -> SyncState:
        """Run one transition and persist the resulting state."""
        new_state = transition(state, event, stage)
        now = datetime.now(UTC)
        await self.db.update_server_sync_state(
            server_id,
            new_state.status,
            new_state.stage,
            error=None if event is SyncEvent.START else error,
            last_sync_started=now if event is SyncEvent.START else None,
            last_sync_completed=now if event is SyncEvent.COMPLETE else None,
        )
        return new_state

    async def _finish(self, server_id: int, state: SyncState, result: SyncResult) -> SyncState:
        if result.status is ResultStatus.SUCCESS:
            return await self._apply(server_id, state, SyncEvent.COMPLETE)
        if result.status is ResultStatus.PARTIAL:
            return await self._apply(server_id, state, SyncEvent.COMPLETE, error=partial_message(result))
        error = result.error or "Unknown error"
        if result.errors:
            error = f"{error}: {'; '.join(result.errors)}"
        return await self._apply(server_id, state, SyncEvent.FAIL, error=error)

    # ========== Full Sync ==========

    async def perform_full_sync(self, server_id: int, options: SyncOptions | None = None) -> SyncResult:
        """Users, libraries, items and activities, strictly in that order.

        A failed stage does not stop the stages after it.
        """
        server = await self._load_server(server_id)
        opts = resolve_options(self.config.sync, options)
        client = self.client_for(server)
        metrics = SyncMetrics()

        state = SyncState(status=server.sync_status, stage=server.sync_progress)
        state = await self._apply(server_id, state, SyncEvent.START, SyncStage.USERS)
        logger.info("[%s] Starting full sync", server.name)

        stages: list[tuple[SyncStage, str, Callable[[], Awaitable[SyncResult]]]] = [
            (SyncStage.USERS, "Users", UserSyncPipeline(self.db, client, server, opts.user_options).run),
            (SyncStage.LIBRARIES, "Libraries", LibrarySyncPipeline(self.db, client, server, opts.library_options).run),
            (SyncStage.ITEMS, "Items", ItemSyncPipeline(self.db, client, server, opts.item_options).run),
            (
                SyncStage.ACTIVITIES,
                "Activities",
                ActivitySyncPipeline(self.db, client, server, opts.activity_options).run,
            ),
        ]

        results: dict[SyncStage, SyncResult] = {}
        errors: list[str] = []
        try:
            for index, (stage, label, run) in enumerate(stages, start=1):
                if stage is not SyncStage.USERS:
                    state = await self._apply(server_id, state, SyncEvent.ADVANCE, stage)
                logger.info("[%s] Step %d/%d: syncing %s", server.name, index, len(stages), label.lower())

                result = await run()
                results[stage] = result
                if result.status is ResultStatus.ERROR:
                    logger.error("[%s] %s sync failed: %s", server.name, label, result.error)
                    errors.append(f"{label}: {result.error}")
                elif result.status is ResultStatus.PARTIAL:
                    count = len(result.errors or [])
                    logger.warning("[%s] %s sync completed with %d errors", server.name, label, count)
                    errors.extend(f"{label}: {e}" for e in result.errors or [])
        except Exception as e:
            logger.exception("[%s] Full sync aborted", server.name)
            await self._apply(server_id, state, SyncEvent.FAIL, error=str(e) or type(e).__name__)
            raise

        snapshot = metrics.finish()
        data = FullSyncData(
            users=results[SyncStage.USERS].data or {},
            libraries=results[SyncStage.LIBRARIES].data or {},
            items=results[SyncStage.ITEMS].data or {},
            activities=results[SyncStage.ACTIVITIES].data or {},
            total_duration=snapshot.duration or 0,
        ).model_dump()

        statuses = [result.status for result in results.values()]
        if ResultStatus.ERROR in statuses:
            result = create_sync_result(ResultStatus.ERROR, data, snapshot, error=FULL_SYNC_FAILED, errors=errors)
        elif ResultStatus.PARTIAL in statuses or errors:
            result = create_sync_result(ResultStatus.PARTIAL, data, snapshot, errors=errors)
        else:
            result = create_sync_result(ResultStatus.SUCCESS, data, snapshot)

        await self._finish(server_id, state, result)
        logger.info(
            "[%s] Full sync finished: %s in %dms (%d errors)",
            server.name,
            result.status.value,
            snapshot.duration or 0,
            len(errors),
        )
        return result

    # ========== Single Stage ==========

    async def run_stage(self, server_id: int, stage: SyncStage, options: SyncOptions | None = None) -> SyncResult:
        """Run one pipeline with the same state bookkeeping as a full sync."""
        server = await self._load_server(server_id)
        opts = resolve_options(self.config.sync, options)
        client = self.client_for(server)

        runners: dict[SyncStage, Callable[[], Awaitable[SyncResult]]] = {
            SyncStage.USERS: lambda: UserSyncPipeline(self.db, client, server, opts.user_options).run(),
            SyncStage.LIBRARIES: lambda: LibrarySyncPipeline(self.db, client, server, opts.library_options).run(),
            SyncStage.ITEMS: lambda: ItemSyncPipeline(self.db, client, server, opts.item_options).run(),
            SyncStage.ACTIVITIES: lambda: ActivitySyncPipeline(self.db, client, server, opts.activity_options).run(),
            SyncStage.RECENT_ITEMS: lambda: ItemSyncPipeline(self.db, client, server, opts.item_options).run_recent(),
            SyncStage.RECENT_ACTIVITIES: lambda: ActivitySyncPipeline(
                self.db, client, server, opts.activity_options
            ).run_recent(),
        }
        runner = runners.get(stage)
        if runner is None:
            raise ValueError(f"Not a runnable sync stage: {stage}")

        state = SyncState(status=server.sync_status, stage=server.sync_progress)
        state = await self._apply(server_id, state, SyncEvent.START, stage)
        try:
            result = await runner()
        except Exception as e:
            logger.exception("[%s] %s sync aborted", server.name, stage.value)
            await self._apply(server_id, state, SyncEvent.FAIL, error=str(e) or type(e).__name__)
            raise

        await self._finish(server_id, state, result)
        return result

    # ========== Recovery ==========

    async def reset_stuck_servers(self, max_hours: float | None = None) -> list[int]:
        """Reset servers that have been syncing for longer than ``max_hours``."""
        hours = max_hours if max_hours is not None else self.config.sync.stuck_sync_hours
        cutoff = datetime.now(UTC) - timedelta(hours=hours)

        reset_ids = []
        for server in await self.db.get_stuck_servers(cutoff):
            logger.warning(
                "[%s] Sync stuck in %s since %s, resetting",
                server.name,
                server.sync_progress.value,
                server.last_sync_started,
            )
            state = SyncState(status=server.sync_status, stage=server.sync_progress)
            await self._apply(server.id, state, SyncEvent.RESET, error=STUCK_RESET_ERROR)
            reset_ids.append(server.id)

        if reset_ids:
            logger.info("Reset %d stuck servers", len(reset_ids))
        return reset_ids

    async def force_reset_server(self, server_id: int) -> bool:
        """Reset a syncing server regardless of how long it has been running.

        Returns False when the server is not syncing.
        """
        server = await self._load_server(server_id)
        state = SyncState(status=server.sync_status, stage=server.sync_progress)
        if state.status is not SyncStatus.SYNCING:
            logger.info("[%s] Not syncing (%s), nothing to reset", server.name, state.status.value)
            return False
        await self._apply(server_id, state, SyncEvent.RESET, error=FORCE_RESET_ERROR)
        logger.info("[%s] Force reset completed", server.name)
        return True
