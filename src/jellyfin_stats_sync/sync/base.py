"""Shared machinery for the entity sync pipelines."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import aiosqlite
import httpx
from pydantic import BaseModel

from ..config import SyncConfig
from ..database import Database
from ..errors import PipelineError, RecordError
from ..jellyfin.client import JellyfinClient
from ..models import ResultStatus, Server
from .metrics import MetricsSnapshot, SyncMetrics, SyncResult, create_sync_result

logger = logging.getLogger(__name__)

# Failures that stop a whole pipeline run rather than one record
FATAL_ERRORS: tuple[type[Exception], ...] = (httpx.HTTPError, PipelineError, aiosqlite.Error)


class UserSyncOptions(BaseModel):
    """Options for the users pipeline."""

    concurrency: int = 5


class LibrarySyncOptions(BaseModel):
    """Options for the libraries pipeline."""

    concurrency: int = 5


class ItemSyncOptions(BaseModel):
    """Options for the items pipeline."""

    item_page_size: int = 500
    max_library_concurrency: int = 2
    item_concurrency: int = 10
    api_request_delay_ms: int = 100
    recent_items_limit: int = 100


class ActivitySyncOptions(BaseModel):
    """Options for the activities pipeline."""

    page_size: int = 100
    max_pages: int = 1000
    recent_max_pages: int = 10
    concurrency: int = 5
    api_request_delay_ms: int = 100
    intelligent: bool = False


class SyncOptions(BaseModel):
    """Per-job overrides for every pipeline. Unset sections fall back to config."""

    user_options: UserSyncOptions | None = None
    library_options: LibrarySyncOptions | None = None
    item_options: ItemSyncOptions | None = None
    activity_options: ActivitySyncOptions | None = None


def _merge(defaults: BaseModel, override: BaseModel | None) -> Any:
    if override is None:
        return defaults
    return defaults.model_copy(update=override.model_dump(exclude_unset=True))


def resolve_options(sync: SyncConfig, options: SyncOptions | None = None) -> SyncOptions:
    """Fill every section from config, keeping fields the job set explicitly."""
    options = options or SyncOptions()
    return SyncOptions(
        user_options=_merge(UserSyncOptions(concurrency=sync.user_concurrency), options.user_options),
        library_options=_merge(LibrarySyncOptions(concurrency=sync.library_concurrency), options.library_options),
        item_options=_merge(
            ItemSyncOptions(
                item_page_size=sync.item_page_size,
                max_library_concurrency=sync.max_library_concurrency,
                item_concurrency=sync.item_concurrency,
                api_request_delay_ms=sync.api_request_delay_ms,
                recent_items_limit=sync.recent_items_limit,
            ),
            options.item_options,
        ),
        activity_options=_merge(
            ActivitySyncOptions(
                page_size=sync.activity_page_size,
                max_pages=sync.activity_max_pages,
                recent_max_pages=sync.recent_activity_max_pages,
                concurrency=sync.activity_concurrency,
                api_request_delay_ms=sync.api_request_delay_ms,
            ),
            options.activity_options,
        ),
    )


class EntitySyncPipeline:
    """Base class for one entity's fetch-map-upsert pipeline.

    Subclasses implement ``_sync`` and ``_data``. ``run`` never raises:
    setup failures produce an error result, per-record failures are
    collected and degrade the result to partial.
    """

    entity = "entity"
    options_model: type[BaseModel] = BaseModel

    def __init__(self, db: Database, client: JellyfinClient, server: Server, options: BaseModel | None = None):
        self.db = db
        self.client = client
        self.server = server
        self.options: Any = options if options is not None else self.options_model()
        self.metrics = SyncMetrics()
        self.errors: list[str] = []

    async def run(self) -> SyncResult:
        return await self._execute(self._sync, self.entity)

    async def _sync(self) -> None:
        raise NotImplementedError

    def _data(self, snapshot: MetricsSnapshot) -> dict[str, Any]:
        raise NotImplementedError

    async def _execute(self, operation: Callable[[], Awaitable[None]], description: str) -> SyncResult:
        logger.info("[%s] Starting %s sync", self.server.name, description)
        try:
            await operation()
        except FATAL_ERRORS as e:
            logger.error("[%s] %s sync failed: %s", self.server.name, description.capitalize(), e)
            snapshot = self.metrics.finish()
            return create_sync_result(
                ResultStatus.ERROR,
                self._data(snapshot),
                snapshot,
                error=str(e) or type(e).__name__,
                errors=self.errors or None,
            )

        snapshot = self.metrics.finish()
        data = self._data(snapshot)
        logger.info("[%s] %s sync completed: %s", self.server.name, description.capitalize(), data)
        if self.errors:
            return create_sync_result(ResultStatus.PARTIAL, data, snapshot, errors=self.errors)
        return create_sync_result(ResultStatus.SUCCESS, data, snapshot)

    def _record_failure(self, label: str, exc: Exception) -> None:
        """Count and remember a failure that does not stop the run."""
        message = exc.message if isinstance(exc, RecordError) else (str(exc) or type(exc).__name__)
        logger.error("[%s] %s failed: %s", self.server.name, label, message)
        self.metrics.increment_errors()
        self.errors.append(f"{label}: {message}")

    async def _run_bounded(
        self,
        records: Iterable[dict[str, Any]],
        worker: Callable[[dict[str, Any]], Awaitable[None]],
        concurrency: int,
        label: str,
    ) -> None:
        """Run ``worker`` over records with at most ``concurrency`` in flight."""
        semaphore = asyncio.Semaphore(max(concurrency, 1))

        async def run_one(record: dict[str, Any]) -> None:
            record_id = str(record.get("Id", "?"))
            async with semaphore:
                try:
                    await worker(record)
                except Exception as e:
                    self._record_failure(f"{label} {record_id}", RecordError(record_id, str(e) or type(e).__name__))

        await asyncio.gather(*(run_one(record) for record in records))

    async def _delay(self, milliseconds: int) -> None:
        if milliseconds > 0:
            await asyncio.sleep(milliseconds / 1000)
