"""Mirror the server activity log."""

import logging
from typing import Any

import httpx

from ..jellyfin.dates import parse_jellyfin_date
from ..models import ActivityRecord
from .base import ActivitySyncOptions, EntitySyncPipeline
from .metrics import MetricCounter, MetricsSnapshot, SyncResult

logger = logging.getLogger(__name__)

# Activity log entries for system events (plugin installs, ...) carry this user id
SYSTEM_USER_ID = "00000000000000000000000000000000"


class ActivitySyncPipeline(EntitySyncPipeline):
    """Page through the activity log, newest first, and upsert entries.

    ``run_recent(intelligent=True)`` stops at the newest activity already
    stored, so periodic runs only fetch what is new.
    """

    entity = "activities"
    options_model = ActivitySyncOptions
    options: ActivitySyncOptions

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.pages_fetched = 0

    async def _sync(self) -> None:
        await self._walk_pages(self.options.max_pages, marker_id=None)

    async def run_recent(self, intelligent: bool | None = None) -> SyncResult:
        """Sync the newest pages of the log (at most ``recent_max_pages``)."""
        if intelligent is None:
            intelligent = self.options.intelligent

        async def sync_recent() -> None:
            marker_id = None
            if intelligent:
                latest = await self.db.get_latest_activity(self.server.id)
                if latest:
                    marker_id = latest.id
                    logger.info("[%s] Most recent stored activity: %s (%s)", self.server.name, latest.id, latest.date)
                else:
                    logger.info("[%s] No stored activities, performing full recent sync", self.server.name)
            await self._walk_pages(self.options.recent_max_pages, marker_id=marker_id)

        description = "intelligent recent activities" if intelligent else "recent activities"
        return await self._execute(sync_recent, description)

    async def _walk_pages(self, max_pages: int, marker_id: str | None) -> None:
        page_size = self.options.page_size
        start_index = 0
        found_marker = False

        while self.pages_fetched < max_pages:
            if self.pages_fetched > 0:
                await self._delay(self.options.api_request_delay_ms)

            try:
                self.metrics.increment_api_requests()
                page = await self.client.get_activities(start_index, page_size)
            except httpx.HTTPError as e:
                self._record_failure(f"Page {self.pages_fetched + 1}", e)
                break

            if not page:
                logger.debug("[%s] No more activities to fetch", self.server.name)
                break

            if marker_id is not None:
                position = next((i for i, entry in enumerate(page) if str(entry.get("Id")) == marker_id), -1)
                if position >= 0:
                    logger.info("[%s] Found last known activity at index %d", self.server.name, position)
                    newer = page[:position]
                    await self._run_bounded(newer, self._process_activity, self.options.concurrency, "Activity")
                    found_marker = True
                    self.pages_fetched += 1
                    break

            await self._run_bounded(page, self._process_activity, self.options.concurrency, "Activity")
            start_index += len(page)
            self.pages_fetched += 1

            if marker_id is not None and self.metrics.get(MetricCounter.ACTIVITIES_PROCESSED) >= page_size * 3:
                logger.warning(
                    "[%s] Processed %d activities without finding the last known one, stopping",
                    self.server.name,
                    self.metrics.get(MetricCounter.ACTIVITIES_PROCESSED),
                )
                break

            if len(page) < page_size:
                logger.debug("[%s] Reached end of available activities", self.server.name)
                break

        if marker_id is not None and not found_marker:
            logger.warning(
                "[%s] Last known activity %s not found; it may be older than the sync window",
                self.server.name,
                marker_id,
            )

    async def _resolve_user_id(self, activity: dict[str, Any]) -> str | None:
        """Stored user id for the entry, or None when the user is unknown."""
        user_id = activity.get("UserId")
        if not user_id:
            return None
        if await self.db.user_exists(user_id):
            return user_id
        if user_id != SYSTEM_USER_ID:
            logger.warning(
                "[%s] Activity %s references unknown user %s, storing NULL",
                self.server.name,
                activity.get("Id"),
                user_id,
            )
        return None

    async def _process_activity(self, activity: dict[str, Any]) -> None:
        date = parse_jellyfin_date(activity.get("Date"))
        if date is None:
            raise ValueError(f"Invalid date: {activity.get('Date')!r}")

        record = ActivityRecord(
            id=str(activity["Id"]),
            server_id=self.server.id,
            name=activity.get("Name") or "",
            short_overview=activity.get("ShortOverview"),
            type=activity.get("Type") or "",
            date=date,
            severity=activity.get("Severity") or "Information",
            user_id=await self._resolve_user_id(activity),
            item_id=activity.get("ItemId"),
        )

        existed = await self.db.get_activity(record.id) is not None
        await self.db.upsert_activity(record)
        self.metrics.increment_database_operations()

        self.metrics.increment(MetricCounter.ACTIVITIES_UPDATED if existed else MetricCounter.ACTIVITIES_INSERTED)
        self.metrics.increment(MetricCounter.ACTIVITIES_PROCESSED)

    def _data(self, snapshot: MetricsSnapshot) -> dict[str, Any]:
        return {
            "activities_processed": snapshot.activities_processed,
            "activities_inserted": snapshot.activities_inserted,
            "activities_updated": snapshot.activities_updated,
            "pages_fetched": self.pages_fetched,
        }
