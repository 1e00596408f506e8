"""Mirror library items with etag short-circuit and tracked-field diffs."""

import asyncio
import logging
from typing import Any

import httpx

from ..jellyfin.dates import parse_jellyfin_date
from ..models import LibraryRecord
from .base import EntitySyncPipeline, ItemSyncOptions
from .fields import changed_fields, image_fields_changed, tracked_values
from .metrics import MetricCounter, MetricsSnapshot, SyncResult

logger = logging.getLogger(__name__)


def _iso(value: Any) -> str | None:
    parsed = parse_jellyfin_date(value)
    return parsed.isoformat() if parsed else None


def map_item(item: dict[str, Any], library_id: str, server_id: int) -> dict[str, Any]:
    """Map a Jellyfin BaseItemDto onto an items row (JSON columns as Python objects)."""
    image_tags = item.get("ImageTags") or {}
    return {
        "id": item["Id"],
        "server_id": server_id,
        "library_id": library_id,
        "name": item.get("Name") or "",
        "type": item.get("Type") or "Unknown",
        "original_title": item.get("OriginalTitle"),
        "etag": item.get("Etag"),
        "date_created": _iso(item.get("DateCreated")),
        "container": item.get("Container"),
        "sort_name": item.get("SortName"),
        "premiere_date": _iso(item.get("PremiereDate")),
        "path": item.get("Path"),
        "official_rating": item.get("OfficialRating"),
        "overview": item.get("Overview"),
        "community_rating": item.get("CommunityRating"),
        "runtime_ticks": item.get("RunTimeTicks"),
        "production_year": item.get("ProductionYear"),
        "is_folder": bool(item.get("IsFolder")),
        "parent_id": item.get("ParentId"),
        "media_type": item.get("MediaType"),
        "width": item.get("Width"),
        "height": item.get("Height"),
        "series_name": item.get("SeriesName"),
        "series_id": item.get("SeriesId"),
        "season_id": item.get("SeasonId"),
        "season_name": item.get("SeasonName"),
        "index_number": item.get("IndexNumber"),
        "parent_index_number": item.get("ParentIndexNumber"),
        "video_type": item.get("VideoType"),
        "has_subtitles": bool(item.get("HasSubtitles")),
        "channel_id": item.get("ChannelId"),
        "location_type": item.get("LocationType"),
        "genres": item.get("Genres"),
        "primary_image_aspect_ratio": item.get("PrimaryImageAspectRatio"),
        "primary_image_tag": image_tags.get("Primary"),
        "series_primary_image_tag": item.get("SeriesPrimaryImageTag"),
        "primary_image_thumb_tag": image_tags.get("Thumb"),
        "primary_image_logo_tag": image_tags.get("Logo"),
        "parent_thumb_item_id": item.get("ParentThumbItemId"),
        "parent_thumb_image_tag": item.get("ParentThumbImageTag"),
        "parent_logo_item_id": item.get("ParentLogoItemId"),
        "parent_logo_image_tag": item.get("ParentLogoImageTag"),
        "backdrop_image_tags": item.get("BackdropImageTags"),
        "parent_backdrop_item_id": item.get("ParentBackdropItemId"),
        "parent_backdrop_image_tags": item.get("ParentBackdropImageTags"),
        "image_blur_hashes": item.get("ImageBlurHashes"),
        "image_tags": item.get("ImageTags"),
        "can_delete": bool(item.get("CanDelete")),
        "can_download": bool(item.get("CanDownload")),
        "play_access": item.get("PlayAccess"),
        "is_hd": bool(item.get("IsHD")),
        "provider_ids": item.get("ProviderIds"),
        "tags": item.get("Tags"),
        "series_studio": item.get("SeriesStudio"),
        "people": item.get("People"),
        "raw_data": item,
    }


class ItemSyncPipeline(EntitySyncPipeline):
    """Full and recently-added item sync.

    Existing rows are only touched when a tracked field or image field
    changed, and then only the tracked columns plus updated_at are written.
    """

    entity = "items"
    options_model = ItemSyncOptions
    options: ItemSyncOptions

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.libraries_processed = 0
        self._recent_limit = self.options.recent_items_limit

    # ========== Full Sync ==========

    async def _sync(self) -> None:
        libraries = await self.db.list_libraries(self.server.id)
        logger.info("[%s] Found %d libraries to sync", self.server.name, len(libraries))

        semaphore = asyncio.Semaphore(max(self.options.max_library_concurrency, 1))

        async def sync_one(library: LibraryRecord) -> None:
            async with semaphore:
                await self._sync_library(library)
                self.libraries_processed += 1
                logger.info("[%s] Completed sync for library: %s", self.server.name, library.name)

        await asyncio.gather(*(sync_one(library) for library in libraries))

    async def _sync_library(self, library: LibraryRecord) -> None:
        start_index = 0
        page_size = self.options.item_page_size
        while True:
            if start_index > 0:
                await self._delay(self.options.api_request_delay_ms)

            try:
                self.metrics.increment_api_requests()
                items, total = await self.client.get_items_page(library.id, start_index, page_size)
            except httpx.HTTPError as e:
                self._record_failure(f"Library {library.name} (page at {start_index})", e)
                return

            await self._run_bounded(
                items,
                lambda item: self._process_item(item, library.id),
                self.options.item_concurrency,
                "Item",
            )
            start_index += len(items)
            logger.debug(
                "[%s] Processed batch for library %s: %d/%d items", self.server.name, library.name, start_index, total
            )
            if not items or len(items) < page_size or start_index >= total:
                return

    # ========== Recently Added ==========

    async def run_recent(self, limit: int | None = None) -> SyncResult:
        """Sync the newest items of every library that still exists on the server."""
        self._recent_limit = limit if limit is not None else self.options.recent_items_limit
        return await self._execute(self._sync_recent, "recently added items")

    async def _sync_recent(self) -> None:
        self.metrics.increment_api_requests()
        remote_ids = {library["Id"] for library in await self.client.get_libraries()}
        stored = await self.db.list_libraries(self.server.id)

        removed = [library for library in stored if library.id not in remote_ids]
        if removed:
            logger.info(
                "[%s] Libraries no longer on server (not removed): %s",
                self.server.name,
                ", ".join(f"{library.name} ({library.id})" for library in removed),
            )

        for library in stored:
            if library.id not in remote_ids:
                continue
            try:
                self.metrics.increment_api_requests()
                items = await self.client.get_recently_added_items(library.id, self._recent_limit)
            except httpx.HTTPError as e:
                self._record_failure(f"Library {library.name}", e)
                continue

            logger.debug("[%s] %d recently added items in %s", self.server.name, len(items), library.name)
            await self._run_bounded(
                items,
                lambda item, library_id=library.id: self._process_item(item, library_id),
                self.options.item_concurrency,
                "Item",
            )
            self.libraries_processed += 1

    # ========== Per Item ==========

    async def _process_item(self, item: dict[str, Any], library_id: str) -> None:
        new = map_item(item, library_id, self.server.id)
        existing = await self.db.get_item(new["id"])

        if existing is None:
            await self.db.insert_item(new)
            self.metrics.increment_database_operations()
            self.metrics.increment(MetricCounter.ITEMS_INSERTED)
        elif existing.get("etag") is not None and existing.get("etag") == new["etag"]:
            self.metrics.increment(MetricCounter.ITEMS_UNCHANGED)
        else:
            changed = changed_fields(existing, new)
            if changed or image_fields_changed(existing, new):
                logger.debug("[%s] Item %s changed: %s", self.server.name, new["id"], changed or ["images"])
                await self.db.update_item_fields(new["id"], tracked_values(new))
                self.metrics.increment_database_operations()
                self.metrics.increment(MetricCounter.ITEMS_UPDATED)
            else:
                self.metrics.increment(MetricCounter.ITEMS_UNCHANGED)

        self.metrics.increment(MetricCounter.ITEMS_PROCESSED)

    def _data(self, snapshot: MetricsSnapshot) -> dict[str, Any]:
        return {
            "libraries_processed": self.libraries_processed,
            "items_processed": snapshot.items_processed,
            "items_inserted": snapshot.items_inserted,
            "items_updated": snapshot.items_updated,
            "items_unchanged": snapshot.items_unchanged,
        }
