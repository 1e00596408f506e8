"""Mirror media libraries."""

import logging
from typing import Any

from ..models import LibraryRecord
from .base import EntitySyncPipeline, LibrarySyncOptions
from .metrics import MetricCounter, MetricsSnapshot

logger = logging.getLogger(__name__)


def map_library(library: dict[str, Any], server_id: int) -> LibraryRecord:
    return LibraryRecord(
        id=library["Id"],
        server_id=server_id,
        name=library.get("Name") or "",
        type=library.get("CollectionType") or "unknown",
        raw_data=library,
    )


class LibrarySyncPipeline(EntitySyncPipeline):
    """Fetch all libraries once and upsert them with bounded concurrency."""

    entity = "libraries"
    options_model = LibrarySyncOptions
    options: LibrarySyncOptions

    async def _sync(self) -> None:
        self.metrics.increment_api_requests()
        libraries = await self.client.get_libraries()
        logger.info("[%s] Fetched %d libraries", self.server.name, len(libraries))
        await self._run_bounded(libraries, self._process_library, self.options.concurrency, "Library")

    async def _process_library(self, library: dict[str, Any]) -> None:
        record = map_library(library, self.server.id)
        existed = await self.db.get_library(record.id) is not None
        await self.db.upsert_library(record)
        self.metrics.increment_database_operations()

        self.metrics.increment(MetricCounter.LIBRARIES_UPDATED if existed else MetricCounter.LIBRARIES_INSERTED)
        self.metrics.increment(MetricCounter.LIBRARIES_PROCESSED)

    def _data(self, snapshot: MetricsSnapshot) -> dict[str, Any]:
        return {
            "libraries_processed": snapshot.libraries_processed,
            "libraries_inserted": snapshot.libraries_inserted,
            "libraries_updated": snapshot.libraries_updated,
        }
