"""Jellyfin API client with rate limiting and retries."""

import logging
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .. import __version__
from ..config import ServerConfig
from ..errors import LibraryNotFoundError
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

# Connection pool limits
DEFAULT_LIMITS = httpx.Limits(max_connections=20, max_keepalive_connections=10)

USER_AGENT = f"jellyfin-stats-sync/{__version__}"

DEFAULT_ITEM_FIELDS = (
    "DateCreated",
    "Etag",
    "ExternalUrls",
    "Genres",
    "OriginalTitle",
    "Overview",
    "ParentId",
    "Path",
    "PrimaryImageAspectRatio",
    "ProductionYear",
    "SortName",
    "Width",
    "Height",
    "ImageTags",
    "ImageBlurHashes",
    "BackdropImageTags",
    "ParentBackdropImageTags",
    "ParentThumbImageTags",
    "SeriesThumbImageTag",
    "SeriesPrimaryImageTag",
    "Container",
    "PremiereDate",
    "CommunityRating",
    "RunTimeTicks",
    "IsFolder",
    "MediaType",
    "SeriesName",
    "SeriesId",
    "SeasonId",
    "SeasonName",
    "IndexNumber",
    "ParentIndexNumber",
    "VideoType",
    "HasSubtitles",
    "ChannelId",
    "ParentBackdropItemId",
    "ParentThumbItemId",
    "LocationType",
    "People",
)

DEFAULT_IMAGE_TYPES = "Primary,Backdrop,Banner,Thumb"

# Collection types that are not real media libraries
EXCLUDED_COLLECTION_TYPES = frozenset({"boxsets", "playlists"})


class JellyfinClient:
    """Async client for the Jellyfin API.

    Every request holds a limiter slot and is retried with exponential
    backoff on transport errors and non-2xx responses.
    """

    def __init__(self, server: ServerConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.server = server
        self.base_url = server.url.rstrip("/")
        self.headers = {
            "X-Emby-Token": server.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        self.limiter = RateLimiter(
            rate_per_second=server.rate_limit_per_second,
            max_concurrent=server.max_concurrent,
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.server.timeout_seconds),
                limits=DEFAULT_LIMITS,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "JellyfinClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "[%s] Request attempt %d failed: %s. %d retries left.",
            self.server.name,
            retry_state.attempt_number,
            exc,
            self.server.max_retries + 1 - retry_state.attempt_number,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make an authenticated, rate limited request to the Jellyfin API."""
        url = f"{self.base_url}{endpoint}"
        client = await self._get_client()

        retryer = AsyncRetrying(
            stop=stop_after_attempt(max(self.server.max_retries, 0) + 1),
            wait=wait_exponential(
                multiplier=self.server.retry_min_timeout,
                min=self.server.retry_min_timeout,
                max=self.server.retry_max_timeout,
            ),
            retry=retry_if_exception_type(httpx.HTTPError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retryer:
            with attempt:
                async with self.limiter.slot():
                    response = await client.request(method, url, headers=self.headers, **kwargs)
                response.raise_for_status()
        return response

    async def _get_json(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request("GET", endpoint, params=params)
        return response.json()

    # ========== Users ==========

    async def get_users(self) -> list[dict[str, Any]]:
        """Get all users from the server."""
        logger.debug("[%s] Getting users list", self.server.name)
        users = await self._get_json("/Users")
        logger.debug("[%s] Found %d users", self.server.name, len(users))
        return users

    async def get_user(self, user_id: str) -> dict[str, Any]:
        """Get a single user."""
        return await self._get_json(f"/Users/{user_id}")

    # ========== Libraries ==========

    async def get_libraries(self) -> list[dict[str, Any]]:
        """Get media libraries, without box sets and playlists."""
        data = await self._get_json("/Library/MediaFolders")
        libraries = [
            library
            for library in data.get("Items", [])
            if (library.get("CollectionType") or "") not in EXCLUDED_COLLECTION_TYPES
        ]
        logger.debug("[%s] Found %d libraries", self.server.name, len(libraries))
        return libraries

    async def get_library_id(self, item_id: str, library_ids: set[str] | None = None) -> str:
        """Walk ParentId links upward until a known library id is reached.

        Raises:
            LibraryNotFoundError: the item is missing or the walk hits the root.
        """
        if library_ids is None:
            library_ids = {library["Id"] for library in await self.get_libraries()}

        current_id = item_id
        visited: set[str] = set()
        while current_id not in visited:
            visited.add(current_id)
            data = await self._get_json("/Items", params={"ids": current_id, "Fields": "ParentId"})
            items = data.get("Items", [])
            if not items:
                raise LibraryNotFoundError(f"Item not found: {current_id}")

            item = items[0]
            if item.get("Id") in library_ids:
                return item["Id"]

            parent_id = item.get("ParentId")
            if not parent_id:
                raise LibraryNotFoundError("Reached root item without finding a library match")
            current_id = parent_id

        raise LibraryNotFoundError(f"Cycle in parent chain of item {item_id}")

    # ========== Items ==========

    async def get_item(self, item_id: str) -> dict[str, Any]:
        """Get a single item with the default field set."""
        return await self._get_json(
            f"/Items/{item_id}",
            params={
                "Fields": ",".join(DEFAULT_ITEM_FIELDS),
                "EnableImageTypes": DEFAULT_IMAGE_TYPES,
            },
        )

    async def get_items_page(
        self,
        library_id: str,
        start_index: int,
        limit: int,
        image_types: list[str] | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """Get one page of non-folder items of a library.

        Returns:
            (items, total record count)
        """
        params: dict[str, Any] = {
            "ParentId": library_id,
            "Recursive": "true",
            "Fields": ",".join(DEFAULT_ITEM_FIELDS),
            "StartIndex": start_index,
            "Limit": limit,
            "EnableImageTypes": DEFAULT_IMAGE_TYPES,
            "IsFolder": "false",
            "IsPlaceHolder": "false",
        }
        if image_types:
            params["ImageTypes"] = ",".join(image_types)

        data = await self._get_json("/Items", params=params)
        return data.get("Items") or [], data.get("TotalRecordCount") or 0

    async def get_recently_added_items(self, library_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Newest items of a library by creation date."""
        data = await self._get_json(
            "/Items",
            params={
                "SortBy": "DateCreated",
                "SortOrder": "Descending",
                "Recursive": "true",
                "ParentId": library_id,
                "Fields": ",".join(DEFAULT_ITEM_FIELDS),
                "ImageTypeLimit": 1,
                "EnableImageTypes": DEFAULT_IMAGE_TYPES,
                "Limit": limit,
            },
        )
        return data.get("Items") or []

    # ========== Activity Log ==========

    async def get_activities(self, start_index: int, limit: int) -> list[dict[str, Any]]:
        """One page of the activity log, newest first."""
        data = await self._get_json(
            "/System/ActivityLog/Entries",
            params={"startIndex": start_index, "limit": limit},
        )
        return data.get("Items") or []

    # ========== Sessions ==========

    async def get_sessions(self) -> list[dict[str, Any]]:
        """Currently connected sessions."""
        return await self._get_json("/Sessions")

    # ========== Health Check ==========

    async def health_check(self) -> bool:
        """Check if the server is reachable."""
        try:
            await self._request("GET", "/System/Info/Public")
            logger.debug("[%s] Health check OK", self.server.name)
            return True
        except Exception as e:
            logger.warning("[%s] Health check FAILED: %s", self.server.name, e)
            return False
