"""Tests for the users, libraries, items and activities pipelines."""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from jellyfin_stats_sync.database import Database
from jellyfin_stats_sync.jellyfin.dates import parse_jellyfin_date
from jellyfin_stats_sync.models import ActivityRecord, LibraryRecord, ResultStatus, UserRecord
from jellyfin_stats_sync.sync.activities import SYSTEM_USER_ID, ActivitySyncPipeline
from jellyfin_stats_sync.sync.base import ActivitySyncOptions, ItemSyncOptions
from jellyfin_stats_sync.sync.items import ItemSyncPipeline, map_item
from jellyfin_stats_sync.sync.libraries import LibrarySyncPipeline
from jellyfin_stats_sync.sync.users import UserSyncPipeline, map_user


@pytest.fixture
async def db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    database = Database(str(db_path))
    await database.connect()
    yield database
    await database.close()
    db_path.unlink(missing_ok=True)


@pytest.fixture
async def server(db: Database):
    return await db.upsert_server("home", "http://home:8096", "key")


@pytest.fixture
def client():
    """Jellyfin client double with async API methods."""
    mock = MagicMock()
    mock.get_users = AsyncMock(return_value=[])
    mock.get_libraries = AsyncMock(return_value=[])
    mock.get_items_page = AsyncMock(return_value=([], 0))
    mock.get_recently_added_items = AsyncMock(return_value=[])
    mock.get_activities = AsyncMock(return_value=[])
    return mock


def jellyfin_user(user_id: str, name: str, **policy) -> dict:
    return {
        "Id": user_id,
        "Name": name,
        "HasPassword": True,
        "LastLoginDate": "2024-03-01T10:00:00.0000000Z",
        "Policy": {"IsAdministrator": False, "EnableAllFolders": True, **policy},
    }


def jellyfin_item(item_id: str, name: str = "Movie", etag: str = "etag-1", **extra) -> dict:
    return {
        "Id": item_id,
        "Name": name,
        "Type": "Movie",
        "Etag": etag,
        "DateCreated": "2024-01-01T00:00:00.0000000Z",
        "ProductionYear": 1999,
        "Genres": ["Drama"],
        "ImageTags": {"Primary": "img-1"},
        "BackdropImageTags": ["bd-1"],
        "ProviderIds": {"Imdb": "tt0133093"},
        **extra,
    }


def activity(activity_id: int, user_id: str | None = None, date: str = "2024-01-03T10:00:00.0000000Z") -> dict:
    return {
        "Id": activity_id,
        "Name": f"Activity {activity_id}",
        "Type": "VideoPlayback",
        "Date": date,
        "Severity": "Information",
        "UserId": user_id,
    }


# ========== Users ==========


class TestUserPipeline:
    """Users are upserted and counted as inserted or updated."""

    def test_map_user_reads_policy(self):
        record = map_user(jellyfin_user("u1", "alice", IsAdministrator=True), server_id=1)
        assert record.is_administrator is True
        assert record.has_password is True
        assert record.last_login_date == parse_jellyfin_date("2024-03-01T10:00:00Z")

    def test_map_user_top_level_fallback(self):
        record = map_user({"Id": "u1", "Name": "bob", "IsDisabled": True}, server_id=1)
        assert record.is_disabled is True

    @pytest.mark.asyncio
    async def test_sync_is_idempotent(self, db, server, client):
        client.get_users.return_value = [jellyfin_user("u1", "alice"), jellyfin_user("u2", "bob")]

        first = await UserSyncPipeline(db, client, server).run()
        assert first.status == ResultStatus.SUCCESS
        assert first.data == {"users_processed": 2, "users_inserted": 2, "users_updated": 0}
        before = await db.get_user("u1")

        second = await UserSyncPipeline(db, client, server).run()
        assert second.data["users_inserted"] == 0
        assert second.data["users_updated"] == 2
        assert await db.get_user("u1") == before
        assert await db.count_users(server.id) == 2

    @pytest.mark.asyncio
    async def test_bad_record_makes_partial(self, db, server, client):
        client.get_users.return_value = [jellyfin_user("u1", "alice"), {"Name": "no id"}]

        result = await UserSyncPipeline(db, client, server).run()

        assert result.status == ResultStatus.PARTIAL
        assert len(result.errors) == 1
        assert result.data["users_inserted"] == 1
        assert result.metrics.errors == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_is_error(self, db, server, client):
        client.get_users.side_effect = httpx.ConnectError("refused")

        result = await UserSyncPipeline(db, client, server).run()

        assert result.status == ResultStatus.ERROR
        assert "refused" in result.error
        assert result.data["users_processed"] == 0


# ========== Libraries ==========


class TestLibraryPipeline:
    """Libraries are upserted by id."""

    @pytest.mark.asyncio
    async def test_sync_libraries(self, db, server, client):
        client.get_libraries.return_value = [
            {"Id": "lib-1", "Name": "Movies", "CollectionType": "movies"},
            {"Id": "lib-2", "Name": "Mixed"},
        ]

        first = await LibrarySyncPipeline(db, client, server).run()
        second = await LibrarySyncPipeline(db, client, server).run()

        assert first.data["libraries_inserted"] == 2
        assert second.data["libraries_inserted"] == 0
        assert second.data["libraries_updated"] == 2
        assert (await db.get_library("lib-2")).type == "unknown"


# ========== Items ==========


class TestItemPipeline:
    """Items: etag short-circuit and tracked-field updates."""

    @pytest.fixture
    async def library(self, db, server):
        record = LibraryRecord(id="lib-1", server_id=server.id, name="Movies", type="movies")
        await db.upsert_library(record)
        return record

    def test_map_item(self):
        row = map_item(jellyfin_item("i1"), "lib-1", 1)
        assert row["library_id"] == "lib-1"
        assert row["primary_image_tag"] == "img-1"
        assert row["date_created"] == "2024-01-01T00:00:00+00:00"
        assert row["raw_data"]["Id"] == "i1"

    @pytest.mark.asyncio
    async def test_unchanged_etag_skips_writes(self, db, server, client, library):
        client.get_items_page.return_value = ([jellyfin_item("i1")], 1)
        first = await ItemSyncPipeline(db, client, server).run()
        assert first.data["items_inserted"] == 1

        with (
            patch.object(db, "insert_item", new_callable=AsyncMock) as insert_item,
            patch.object(db, "update_item_fields", new_callable=AsyncMock) as update_item,
        ):
            second = await ItemSyncPipeline(db, client, server).run()

        insert_item.assert_not_called()
        update_item.assert_not_called()
        assert second.data["items_unchanged"] == 1
        assert second.data["items_updated"] == 0
        assert second.metrics.database_operations == 0

    @pytest.mark.asyncio
    async def test_changed_field_updates_tracked_columns_only(self, db, server, client, library):
        client.get_items_page.return_value = ([jellyfin_item("i1", Studios=[{"Name": "A"}])], 1)
        await ItemSyncPipeline(db, client, server).run()
        before = await db.get_item("i1")

        changed = jellyfin_item("i1", name="Movie (Remastered)", etag="etag-2", Studios=[{"Name": "B"}])
        client.get_items_page.return_value = ([changed], 1)
        result = await ItemSyncPipeline(db, client, server).run()

        after = await db.get_item("i1")
        assert result.data["items_updated"] == 1
        assert after["name"] == "Movie (Remastered)"
        assert after["etag"] == "etag-2"
        # Raw payload is not a tracked column
        assert after["raw_data"] == before["raw_data"]
        assert after["created_at"] == before["created_at"]
        assert after["updated_at"] >= before["updated_at"]

    @pytest.mark.asyncio
    async def test_new_etag_without_tracked_change_is_unchanged(self, db, server, client, library):
        client.get_items_page.return_value = ([jellyfin_item("i1")], 1)
        await ItemSyncPipeline(db, client, server).run()

        client.get_items_page.return_value = ([jellyfin_item("i1", etag=None)], 1)
        await ItemSyncPipeline(db, client, server).run()
        client.get_items_page.return_value = ([jellyfin_item("i1", etag=None)], 1)
        result = await ItemSyncPipeline(db, client, server).run()

        assert result.data["items_unchanged"] == 1

    @pytest.mark.asyncio
    async def test_pages_through_library(self, db, server, client, library):
        pages = [
            ([jellyfin_item("i1"), jellyfin_item("i2")], 3),
            ([jellyfin_item("i3")], 3),
        ]
        client.get_items_page.side_effect = pages
        options = ItemSyncOptions(item_page_size=2, api_request_delay_ms=0)

        result = await ItemSyncPipeline(db, client, server, options).run()

        assert client.get_items_page.call_count == 2
        assert client.get_items_page.call_args_list[1].args == ("lib-1", 2, 2)
        assert result.data["items_inserted"] == 3
        assert result.data["libraries_processed"] == 1

    @pytest.mark.asyncio
    async def test_short_page_stops_despite_inflated_total(self, db, server, client, library):
        client.get_items_page.return_value = ([jellyfin_item("i1")], 50)
        options = ItemSyncOptions(item_page_size=2, api_request_delay_ms=0)

        result = await ItemSyncPipeline(db, client, server, options).run()

        assert client.get_items_page.call_count == 1
        assert result.data["items_inserted"] == 1

    @pytest.mark.asyncio
    async def test_page_failure_is_partial(self, db, server, client, library):
        client.get_items_page.side_effect = httpx.ReadTimeout("timeout")

        result = await ItemSyncPipeline(db, client, server).run()

        assert result.status == ResultStatus.PARTIAL
        assert "Library Movies" in result.errors[0]

    @pytest.mark.asyncio
    async def test_recent_items_only_existing_libraries(self, db, server, client, library):
        await db.upsert_library(LibraryRecord(id="lib-gone", server_id=server.id, name="Gone", type="movies"))
        client.get_libraries.return_value = [{"Id": "lib-1"}]
        client.get_recently_added_items.return_value = [jellyfin_item("i1"), jellyfin_item("i2")]

        result = await ItemSyncPipeline(db, client, server).run_recent(limit=5)

        client.get_recently_added_items.assert_called_once_with("lib-1", 5)
        assert result.status == ResultStatus.SUCCESS
        assert result.data["items_inserted"] == 2
        assert await db.get_library("lib-gone") is not None


# ========== Activities ==========


class TestActivityPipeline:
    """Activity log mirroring."""

    @pytest.fixture
    async def user(self, db, server):
        await db.upsert_user(UserRecord(id="u1", server_id=server.id, name="alice"))

    @pytest.mark.asyncio
    async def test_unknown_user_stored_as_null(self, db, server, client, user):
        client.get_activities.return_value = [
            activity(3, "u1"),
            activity(2, "ghost"),
            activity(1, SYSTEM_USER_ID),
        ]

        result = await ActivitySyncPipeline(db, client, server).run()

        assert result.status == ResultStatus.SUCCESS
        assert result.data["activities_inserted"] == 3
        assert result.data["pages_fetched"] == 1
        assert (await db.get_activity("3")).user_id == "u1"
        assert (await db.get_activity("2")).user_id is None
        assert (await db.get_activity("1")).user_id is None

    @pytest.mark.asyncio
    async def test_sync_is_idempotent(self, db, server, client, user):
        client.get_activities.return_value = [activity(2, "u1"), activity(1)]

        await ActivitySyncPipeline(db, client, server).run()
        second = await ActivitySyncPipeline(db, client, server).run()

        assert second.data["activities_inserted"] == 0
        assert second.data["activities_updated"] == 2
        assert await db.count_activities(server.id) == 2

    @pytest.mark.asyncio
    async def test_walks_pages_until_short_page(self, db, server, client):
        client.get_activities.side_effect = [
            [activity(4), activity(3)],
            [activity(2), activity(1)],
            [],
        ]
        options = ActivitySyncOptions(page_size=2, api_request_delay_ms=0)

        result = await ActivitySyncPipeline(db, client, server, options).run()

        assert result.data["activities_processed"] == 4
        assert result.data["pages_fetched"] == 2
        assert client.get_activities.call_args_list[1].args == (2, 2)

    @pytest.mark.asyncio
    async def test_intelligent_recent_stops_at_marker(self, db, server, client):
        await db.upsert_activity(
            ActivityRecord(
                id="2",
                server_id=server.id,
                name="Known",
                type="VideoPlayback",
                date=parse_jellyfin_date("2024-01-02T00:00:00Z"),
                severity="Information",
            )
        )
        client.get_activities.return_value = [
            activity(4, date="2024-01-04T00:00:00Z"),
            activity(3, date="2024-01-03T00:00:00Z"),
            activity(2, date="2024-01-02T00:00:00Z"),
            activity(1, date="2024-01-01T00:00:00Z"),
        ]

        result = await ActivitySyncPipeline(db, client, server).run_recent(intelligent=True)

        assert result.data["activities_processed"] == 2
        assert result.data["activities_inserted"] == 2
        assert result.data["pages_fetched"] == 1
        assert await db.get_activity("1") is None

    @pytest.mark.asyncio
    async def test_invalid_date_is_record_error(self, db, server, client):
        client.get_activities.return_value = [activity(2), activity(1, date="not a date")]

        result = await ActivitySyncPipeline(db, client, server).run()

        assert result.status == ResultStatus.PARTIAL
        assert result.errors[0].startswith("Activity 1")

    @pytest.mark.asyncio
    async def test_page_failure_stops_walk(self, db, server, client):
        client.get_activities.side_effect = httpx.ConnectError("refused")

        result = await ActivitySyncPipeline(db, client, server).run()

        assert result.status == ResultStatus.PARTIAL
        assert result.errors == ["Page 1: refused"]
