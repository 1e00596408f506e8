"""Tests for the sync state machine and the orchestrator."""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from jellyfin_stats_sync.config import Config, DatabaseConfig, ServerConfig
from jellyfin_stats_sync.database import Database
from jellyfin_stats_sync.errors import InvalidTransitionError, PipelineError
from jellyfin_stats_sync.models import ResultStatus, SyncStage, SyncStatus
from jellyfin_stats_sync.sync.orchestrator import FORCE_RESET_ERROR, STUCK_RESET_ERROR, SyncOrchestrator
from jellyfin_stats_sync.sync.state import SyncEvent, SyncState, transition


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
def test_config(db):
    """Create test configuration."""
    config = Config(
        servers=[ServerConfig(name="home", url="http://home:8096", api_key="key")],
        database=DatabaseConfig(path=db.db_path),
    )
    config.sync.api_request_delay_ms = 0
    return config


@pytest.fixture
async def server(db: Database):
    return await db.upsert_server("home", "http://home:8096", "key")


@pytest.fixture
def client():
    """Jellyfin client double returning one of everything."""
    mock = MagicMock()
    mock.get_users = AsyncMock(return_value=[{"Id": "u1", "Name": "alice"}])
    mock.get_libraries = AsyncMock(return_value=[{"Id": "lib-1", "Name": "Movies", "CollectionType": "movies"}])
    mock.get_items_page = AsyncMock(return_value=([{"Id": "i1", "Name": "Movie", "Type": "Movie", "Etag": "e"}], 1))
    mock.get_recently_added_items = AsyncMock(return_value=[])
    mock.get_activities = AsyncMock(
        return_value=[{"Id": 1, "Name": "Started", "Type": "ServerStarted", "Date": "2024-01-01T00:00:00Z"}]
    )
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def orchestrator(db, test_config, client):
    return SyncOrchestrator(db, test_config, client_factory=lambda server_config: client)


# ========== State Machine ==========


class TestTransition:
    """The single transition function."""

    def test_start_from_any_status(self):
        for status in SyncStatus:
            state = transition(SyncState(status=status), SyncEvent.START, SyncStage.USERS)
            assert state == SyncState(status=SyncStatus.SYNCING, stage=SyncStage.USERS)

    def test_start_needs_a_stage(self):
        with pytest.raises(InvalidTransitionError):
            transition(SyncState(), SyncEvent.START)
        with pytest.raises(InvalidTransitionError):
            transition(SyncState(), SyncEvent.START, SyncStage.COMPLETED)

    def test_advance_moves_forward_only(self):
        state = SyncState(status=SyncStatus.SYNCING, stage=SyncStage.LIBRARIES)
        assert transition(state, SyncEvent.ADVANCE, SyncStage.ITEMS).stage == SyncStage.ITEMS
        with pytest.raises(InvalidTransitionError):
            transition(state, SyncEvent.ADVANCE, SyncStage.USERS)
        with pytest.raises(InvalidTransitionError):
            transition(state, SyncEvent.ADVANCE, SyncStage.LIBRARIES)
        with pytest.raises(InvalidTransitionError):
            transition(state, SyncEvent.ADVANCE, SyncStage.RECENT_ITEMS)

    def test_complete_and_reset(self):
        state = SyncState(status=SyncStatus.SYNCING, stage=SyncStage.ITEMS)
        done = SyncState(status=SyncStatus.COMPLETED, stage=SyncStage.COMPLETED)
        assert transition(state, SyncEvent.COMPLETE) == done
        assert transition(state, SyncEvent.RESET) == done

    def test_fail_keeps_stage(self):
        state = SyncState(status=SyncStatus.SYNCING, stage=SyncStage.ACTIVITIES)
        assert transition(state, SyncEvent.FAIL) == SyncState(status=SyncStatus.FAILED, stage=SyncStage.ACTIVITIES)

    def test_only_start_outside_syncing(self):
        idle = SyncState(status=SyncStatus.COMPLETED, stage=SyncStage.COMPLETED)
        for event in (SyncEvent.ADVANCE, SyncEvent.COMPLETE, SyncEvent.FAIL, SyncEvent.RESET):
            with pytest.raises(InvalidTransitionError):
                transition(idle, event, SyncStage.ITEMS)


# ========== Full Sync ==========


class TestFullSync:
    """perform_full_sync runs every stage and aggregates the outcome."""

    @pytest.mark.asyncio
    async def test_success(self, db, server, orchestrator):
        result = await orchestrator.perform_full_sync(server.id)

        assert result.status == ResultStatus.SUCCESS
        assert result.data["users"]["users_inserted"] == 1
        assert result.data["libraries"]["libraries_inserted"] == 1
        assert result.data["items"]["items_inserted"] == 1
        assert result.data["activities"]["activities_inserted"] == 1

        stored = await db.get_server(server.id)
        assert stored.sync_status == SyncStatus.COMPLETED
        assert stored.sync_progress == SyncStage.COMPLETED
        assert stored.sync_error is None
        assert stored.last_sync_started is not None
        assert stored.last_sync_completed is not None

    @pytest.mark.asyncio
    async def test_users_error_does_not_stop_later_stages(self, db, server, client, orchestrator):
        """A failed Users stage yields an error result but the other stages' data is stored."""
        client.get_users.side_effect = httpx.ConnectError("refused")

        result = await orchestrator.perform_full_sync(server.id)

        assert result.status == ResultStatus.ERROR
        assert result.error == "One or more sync operations failed"
        assert result.errors == ["Users: refused"]
        assert await db.get_library("lib-1") is not None
        assert await db.get_item("i1") is not None
        assert await db.count_activities(server.id) == 1

        stored = await db.get_server(server.id)
        assert stored.sync_status == SyncStatus.FAILED
        assert stored.sync_progress == SyncStage.ACTIVITIES
        assert stored.sync_error == "One or more sync operations failed: Users: refused"

    @pytest.mark.asyncio
    async def test_partial(self, db, server, client, orchestrator):
        client.get_users.return_value = [{"Id": "u1", "Name": "alice"}, {"Name": "broken"}]

        result = await orchestrator.perform_full_sync(server.id)

        assert result.status == ResultStatus.PARTIAL
        assert len(result.errors) == 1
        stored = await db.get_server(server.id)
        assert stored.sync_status == SyncStatus.COMPLETED
        assert stored.sync_error == "Partial success with 1 errors"

    @pytest.mark.asyncio
    async def test_unknown_server(self, orchestrator):
        with pytest.raises(PipelineError):
            await orchestrator.perform_full_sync(999)

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_server(self, db, server, client, orchestrator):
        client.get_users.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            await orchestrator.perform_full_sync(server.id)

        stored = await db.get_server(server.id)
        assert stored.sync_status == SyncStatus.FAILED
        assert stored.sync_progress == SyncStage.USERS
        assert stored.sync_error == "bug"

    @pytest.mark.asyncio
    async def test_health_check_all(self, server, client, orchestrator):
        client.health_check = AsyncMock(return_value=False)
        assert await orchestrator.health_check_all() == {"home": False}

    @pytest.mark.asyncio
    async def test_client_is_shared_per_server(self, server, orchestrator, client):
        assert orchestrator.client_for(server) is orchestrator.client_for(server)
        await orchestrator.close()
        client.close.assert_awaited_once()


class TestRunStage:
    """Single stage jobs."""

    @pytest.mark.asyncio
    async def test_run_users_stage(self, db, server, orchestrator):
        result = await orchestrator.run_stage(server.id, SyncStage.USERS)

        assert result.status == ResultStatus.SUCCESS
        stored = await db.get_server(server.id)
        assert stored.sync_status == SyncStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_error_stage_fails_server(self, db, server, client, orchestrator):
        client.get_libraries.side_effect = httpx.ConnectError("refused")

        result = await orchestrator.run_stage(server.id, SyncStage.LIBRARIES)

        assert result.status == ResultStatus.ERROR
        stored = await db.get_server(server.id)
        assert stored.sync_status == SyncStatus.FAILED
        assert stored.sync_progress == SyncStage.LIBRARIES
        assert stored.sync_error == "refused"

    @pytest.mark.asyncio
    async def test_not_runnable_stage(self, server, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.run_stage(server.id, SyncStage.COMPLETED)


class TestRecovery:
    """Stuck and forced resets."""

    @pytest.mark.asyncio
    async def test_reset_stuck_servers(self, db, server, orchestrator):
        await db.update_server_sync_state(
            server.id,
            SyncStatus.SYNCING,
            SyncStage.ITEMS,
            last_sync_started=datetime.now(UTC) - timedelta(hours=2),
        )

        assert await orchestrator.reset_stuck_servers() == [server.id]

        stored = await db.get_server(server.id)
        assert stored.sync_status == SyncStatus.COMPLETED
        assert stored.sync_error == STUCK_RESET_ERROR

    @pytest.mark.asyncio
    async def test_recent_sync_not_stuck(self, db, server, orchestrator):
        await db.update_server_sync_state(
            server.id, SyncStatus.SYNCING, SyncStage.ITEMS, last_sync_started=datetime.now(UTC)
        )
        assert await orchestrator.reset_stuck_servers() == []

    @pytest.mark.asyncio
    async def test_force_reset(self, db, server, orchestrator):
        assert await orchestrator.force_reset_server(server.id) is False

        await db.update_server_sync_state(server.id, SyncStatus.SYNCING, SyncStage.USERS)
        assert await orchestrator.force_reset_server(server.id) is True

        stored = await db.get_server(server.id)
        assert stored.sync_status == SyncStatus.COMPLETED
        assert stored.sync_error == FORCE_RESET_ERROR
