"""Tests for the durable job queue."""

import asyncio
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from jellyfin_stats_sync.config import QueueConfig, TeamConfig
from jellyfin_stats_sync.database import Database
from jellyfin_stats_sync.jobs.queue import JobQueue
from jellyfin_stats_sync.models import Job, JobResultStatus, JobState


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
def queue(db: Database):
    return JobQueue(db, QueueConfig(retry_limit=0, retry_delay_seconds=0))


class TestSend:
    """Enqueueing jobs."""

    @pytest.mark.asyncio
    async def test_send_persists_job(self, db: Database, queue: JobQueue):
        async def handler(job):
            return None

        queue.register("users-sync", handler, retry_limit=2, retry_delay=60, expire_in=1800)
        job_id = await queue.send("users-sync", {"server_id": 1})

        job = await db.get_job(job_id)
        assert job.state == JobState.CREATED
        assert job.payload == {"server_id": 1}
        assert job.retry_limit == 2
        assert job.retry_delay == 60
        assert job.expire_in == 1800

    @pytest.mark.asyncio
    async def test_send_overrides(self, db: Database, queue: JobQueue):
        async def handler(job):
            return None

        queue.register("users-sync", handler)
        job_id = await queue.send("users-sync", retry_limit=5, expire_in=10)

        job = await db.get_job(job_id)
        assert job.retry_limit == 5
        assert job.expire_in == 10
        assert job.payload == {}

    @pytest.mark.asyncio
    async def test_unknown_job_type(self, queue: JobQueue):
        with pytest.raises(ValueError):
            await queue.send("nope")

    @pytest.mark.asyncio
    async def test_delayed_job_not_claimed(self, db: Database, queue: JobQueue):
        async def handler(job):
            return None

        queue.register("users-sync", handler)
        await queue.send("users-sync", start_after=datetime.now(UTC) + timedelta(hours=1))

        assert await queue.poll_once() == 0


class TestDispatch:
    """Claiming and running jobs."""

    @pytest.mark.asyncio
    async def test_success_completes_job(self, db: Database, queue: JobQueue):
        seen: list[Job] = []

        async def handler(job):
            seen.append(job)
            return {"success": True}

        queue.register("users-sync", handler)
        job_id = await queue.send("users-sync", {"server_id": 1})

        assert await queue.poll_once() == 1
        await queue.drain()

        assert seen[0].id == job_id
        assert seen[0].state == JobState.ACTIVE
        job = await db.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.output == {"success": True}
        assert job.completed_on is not None

        results = await db.get_recent_job_results()
        assert len(results) == 1
        assert results[0].status == JobResultStatus.COMPLETED
        assert results[0].result == {"success": True}
        assert results[0].processing_time is not None

    @pytest.mark.asyncio
    async def test_failure_retries_then_fails(self, db: Database, queue: JobQueue):
        calls = 0

        async def handler(job):
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        queue.register("users-sync", handler, retry_limit=1, retry_delay=0)
        job_id = await queue.send("users-sync")

        await queue.poll_once()
        await queue.drain()
        job = await db.get_job(job_id)
        assert job.state == JobState.RETRY
        assert job.retry_count == 1
        assert job.last_error == "boom"

        await queue.poll_once()
        await queue.drain()
        job = await db.get_job(job_id)
        assert job.state == JobState.FAILED
        assert calls == 2

        results = await db.get_recent_job_results()
        assert [r.status for r in results] == [JobResultStatus.FAILED, JobResultStatus.FAILED]
        assert results[0].error == "boom"

    @pytest.mark.asyncio
    async def test_timeout_expires_job(self, db: Database, queue: JobQueue):
        async def handler(job):
            await asyncio.sleep(5)

        queue.register("users-sync", handler, expire_in=0)
        job_id = await queue.send("users-sync")

        await queue.poll_once()
        await queue.drain()

        job = await db.get_job(job_id)
        assert job.state == JobState.EXPIRED
        results = await db.get_recent_job_results()
        assert results[0].status == JobResultStatus.FAILED
        assert "expired" in results[0].error

    @pytest.mark.asyncio
    async def test_team_concurrency_cap(self, db: Database, queue: JobQueue):
        release = asyncio.Event()
        active = 0
        peak = 0

        async def handler(job):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await release.wait()
            active -= 1

        queue.register("items-sync", handler, team_size=2, team_concurrency=2)
        for _ in range(5):
            await queue.send("items-sync")

        assert await queue.poll_once() == 2
        # Both slots are busy, nothing more is claimed
        assert await queue.poll_once() == 0

        status = await queue.get_status()
        assert status["job_types"]["items-sync"]["active"] == 2
        assert status["counts"]["active"] == 2

        release.set()
        await queue.drain()
        assert peak == 2

    @pytest.mark.asyncio
    async def test_stale_active_job_expires(self, db: Database, queue: JobQueue):
        async def handler(job):
            return None

        queue.register("users-sync", handler, expire_in=1)
        job_id = await queue.send("users-sync")
        await db.claim_jobs("users-sync", 1)
        await db._db.execute(
            "UPDATE jobs SET started_on = ? WHERE id = ?",
            ((datetime.now(UTC) - timedelta(minutes=5)).isoformat(), job_id),
        )
        await db._db.commit()

        await queue.poll_once()

        job = await db.get_job(job_id)
        assert job.state == JobState.EXPIRED


class TestLifecycle:
    """Start, stop and configuration."""

    @pytest.mark.asyncio
    async def test_start_recovers_active_jobs(self, db: Database, queue: JobQueue):
        async def handler(job):
            return None

        queue.register("users-sync", handler)
        job_id = await queue.send("users-sync")
        await db.claim_jobs("users-sync", 1)

        # A fresh queue with no handlers only performs recovery
        restarted = JobQueue(db, QueueConfig(poll_interval_seconds=60))
        await restarted.start()
        try:
            assert restarted.running
            job = await db.get_job(job_id)
            assert job.state == JobState.RETRY
            assert job.started_on is None
        finally:
            await restarted.stop()

        assert not restarted.running

    @pytest.mark.asyncio
    async def test_stop_closes_result_of_running_job(self, db: Database, queue: JobQueue):
        started = asyncio.Event()

        async def handler(job):
            started.set()
            await asyncio.sleep(60)

        queue.register("users-sync", handler)
        job_id = await queue.send("users-sync")
        await queue.poll_once()
        await started.wait()

        await queue.stop()

        results = await db.get_recent_job_results()
        assert results[0].status == JobResultStatus.FAILED
        assert results[0].error == "Job cancelled"
        job = await db.get_job(job_id)
        assert job.state == JobState.ACTIVE

    @pytest.mark.asyncio
    async def test_team_overrides_from_config(self, db: Database):
        queue = JobQueue(db, QueueConfig(teams={"items-sync": TeamConfig(team_size=4, team_concurrency=3)}))

        async def handler(job):
            return None

        queue.register("items-sync", handler, team_size=1, team_concurrency=1)

        status = await queue.get_status()
        assert status["job_types"]["items-sync"] == {"team_size": 4, "team_concurrency": 3, "active": 0}
        assert status["running"] is False
