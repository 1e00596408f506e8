"""Durable SQLite-backed job queue with per-type concurrency."""

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from ..config import QueueConfig
from ..database import Database
from ..models import Job, JobResult, JobResultStatus, JobState

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[dict[str, Any] | None]]


class JobType:
    """Registered handler and delivery settings for one job name."""

    def __init__(
        self,
        name: str,
        handler: JobHandler,
        team_size: int,
        team_concurrency: int,
        retry_limit: int,
        retry_delay: int,
        expire_in: int,
    ):
        self.name = name
        self.handler = handler
        self.team_size = max(team_size, 1)
        self.team_concurrency = max(team_concurrency, 1)
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay
        self.expire_in = expire_in
        self.semaphore = asyncio.Semaphore(self.team_concurrency)
        self.running = 0


class JobQueue:
    """
    Named job types backed by the jobs table.

    Jobs are delivered at least once: a job claimed as active but never
    finished (crash, restart) is put back in line on the next start().
    """

    def __init__(self, db: Database, config: QueueConfig | None = None):
        self.db = db
        self.config = config or QueueConfig()
        self._types: dict[str, JobType] = {}
        self._running = False
        self._poll_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()

    @property
    def running(self) -> bool:
        return self._running

    def register(
        self,
        name: str,
        handler: JobHandler,
        *,
        team_size: int = 1,
        team_concurrency: int = 1,
        retry_limit: int | None = None,
        retry_delay: int | None = None,
        expire_in: int | None = None,
    ) -> None:
        """Register a handler. Team settings from config override the given ones."""
        override = self.config.teams.get(name)
        if override is not None:
            team_size, team_concurrency = override.team_size, override.team_concurrency

        self._types[name] = JobType(
            name=name,
            handler=handler,
            team_size=team_size,
            team_concurrency=team_concurrency,
            retry_limit=self.config.retry_limit if retry_limit is None else retry_limit,
            retry_delay=self.config.retry_delay_seconds if retry_delay is None else retry_delay,
            expire_in=self.config.expire_in_seconds if expire_in is None else expire_in,
        )
        logger.debug("Registered job type %s (team_size=%d, team_concurrency=%d)", name, team_size, team_concurrency)

    async def send(
        self,
        name: str,
        payload: dict[str, Any] | None = None,
        *,
        retry_limit: int | None = None,
        retry_delay: int | None = None,
        expire_in: int | None = None,
        start_after: datetime | None = None,
    ) -> str:
        """Enqueue a job and return its id."""
        job_type = self._types.get(name)
        if job_type is None:
            raise ValueError(f"Unknown job type: {name}")

        now = datetime.now(UTC)
        job = Job(
            id=str(uuid.uuid4()),
            name=name,
            payload=payload or {},
            retry_limit=job_type.retry_limit if retry_limit is None else retry_limit,
            retry_delay=job_type.retry_delay if retry_delay is None else retry_delay,
            expire_in=job_type.expire_in if expire_in is None else expire_in,
            start_after=start_after or now,
            created_at=now,
        )
        await self.db.insert_job(job)
        logger.info("Queued %s job %s", name, job.id)
        return job.id

    # ========== Worker Loop ==========

    async def start(self) -> None:
        """Recover interrupted jobs and start polling."""
        if self._running:
            return

        # Jobs left active by a previous run are delivered again
        await self.db.reset_active_jobs()

        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Job queue started (%d job types)", len(self._types))

    async def stop(self) -> None:
        """Stop polling and cancel in-flight handlers."""
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Job queue stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception("Error in job queue loop: %s", e)

            await asyncio.sleep(self.config.poll_interval_seconds)

    async def poll_once(self) -> int:
        """Expire stale jobs, then claim and dispatch ready ones. Returns number dispatched."""
        await self._expire_stale_jobs()

        dispatched = 0
        for job_type in self._types.values():
            capacity = min(job_type.team_size, job_type.team_concurrency - job_type.running)
            if capacity <= 0:
                continue

            for job in await self.db.claim_jobs(job_type.name, capacity):
                job_type.running += 1
                self._in_flight.add(job.id)
                task = asyncio.create_task(self._execute(job_type, job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                dispatched += 1
        return dispatched

    async def drain(self) -> None:
        """Wait until all dispatched jobs have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _expire_stale_jobs(self) -> None:
        now = datetime.now(UTC)
        for job in await self.db.get_active_jobs():
            if job.id in self._in_flight or job.started_on is None:
                continue
            if job.started_on + timedelta(seconds=job.expire_in) < now:
                logger.warning("Job %s (%s) expired while active", job.id, job.name)
                await self.db.fail_job(job.id, "Job expired", state=JobState.EXPIRED)
                await self.db.log_job_result(
                    JobResult(job_id=job.id, job_name=job.name, status=JobResultStatus.FAILED, error="Job expired")
                )

    async def _execute(self, job_type: JobType, job: Job) -> None:
        started = time.monotonic()
        result_id = await self.db.log_job_result(
            JobResult(job_id=job.id, job_name=job.name, status=JobResultStatus.PROCESSING)
        )

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            async with job_type.semaphore:
                logger.info("Processing %s job %s (attempt %d)", job.name, job.id, job.retry_count + 1)
                output = await asyncio.wait_for(job_type.handler(job), timeout=job.expire_in)
        except asyncio.CancelledError:
            # The job stays active and is delivered again by the next start()
            logger.warning("%s job %s cancelled", job.name, job.id)
            await self.db.update_job_result(
                result_id, JobResultStatus.FAILED, error="Job cancelled", processing_time=elapsed_ms()
            )
            raise
        except TimeoutError:
            error = f"Job expired after {job.expire_in}s"
            logger.error("%s job %s: %s", job.name, job.id, error)
            await self.db.fail_job(job.id, error, state=JobState.EXPIRED)
            await self.db.update_job_result(
                result_id, JobResultStatus.FAILED, error=error, processing_time=elapsed_ms()
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            if job.retry_count < job.retry_limit:
                retry_at = datetime.now(UTC) + timedelta(seconds=job.retry_delay)
                logger.warning(
                    "%s job %s failed (attempt %d/%d), retrying in %ds: %s",
                    job.name,
                    job.id,
                    job.retry_count + 1,
                    job.retry_limit + 1,
                    job.retry_delay,
                    error,
                )
                await self.db.retry_job(job.id, error, retry_at)
            else:
                logger.error("%s job %s failed permanently: %s", job.name, job.id, error)
                await self.db.fail_job(job.id, error)
            await self.db.update_job_result(
                result_id, JobResultStatus.FAILED, error=error, processing_time=elapsed_ms()
            )
        else:
            await self.db.complete_job(job.id, output)
            await self.db.update_job_result(
                result_id, JobResultStatus.COMPLETED, result=output, processing_time=elapsed_ms()
            )
            logger.info("Completed %s job %s in %dms", job.name, job.id, elapsed_ms())
        finally:
            job_type.running -= 1
            self._in_flight.discard(job.id)

    # ========== Status ==========

    async def get_status(self) -> dict[str, Any]:
        """Queue state for the status API."""
        return {
            "running": self._running,
            "job_types": {
                name: {
                    "team_size": job_type.team_size,
                    "team_concurrency": job_type.team_concurrency,
                    "active": job_type.running,
                }
                for name, job_type in self._types.items()
            },
            "counts": await self.db.get_job_counts(),
        }
