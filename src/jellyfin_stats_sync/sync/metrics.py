"""Counters collected during a sync run and the result envelope built from them."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from ..models import ResultStatus


class MetricCounter(str, Enum):
    """Names of all sync counters."""

    API_REQUESTS = "api_requests"
    DATABASE_OPERATIONS = "database_operations"
    ITEMS_PROCESSED = "items_processed"
    ITEMS_INSERTED = "items_inserted"
    ITEMS_UPDATED = "items_updated"
    ITEMS_UNCHANGED = "items_unchanged"
    USERS_PROCESSED = "users_processed"
    USERS_INSERTED = "users_inserted"
    USERS_UPDATED = "users_updated"
    LIBRARIES_PROCESSED = "libraries_processed"
    LIBRARIES_INSERTED = "libraries_inserted"
    LIBRARIES_UPDATED = "libraries_updated"
    ACTIVITIES_PROCESSED = "activities_processed"
    ACTIVITIES_INSERTED = "activities_inserted"
    ACTIVITIES_UPDATED = "activities_updated"
    ERRORS = "errors"


class MetricsSnapshot(BaseModel):
    """Immutable view of the counters at the end of a run."""

    model_config = ConfigDict(frozen=True)

    api_requests: int = 0
    database_operations: int = 0
    items_processed: int = 0
    items_inserted: int = 0
    items_updated: int = 0
    items_unchanged: int = 0
    users_processed: int = 0
    users_inserted: int = 0
    users_updated: int = 0
    libraries_processed: int = 0
    libraries_inserted: int = 0
    libraries_updated: int = 0
    activities_processed: int = 0
    activities_inserted: int = 0
    activities_updated: int = 0
    errors: int = 0
    start_time: datetime
    end_time: datetime | None = None
    duration: int | None = None  # Milliseconds


class SyncMetrics:
    """Mutable counter bag for one sync run.

    Pipelines run their per-record workers as tasks on one event loop, so
    plain integer increments do not race.
    """

    def __init__(self) -> None:
        self._counts: dict[MetricCounter, int] = {counter: 0 for counter in MetricCounter}
        self.start_time = datetime.now(UTC)
        self.end_time: datetime | None = None

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    def increment(self, counter: MetricCounter, amount: int = 1) -> None:
        if self.finished:
            raise RuntimeError("Metrics are frozen after finish()")
        self._counts[MetricCounter(counter)] += amount

    def increment_api_requests(self, amount: int = 1) -> None:
        self.increment(MetricCounter.API_REQUESTS, amount)

    def increment_database_operations(self, amount: int = 1) -> None:
        self.increment(MetricCounter.DATABASE_OPERATIONS, amount)

    def increment_errors(self, amount: int = 1) -> None:
        self.increment(MetricCounter.ERRORS, amount)

    def get(self, counter: MetricCounter) -> int:
        return self._counts[counter]

    def snapshot(self) -> MetricsSnapshot:
        """Current counters without finishing the run."""
        duration = None
        if self.end_time is not None:
            duration = int((self.end_time - self.start_time).total_seconds() * 1000)
        return MetricsSnapshot(
            **{counter.value: value for counter, value in self._counts.items()},
            start_time=self.start_time,
            end_time=self.end_time,
            duration=duration,
        )

    def finish(self) -> MetricsSnapshot:
        """Stamp the end time and freeze the counters."""
        if self.end_time is None:
            self.end_time = datetime.now(UTC)
        return self.snapshot()


class SyncResult(BaseModel):
    """Outcome of a sync run: success, partial or error."""

    status: ResultStatus
    data: dict[str, Any] | None = None
    metrics: MetricsSnapshot
    error: str | None = None
    errors: list[str] | None = None

    @property
    def ok(self) -> bool:
        return self.status is not ResultStatus.ERROR


def create_sync_result(
    status: ResultStatus,
    data: dict[str, Any] | None,
    metrics: MetricsSnapshot,
    error: str | None = None,
    errors: list[str] | None = None,
) -> SyncResult:
    """Build a SyncResult. The only place results are constructed."""
    status = ResultStatus(status)
    if status is ResultStatus.ERROR:
        return SyncResult(status=status, data=data, metrics=metrics, error=error or "Unknown error", errors=errors)
    if status is ResultStatus.PARTIAL:
        return SyncResult(status=status, data=data, metrics=metrics, errors=list(errors or []))
    return SyncResult(status=status, data=data, metrics=metrics)

