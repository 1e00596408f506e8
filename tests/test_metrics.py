"""Tests for sync metrics and result construction."""

import pytest

from jellyfin_stats_sync.models import ResultStatus
from jellyfin_stats_sync.sync.metrics import MetricCounter, SyncMetrics, create_sync_result


class TestSyncMetrics:
    """Counter bookkeeping."""

    def test_counters_start_at_zero(self):
        snapshot = SyncMetrics().snapshot()
        assert snapshot.api_requests == 0
        assert snapshot.items_processed == 0
        assert snapshot.end_time is None
        assert snapshot.duration is None

    def test_increment(self):
        metrics = SyncMetrics()
        metrics.increment(MetricCounter.ITEMS_INSERTED)
        metrics.increment(MetricCounter.ITEMS_INSERTED, 2)
        metrics.increment_api_requests()
        metrics.increment_database_operations(3)
        metrics.increment_errors()

        assert metrics.get(MetricCounter.ITEMS_INSERTED) == 3
        snapshot = metrics.snapshot()
        assert snapshot.api_requests == 1
        assert snapshot.database_operations == 3
        assert snapshot.errors == 1

    def test_finish_freezes_counters(self):
        metrics = SyncMetrics()
        metrics.increment_api_requests()
        snapshot = metrics.finish()

        assert snapshot.end_time is not None
        assert snapshot.duration is not None and snapshot.duration >= 0
        with pytest.raises(RuntimeError):
            metrics.increment_api_requests()

    def test_finish_is_idempotent(self):
        metrics = SyncMetrics()
        first = metrics.finish()
        second = metrics.finish()
        assert first.end_time == second.end_time


class TestCreateSyncResult:
    """Result envelope rules."""

    def test_success(self):
        snapshot = SyncMetrics().finish()
        result = create_sync_result(ResultStatus.SUCCESS, {"users_processed": 2}, snapshot, errors=["ignored"])

        assert result.ok
        assert result.data == {"users_processed": 2}
        assert result.error is None
        assert result.errors is None

    def test_partial_keeps_errors(self):
        snapshot = SyncMetrics().finish()
        errors = ["User u1: boom"]
        result = create_sync_result(ResultStatus.PARTIAL, {}, snapshot, errors=errors)

        assert result.ok
        assert result.errors == ["User u1: boom"]
        assert result.errors is not errors

    def test_error_defaults_message(self):
        snapshot = SyncMetrics().finish()
        result = create_sync_result(ResultStatus.ERROR, {"users_processed": 0}, snapshot)

        assert not result.ok
        assert result.error == "Unknown error"
        assert result.data == {"users_processed": 0}

    def test_accepts_status_strings(self):
        result = create_sync_result("partial", None, SyncMetrics().finish())
        assert result.status is ResultStatus.PARTIAL
        assert result.errors == []
