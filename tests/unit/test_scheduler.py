"""Tests for APScheduler job configuration and the incremental sync job body."""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mottahub.karbon.client import KarbonCredentialsError
from mottahub.scheduler.jobs import _incremental_sync, build_scheduler


class TestBuildScheduler:
    def test_returns_scheduler(self):
        engine = MagicMock()
        scheduler = build_scheduler(engine)
        assert isinstance(scheduler, AsyncIOScheduler)

    def test_incremental_sync_job_registered(self):
        engine = MagicMock()
        scheduler = build_scheduler(engine)
        job_ids = [job.id for job in scheduler.get_jobs()]
        assert "karbon_incremental_sync" in job_ids

    def test_job_is_interval(self):
        engine = MagicMock()
        scheduler = build_scheduler(engine)
        job = next(j for j in scheduler.get_jobs() if j.id == "karbon_incremental_sync")
        assert job.trigger.__class__.__name__ == "IntervalTrigger"

    def test_interval_from_settings(self):
        """Scheduler respects the KARBON_SYNC_INTERVAL_MINUTES setting."""
        engine = MagicMock()
        with patch("mottahub.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.karbon_sync_interval_minutes = 30
            scheduler = build_scheduler(engine)

        job = next(j for j in scheduler.get_jobs() if j.id == "karbon_incremental_sync")
        assert job.trigger.interval == timedelta(minutes=30)

    def test_overlapping_runs_not_allowed(self):
        scheduler = build_scheduler(MagicMock())
        job = next(j for j in scheduler.get_jobs() if j.id == "karbon_incremental_sync")
        assert job.max_instances == 1
        assert job.coalesce is True

    def test_scheduler_not_running_on_creation(self):
        """build_scheduler should not auto-start."""
        engine = MagicMock()
        scheduler = build_scheduler(engine)
        assert not scheduler.running


# ─── _incremental_sync job body ───────────────────────────────────────────────

def make_mock_client():
    client = AsyncMock()
    client.__aenter__.return_value = client
    return client


def make_summary():
    summary = MagicMock()
    summary.synced = 3
    summary.updated = 1
    summary.errors = 0
    return summary


class TestIncrementalSyncJob:
    """Tests for the _incremental_sync() async function.

    KarbonClient and KarbonSyncService are lazily imported inside the
    function body, so they are patched at their source module paths.
    """

    @pytest.mark.asyncio
    async def test_runs_incremental_sync(self):
        mock_engine = MagicMock()
        mock_client = make_mock_client()
        mock_service = AsyncMock()
        mock_service.run = AsyncMock(return_value=make_summary())

        with patch("mottahub.karbon.client.KarbonClient") as mock_client_cls, \
             patch("mottahub.karbon.sync_service.KarbonSyncService", return_value=mock_service) as mock_service_cls:
            mock_client_cls.from_settings.return_value = mock_client
            await _incremental_sync(engine=mock_engine)

        mock_service_cls.assert_called_once_with(client=mock_client, engine=mock_engine)
        mock_service.run.assert_awaited_once_with(incremental=True, trigger="scheduled")

    @pytest.mark.asyncio
    async def test_closes_client(self):
        mock_client = make_mock_client()
        mock_service = AsyncMock()
        mock_service.run = AsyncMock(return_value=make_summary())

        with patch("mottahub.karbon.client.KarbonClient") as mock_client_cls, \
             patch("mottahub.karbon.sync_service.KarbonSyncService", return_value=mock_service):
            mock_client_cls.from_settings.return_value = mock_client
            await _incremental_sync(engine=MagicMock())

        mock_client.__aexit__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_credentials_do_not_propagate(self):
        """The job logs and returns so the scheduler stays alive."""
        with patch("mottahub.karbon.client.KarbonClient") as mock_client_cls:
            mock_client_cls.from_settings.side_effect = KarbonCredentialsError("not configured")
            # Should not raise
            await _incremental_sync(engine=MagicMock())

    @pytest.mark.asyncio
    async def test_exception_does_not_propagate(self):
        mock_client = make_mock_client()
        mock_service = AsyncMock()
        mock_service.run.side_effect = Exception("database is locked")

        with patch("mottahub.karbon.client.KarbonClient") as mock_client_cls, \
             patch("mottahub.karbon.sync_service.KarbonSyncService", return_value=mock_service):
            mock_client_cls.from_settings.return_value = mock_client
            # Should not raise
            await _incremental_sync(engine=MagicMock())
