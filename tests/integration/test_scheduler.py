"""
Integration tests for ordersync/scheduler.py
"""
from types import SimpleNamespace

import pytest

from ordersync.exceptions import SyncAlreadyRunningError
from ordersync.scheduler import BackgroundScheduler, JobStatus
from ordersync.sync_service import SyncResult, SyncState


class StubOrchestrator:

    def __init__(self, busy: bool = False, state: SyncState = SyncState.COMPLETED):
        self.busy = busy
        self.state = state
        self.requests = []

    async def run(self, request):
        if self.busy:
            raise SyncAlreadyRunningError("recent_orders")
        self.requests.append(request)
        return SyncResult(run_id="r1", sync_type="processed_orders", stream_name="recent_orders", state=self.state)

    async def retry_failed_syncs(self, limit=None):
        if self.busy:
            raise SyncAlreadyRunningError("failed_order_retry")
        return {"attempted": 0, "resolved": 0, "rescheduled": 0}


def _factory(orchestrator):
    async def factory():
        return orchestrator
    return factory


class TestJobs:

    @pytest.mark.asyncio
    async def test_incremental_sync_runs_as_scheduler(self):
        orchestrator = StubOrchestrator()
        scheduler = BackgroundScheduler(orchestrator_factory=_factory(orchestrator))

        outcome = await scheduler._run_incremental_sync()

        assert outcome["status"] == "success"
        assert orchestrator.requests[0].started_by == "scheduler"
        assert not orchestrator.requests[0].historical

    @pytest.mark.asyncio
    async def test_busy_lock_is_skipped(self):
        scheduler = BackgroundScheduler(orchestrator_factory=_factory(StubOrchestrator(busy=True)))

        assert (await scheduler._run_incremental_sync())["status"] == "skipped"
        assert (await scheduler._run_retry_failed_syncs())["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_stopped_run_is_skipped(self):
        scheduler = BackgroundScheduler(orchestrator_factory=_factory(StubOrchestrator(state=SyncState.STOPPED)))

        outcome = await scheduler._run_incremental_sync()
        assert outcome["status"] == "skipped"
        assert outcome["reason"] == "stopped"

    @pytest.mark.asyncio
    async def test_retry_job(self):
        scheduler = BackgroundScheduler(orchestrator_factory=_factory(StubOrchestrator()))

        outcome = await scheduler._run_retry_failed_syncs()
        assert outcome == {"status": "success", "attempted": 0, "resolved": 0, "rescheduled": 0}


class TestScheduler:

    @pytest.mark.asyncio
    async def test_registers_jobs(self):
        scheduler = BackgroundScheduler(orchestrator_factory=_factory(StubOrchestrator()))
        await scheduler.start()
        try:
            assert scheduler.is_running
            ids = {job["id"] for job in scheduler.get_jobs()}
            assert ids == {"incremental_sync", "retry_failed_syncs"}
        finally:
            scheduler.shutdown(wait=False)
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_skipped_run_recorded(self):
        scheduler = BackgroundScheduler(orchestrator_factory=_factory(StubOrchestrator()))
        await scheduler.start()
        try:
            scheduler._on_job_executed(SimpleNamespace(
                job_id="incremental_sync", retval={"status": "skipped"}, scheduled_run_time=None
            ))
            scheduler._on_job_executed(SimpleNamespace(
                job_id="incremental_sync", retval={"status": "success"}, scheduled_run_time=None
            ))

            job = next(j for j in scheduler.get_jobs() if j["id"] == "incremental_sync")
            assert job["run_count"] == 2
            assert job["skip_count"] == 1
            assert job["last_status"] == JobStatus.SUCCESS.value

            history = scheduler.get_job_history("incremental_sync")
            assert [h["status"] for h in history] == ["success", "skipped"]
        finally:
            scheduler.shutdown(wait=False)

    @pytest.mark.asyncio
    async def test_error_recorded(self):
        scheduler = BackgroundScheduler(orchestrator_factory=_factory(StubOrchestrator()))
        await scheduler.start()
        try:
            scheduler._on_job_error(SimpleNamespace(
                job_id="retry_failed_syncs", exception=RuntimeError("db locked"), scheduled_run_time=None
            ))

            job = next(j for j in scheduler.get_jobs() if j["id"] == "retry_failed_syncs")
            assert job["error_count"] == 1
            assert job["last_error"] == "db locked"
        finally:
            scheduler.shutdown(wait=False)

    def test_unknown_job(self):
        with pytest.raises(ValueError):
            BackgroundScheduler().run_job_now("nope")
