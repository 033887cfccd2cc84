"""
Background job scheduler using APScheduler.

Jobs:
- Incremental sync (every SYNC_INTERVAL_MINUTES, default 15)
- Failed order retry (hourly)

Features:
- Job execution history
- Prevents job pile-up (max_instances=1, coalesce)
- A run rejected by the unique-run lock is recorded as skipped, not failed
- Graceful shutdown
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ordersync.config import config
from ordersync.exceptions import SyncAlreadyRunningError
from ordersync.observability import get_logger

logger = get_logger(__name__)

SCHEDULER_TIMEZONE = timezone.utc


class JobStatus(Enum):
    """Job execution status."""
    RUNNING = "running"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of a job execution."""
    job_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: JobStatus = JobStatus.RUNNING
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


@dataclass
class JobInfo:
    """Information about a scheduled job."""
    id: str
    name: str
    description: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[JobStatus] = None
    run_count: int = 0
    skip_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class BackgroundScheduler:
    """
    Background job scheduler with monitoring.

    Usage:
        scheduler = BackgroundScheduler()
        await scheduler.start()

        # Later...
        scheduler.shutdown()
    """

    def __init__(self, orchestrator_factory: Optional[Callable[[], Awaitable[Any]]] = None):
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job_history: Dict[str, List[JobExecution]] = {}
        self._job_info: Dict[str, JobInfo] = {}
        self._max_history = 50
        self._started = False
        self._orchestrator_factory = orchestrator_factory

    async def start(self) -> None:
        """Start the scheduler and register all jobs."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)

        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._register_jobs()

        self._scheduler.start()
        self._started = True
        logger.info("Background scheduler started")

    def _register_jobs(self) -> None:
        """Register all background jobs."""
        self._add_job(
            job_id="incremental_sync",
            name="Incremental Sync",
            description="Reconcile open orders and import processed orders since the checkpoint",
            func=self._run_incremental_sync,
            trigger=IntervalTrigger(minutes=config.sync.incremental_interval_minutes),
        )

        self._add_job(
            job_id="retry_failed_syncs",
            name="Retry Failed Orders",
            description="Re-import orders whose earlier import failed",
            func=self._run_retry_failed_syncs,
            trigger=CronTrigger(minute=5),
        )

    def _add_job(
        self,
        job_id: str,
        name: str,
        description: str,
        func: Callable,
        trigger,
        max_instances: int = 1,
        coalesce: bool = True,
    ) -> None:
        """Add a job to the scheduler."""
        job = self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=name,
            max_instances=max_instances,
            coalesce=coalesce,
            replace_existing=True,
        )

        self._job_info[job_id] = JobInfo(id=job_id, name=name, description=description)
        self._job_history[job_id] = []

        # next_run_time is only set once the scheduler has started
        next_run = getattr(job, "next_run_time", None)
        if next_run:
            self._job_info[job_id].next_run = next_run

    async def _get_orchestrator(self):
        if self._orchestrator_factory is not None:
            return await self._orchestrator_factory()
        from ordersync.sync_service import get_sync_orchestrator
        return await get_sync_orchestrator()

    # ═══════════════════════════════════════════════════════════════════════════
    # JOB IMPLEMENTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _run_incremental_sync(self) -> Dict[str, Any]:
        """Run incremental sync job."""
        from ordersync.sync_service import SyncRequest, SyncState

        orchestrator = await self._get_orchestrator()
        try:
            result = await orchestrator.run(
                SyncRequest(batch_size=config.sync.batch_size, started_by="scheduler")
            )
        except SyncAlreadyRunningError as e:
            logger.info(f"Incremental sync skipped: {e}", extra={"job_id": "incremental_sync"})
            return {"status": "skipped", "reason": str(e)}

        logger.debug("Incremental sync job complete", extra={"stats": result.to_dict()})
        if result.state == SyncState.STOPPED:
            return {"status": "skipped", "reason": "stopped", **result.to_dict()}
        return {"status": "success", **result.to_dict()}

    async def _run_retry_failed_syncs(self) -> Dict[str, Any]:
        """Run failed order retry job."""
        orchestrator = await self._get_orchestrator()
        try:
            stats = await orchestrator.retry_failed_syncs(limit=config.sync.failed_retry_limit)
        except SyncAlreadyRunningError as e:
            logger.info(f"Failed order retry skipped: {e}", extra={"job_id": "retry_failed_syncs"})
            return {"status": "skipped", "reason": str(e)}

        return {"status": "success", **stats}

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _refresh_next_run(self, info: JobInfo) -> None:
        job = self._scheduler.get_job(info.id) if self._scheduler else None
        if job and job.next_run_time:
            info.next_run = job.next_run_time

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        """Handle a finished job; a skipped run is recorded as such."""
        job_id = event.job_id
        if job_id not in self._job_info:
            return

        retval = getattr(event, "retval", None)
        skipped = isinstance(retval, dict) and retval.get("status") == "skipped"
        status = JobStatus.SKIPPED if skipped else JobStatus.SUCCESS

        info = self._job_info[job_id]
        finished_at = datetime.now(SCHEDULER_TIMEZONE)
        info.last_run = finished_at
        info.last_status = status
        info.run_count += 1
        if skipped:
            info.skip_count += 1
        self._refresh_next_run(info)

        started_at = event.scheduled_run_time or finished_at
        self._add_execution(job_id, JobExecution(
            job_id=job_id,
            started_at=started_at,
            finished_at=finished_at,
            status=status,
            duration_ms=(finished_at - started_at).total_seconds() * 1000,
            result=retval if isinstance(retval, dict) else None,
        ))

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        """Handle job execution error."""
        job_id = event.job_id
        if job_id not in self._job_info:
            return

        info = self._job_info[job_id]
        info.last_run = datetime.now(SCHEDULER_TIMEZONE)
        info.last_status = JobStatus.FAILED
        info.run_count += 1
        info.error_count += 1
        info.last_error = str(event.exception) if event.exception else "Unknown error"
        self._refresh_next_run(info)

        self._add_execution(job_id, JobExecution(
            job_id=job_id,
            started_at=event.scheduled_run_time or info.last_run,
            finished_at=info.last_run,
            status=JobStatus.FAILED,
            error=info.last_error,
        ))

        logger.error(
            f"Job {job_id} failed: {info.last_error}",
            extra={"job_id": job_id, "error": info.last_error},
        )

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        """Handle missed job execution."""
        job_id = event.job_id
        if job_id not in self._job_info:
            return

        self._job_info[job_id].last_status = JobStatus.MISSED
        now = datetime.now(SCHEDULER_TIMEZONE)
        self._add_execution(job_id, JobExecution(
            job_id=job_id, started_at=now, finished_at=now, status=JobStatus.MISSED
        ))

        logger.warning(f"Job {job_id} missed scheduled execution", extra={"job_id": job_id})

    def _add_execution(self, job_id: str, execution: JobExecution) -> None:
        """Add execution to history, keeping only last N."""
        history = self._job_history.setdefault(job_id, [])
        history.append(execution)
        if len(history) > self._max_history:
            self._job_history[job_id] = history[-self._max_history:]

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Get list of all jobs with their status."""
        jobs = []
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            jobs.append({
                "id": info.id,
                "name": info.name,
                "description": info.description,
                "trigger": str(job.trigger) if job and job.trigger else "",
                "next_run": info.next_run.isoformat() if info.next_run else None,
                "last_run": info.last_run.isoformat() if info.last_run else None,
                "last_status": info.last_status.value if info.last_status else None,
                "run_count": info.run_count,
                "skip_count": info.skip_count,
                "error_count": info.error_count,
                "last_error": info.last_error,
            })
        return jobs

    def get_job_history(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Get execution history for a job, newest first."""
        history = self._job_history.get(job_id, [])[-limit:]
        return [{
            "started_at": e.started_at.isoformat() if e.started_at else None,
            "finished_at": e.finished_at.isoformat() if e.finished_at else None,
            "status": e.status.value,
            "duration_ms": e.duration_ms,
            "error": e.error,
        } for e in reversed(history)]

    def run_job_now(self, job_id: str) -> Dict[str, Any]:
        """Move a job's next run to now."""
        if job_id not in self._job_info:
            raise ValueError(f"Unknown job: {job_id}")

        logger.info(f"Manually triggering job: {job_id}")
        self._scheduler.get_job(job_id).modify(next_run_time=datetime.now(SCHEDULER_TIMEZONE))
        return {"status": "triggered", "job_id": job_id}

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown the scheduler."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Background scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_scheduler: Optional[BackgroundScheduler] = None


def get_scheduler() -> BackgroundScheduler:
    """Get the singleton scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler()
    return _scheduler


async def start_scheduler() -> BackgroundScheduler:
    """Start the background scheduler."""
    scheduler = get_scheduler()
    await scheduler.start()
    return scheduler


def stop_scheduler() -> None:
    """Stop the background scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown()
        _scheduler = None
