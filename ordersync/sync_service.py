"""
Sync orchestrator for keeping DuckDB in sync with the remote order API.

One run moves through:
    idle -> fetching_open_ids -> fetching_processed_ids -> importing -> completed | stopped | failed

Features:
- Incremental sync: open-order reconciliation plus processed orders since the
  stored watermark
- Historical import: an explicit window searched by processed date
- Open-orders fan-out: fetch all open ids, then dispatch independent import jobs
- Failed-order retry: re-import orders whose earlier import failed
- Observability: correlation ids, progress snapshots and events
"""
import asyncio
import gc
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ordersync.checkpoint import CheckpointTracker, SyncProgress, SyncProgressLog
from ordersync.config import ConfigurationError, SyncConfig, config
from ordersync.events import (
    EventBus,
    SyncEvent,
    emit_orders_synced,
    emit_sync_completed,
    emit_sync_progress,
    emit_sync_started,
    events,
)
from ordersync.exceptions import GatewayError, SyncAlreadyRunningError, ValidationError
from ordersync.fetcher import BatchDetailFetcher
from ordersync.gateway import CredentialProvider, OrderGateway
from ordersync.importer import BulkImporter, ImportMode
from ordersync.jobs import ImportJobGroup, JobGroupResult
from ordersync.models import DateField, ImportResult, ImportSource, ProcessedOrderFilters, SyncType
from ordersync.observability import correlation_context, get_logger
from ordersync.pagination import PageProgress, ProcessedOrderIdStream
from ordersync.reconciler import OpenOrderReconciler, ReconcileResult
from ordersync.resilience import RetryPolicy, SleepFunc
from ordersync.store import OrderStore, get_store
from ordersync.validators import validate_batch_size

logger = get_logger(__name__)

RECENT_STREAM = "recent_orders"
HISTORICAL_STREAM = "historical_orders"
OPEN_ORDERS_STREAM = "open_orders"
RETRY_STREAM = "failed_order_retry"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING_OPEN_IDS = "fetching_open_ids"
    FETCHING_PROCESSED_IDS = "fetching_processed_ids"
    IMPORTING = "importing"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class SyncRequest:
    """Parameters of one orchestrator run, as given by the CLI or scheduler."""
    historical: bool = False
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    batch_size: int = 200
    dry_run: bool = False
    force: bool = False
    only_missing: bool = False
    started_by: str = "system"
    date_field: Optional[str] = None

    @property
    def stream_name(self) -> str:
        return HISTORICAL_STREAM if self.historical else RECENT_STREAM

    @property
    def sync_type(self) -> SyncType:
        return SyncType.HISTORICAL_ORDERS if self.historical else SyncType.PROCESSED_ORDERS

    @property
    def import_mode(self) -> ImportMode:
        if self.force:
            return ImportMode.REIMPORT
        if self.only_missing:
            return ImportMode.ONLY_MISSING
        return ImportMode.MERGE


@dataclass
class SyncResult:
    run_id: str
    sync_type: str
    stream_name: str
    state: SyncState = SyncState.IDLE
    dry_run: bool = False
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    counts: ImportResult = field(default_factory=ImportResult)
    fetched: int = 0
    batches: int = 0
    fatal_batches: int = 0
    open_ids_found: int = 0
    reconciled: Optional[ReconcileResult] = None
    sync_log_id: Optional[int] = None
    cache_signal_emitted: bool = False
    cache_skip_reason: Optional[str] = None
    duration_ms: float = 0.0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == SyncState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "sync_type": self.sync_type,
            "stream": self.stream_name,
            "state": self.state.value,
            "dry_run": self.dry_run,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            **self.counts.to_dict(),
            "fetched": self.fetched,
            "batches": self.batches,
            "fatal_batches": self.fatal_batches,
            "open_ids_found": self.open_ids_found,
            "marked_closed": self.reconciled.marked_closed if self.reconciled else 0,
            "sync_log_id": self.sync_log_id,
            "cache_signal_emitted": self.cache_signal_emitted,
            "cache_skip_reason": self.cache_skip_reason,
            "duration_ms": round(self.duration_ms, 2),
            "error": self.error,
        }


def decide_cache_signal(
    *,
    dry_run: bool,
    historical: bool,
    processed: int,
    fatal_batches: int,
    window_end: Optional[datetime],
    now: datetime,
    lookback_days: int = 730,
    stopped: bool = False,
) -> Tuple[bool, Optional[str]]:
    """
    Decide whether a finished run may emit ORDERS_SYNCED.

    Returns:
        (emit, skip_reason); skip_reason is None when emit is True
    """
    if dry_run:
        return False, "dry_run"
    if stopped:
        return False, "stopped"
    if processed < 1:
        return False, "zero_processed"
    if fatal_batches > 0:
        return False, "failures_present"
    if historical and window_end is not None and window_end < now - timedelta(days=lookback_days):
        return False, "outside_cache_window"
    return True, None


@dataclass
class _Run:
    """Mutable state of the run in progress."""
    request: SyncRequest
    result: SyncResult
    log: SyncProgressLog
    tracker: Optional[CheckpointTracker]
    fetcher: BatchDetailFetcher
    importer: BulkImporter
    started: float
    page: Optional[PageProgress] = None
    total_expected: Optional[int] = None
    stopped: bool = False


class SyncOrchestrator:
    """
    Runs sync streams against the order store.

    Usage:
        orchestrator = await get_sync_orchestrator()
        result = await orchestrator.run(SyncRequest(batch_size=200))
        result = await orchestrator.run(SyncRequest(historical=True, from_date=start, to_date=end))
    """

    def __init__(
        self,
        store: OrderStore,
        gateway: OrderGateway,
        bus: EventBus = None,
        sleep: SleepFunc = asyncio.sleep,
        sync_config: SyncConfig = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.bus = bus or events
        self.sleep = sleep
        self.sync_config = sync_config or config.sync
        self._clock = clock
        self._stop_sync = False
        self._active_runs = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self.state = SyncState.IDLE

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.sync_config.max_attempts,
            base_delay=self.sync_config.base_backoff_seconds,
            multiplier=self.sync_config.backoff_multiplier,
        )

    def stop(self) -> None:
        """Ask a running sync to finish after the current page."""
        self._stop_sync = True
        logger.info("Sync stop requested")

    def _should_stop(self) -> bool:
        return self._stop_sync

    @property
    def is_busy(self) -> bool:
        return self._active_runs > 0

    @asynccontextmanager
    async def _in_flight(self):
        self._active_runs += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._active_runs -= 1
            if self._active_runs == 0:
                self._idle.set()

    async def shutdown(self, timeout: float = None) -> bool:
        """
        Ask any run in flight to stop and wait for it to finish.

        Returns:
            True when no run is left in flight, False when ``timeout``
            seconds passed first
        """
        timeout = timeout if timeout is not None else self.sync_config.shutdown_timeout_seconds
        if not self.is_busy:
            return True

        self.stop()
        logger.info("Waiting for sync in flight to finish", extra={"active_runs": self._active_runs, "timeout": timeout})
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Sync still running at shutdown", extra={"active_runs": self._active_runs})
            return False
        return True

    def _ensure_configured(self) -> None:
        if not self.gateway.is_configured:
            raise ConfigurationError(
                "Remote order API credentials are not configured "
                "(LINNWORKS_APP_ID, LINNWORKS_APP_SECRET, LINNWORKS_TOKEN)"
            )

    def _set_state(self, run: Optional[_Run], state: SyncState) -> None:
        self.state = state
        if run is not None:
            run.result.state = state
        logger.debug(f"Sync state -> {state.value}")

    # ═══════════════════════════════════════════════════════════════════════════
    # LOCKING
    # ═══════════════════════════════════════════════════════════════════════════

    async def _acquire(self, lock_name: str, stream_name: str, owner: str) -> None:
        acquired = await self.store.acquire_lock(
            lock_name, owner, self.sync_config.lock_ttl_seconds, self._clock()
        )
        if not acquired:
            held = await self.store.get_lock(lock_name)
            raise SyncAlreadyRunningError(stream_name, held["expires_at"] if held else None)

    async def _release(self, lock_name: str, owner: str) -> None:
        released = await self.store.release_lock(lock_name, owner)
        if not released:
            logger.warning("Sync lock was no longer held at release", extra={"lock": lock_name, "owner": owner})

    # ═══════════════════════════════════════════════════════════════════════════
    # MAIN RUN
    # ═══════════════════════════════════════════════════════════════════════════

    async def run(self, request: SyncRequest) -> SyncResult:
        """
        Run one incremental or historical sync.

        Raises:
            ConfigurationError: gateway credentials missing; nothing was touched
            ValidationError: bad batch size or historical window
            SyncAlreadyRunningError: another run of the stream holds the lock
            GatewayError: a batch failed for good; log and checkpoint marked failed
        """
        self._ensure_configured()
        batch_size = validate_batch_size(request.batch_size, self.gateway.config.max_batch_size)
        now = self._clock()
        window = self._historical_window(request, now) if request.historical else None

        lock_name = f"sync:{request.stream_name}"
        if window is not None:
            lock_name = f"{lock_name}:{window[0].date().isoformat()}:{window[1].date().isoformat()}"

        async with self._in_flight():
            with correlation_context() as run_id:
                await self._acquire(lock_name, request.stream_name, run_id)
                self._stop_sync = False
                try:
                    return await self._run_locked(request, run_id, batch_size, window)
                finally:
                    await self._release(lock_name, run_id)
                    self.state = SyncState.IDLE

    def _historical_window(self, request: SyncRequest, now: datetime) -> Tuple[datetime, datetime]:
        end = request.to_date or now
        start = request.from_date or datetime.combine(
            (end - timedelta(days=30)).date(), dt_time.min
        )
        if start > end:
            raise ValidationError("date_range", "Start date must be before or equal to end date", f"{start} to {end}")
        span_days = (end.date() - start.date()).days
        if span_days > self.sync_config.max_historical_days:
            raise ValidationError(
                "date_range",
                f"Date range cannot exceed {self.sync_config.max_historical_days} days",
                f"{span_days} days",
            )
        return start, end

    async def _incremental_window(self, request: SyncRequest, now: datetime) -> Tuple[Optional[CheckpointTracker], datetime]:
        """Checkpoint tracker (None for dry runs, which must not write) and window start."""
        if request.dry_run:
            row = await self.store.get_checkpoint(request.stream_name, "linnworks")
            if row is not None:
                return None, row["last_sync_at"]
            return None, now - timedelta(days=self.sync_config.default_incremental_days)

        tracker = await CheckpointTracker.get_or_create(
            self.store,
            request.stream_name,
            default_days=self.sync_config.default_incremental_days,
            clock=self._clock,
        )
        return tracker, tracker.get_incremental_start_date()

    async def _run_locked(
        self,
        request: SyncRequest,
        run_id: str,
        batch_size: int,
        window: Optional[Tuple[datetime, datetime]],
    ) -> SyncResult:
        now = self._clock()
        sync_type = request.sync_type.value

        if window is None:
            tracker, window_start = await self._incremental_window(request, now)
            window_end = now
        else:
            window_start, window_end = window
            tracker = None
            if not request.dry_run:
                tracker = await CheckpointTracker.get_or_create(
                    self.store, request.stream_name, clock=self._clock
                )

        try:
            if tracker is not None:
                await tracker.start_sync()
            log = await SyncProgressLog.start(
                self.store,
                sync_type,
                metadata={
                    "run_id": run_id,
                    "started_by": request.started_by,
                    "stream": request.stream_name,
                    "window_start": window_start.isoformat(),
                    "window_end": window_end.isoformat(),
                    "batch_size": batch_size,
                    "mode": request.import_mode.value,
                    "dry_run": request.dry_run,
                },
                persist=not request.dry_run,
                clock=self._clock,
            )
        except Exception as e:
            logger.error(f"Could not start {sync_type} sync: {e}", extra={"error_class": type(e).__name__})
            if tracker is not None:
                await tracker.fail_sync(str(e))
            raise

        result = SyncResult(
            run_id=run_id,
            sync_type=sync_type,
            stream_name=request.stream_name,
            dry_run=request.dry_run,
            window_start=window_start,
            window_end=window_end,
            sync_log_id=log.log_id,
        )
        run = _Run(
            request=request,
            result=result,
            log=log,
            tracker=tracker,
            fetcher=BatchDetailFetcher(
                self.gateway, policy=self.retry_policy, sleep=self.sleep, bus=self.bus, sync_type=sync_type
            ),
            importer=BulkImporter(
                self.store,
                mode=request.import_mode,
                dry_run=request.dry_run,
                sync_type=sync_type,
                clock=self._clock,
            ),
            started=time.monotonic(),
        )

        logger.info(
            f"Starting {sync_type} sync",
            extra={
                "run_id": run_id,
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
                "dry_run": request.dry_run,
                "mode": request.import_mode.value,
            },
        )
        await emit_sync_started(
            sync_type,
            bus=self.bus,
            run_id=run_id,
            window_start=window_start.isoformat(),
            window_end=window_end.isoformat(),
            dry_run=request.dry_run,
        )

        try:
            if not request.historical:
                self._set_state(run, SyncState.FETCHING_OPEN_IDS)
                await self._sync_open_stage(run, batch_size)

            self._set_state(run, SyncState.FETCHING_PROCESSED_IDS)
            await self._sync_processed_stage(run, batch_size)
        except Exception as e:
            await self._fail_run(run, e)
            raise

        await self._complete_run(run)
        return run.result

    # ═══════════════════════════════════════════════════════════════════════════
    # STAGES
    # ═══════════════════════════════════════════════════════════════════════════

    async def _sync_open_stage(self, run: _Run, batch_size: int) -> None:
        open_ids = await self.gateway.list_open_order_ids()
        run.result.open_ids_found = len(open_ids)
        logger.info(f"Found {len(open_ids)} open orders", extra={"open_ids": len(open_ids)})

        reconciler = OpenOrderReconciler(
            self.store, grace=timedelta(minutes=self.sync_config.open_grace_minutes), clock=self._clock
        )
        closed_ids: List[str] = []
        if run.request.dry_run:
            logger.info("Dry run: open/closed reconciliation skipped")
        else:
            run.result.reconciled = await reconciler.reconcile(open_ids)
            closed_ids = run.result.reconciled.closed_ids

        missing = await reconciler.missing_ids(open_ids)
        if len(missing) > self.sync_config.max_open_orders:
            logger.warning(
                f"Capping new open orders at {self.sync_config.max_open_orders}",
                extra={"missing": len(missing)},
            )
            missing = missing[: self.sync_config.max_open_orders]

        if missing or closed_ids:
            self._set_state(run, SyncState.IMPORTING)
        await self._import_chunks(run, missing, batch_size, ImportSource.OPEN)

        # Orders gone from the open list may predate the watermark
        if closed_ids:
            logger.info(f"Refreshing {len(closed_ids)} orders that left the open list", extra={"closed": len(closed_ids)})
        await self._import_chunks(run, closed_ids, batch_size, ImportSource.PROCESSED)

    async def _import_chunks(self, run: _Run, order_ids: List[str], batch_size: int, source: ImportSource) -> None:
        for start in range(0, len(order_ids), batch_size):
            if self._should_stop():
                logger.info("Stop requested, ending open-order imports", extra={"remaining": len(order_ids) - start})
                run.stopped = True
                return
            await self._import_batch(run, order_ids[start:start + batch_size], source)

    async def _sync_processed_stage(self, run: _Run, batch_size: int) -> None:
        request = run.request
        if request.historical:
            filters = ProcessedOrderFilters.for_historical_import()
        else:
            filters = ProcessedOrderFilters.for_recent_sync(
                DateField(request.date_field or self.sync_config.default_date_field)
            )

        def on_page(progress: PageProgress) -> None:
            run.page = progress
            run.total_expected = progress.total_results

        stream = ProcessedOrderIdStream(
            self.gateway,
            run.result.window_start,
            run.result.window_end,
            filters=filters,
            page_size=batch_size,
            progress=on_page,
            should_stop=self._should_stop,
        )

        async for order_ids in stream:
            self._set_state(run, SyncState.IMPORTING)
            await self._import_batch(run, order_ids, ImportSource.PROCESSED)
        run.stopped = run.stopped or stream.stopped_early

        await run.log.merge_metadata(
            pages=stream.current_page,
            total_pages=stream.total_pages,
            total_results=stream.total_results,
            stopped_early=stream.stopped_early,
        )

    async def _import_batch(self, run: _Run, order_ids: List[str], source: ImportSource) -> None:
        result = run.result
        result.batches += 1
        batch_number = result.batches

        details = await run.fetcher.fetch(order_ids, batch_number)
        batch = await run.importer.import_batch(details, source)
        fetched = len(details)
        del details

        result.fetched += fetched
        result.counts = result.counts + batch
        await run.log.increment(
            fetched=fetched,
            created=batch.created,
            updated=batch.updated,
            skipped=batch.skipped,
            failed=batch.failed,
        )

        await self._after_batch(run, batch_number)

    async def _after_batch(self, run: _Run, batch_number: int) -> None:
        result = run.result
        elapsed = time.monotonic() - run.started

        await self.bus.emit(
            SyncEvent.PERFORMANCE_UPDATE,
            {
                "sync_type": result.sync_type,
                "batch_number": batch_number,
                "fetched": result.fetched,
                "elapsed_seconds": round(elapsed, 2),
                "orders_per_second": round(result.fetched / elapsed, 2) if elapsed > 0 else None,
            },
        )

        if batch_number % self.sync_config.progress_every_batches == 0:
            await self._report_progress(run, f"Imported {result.fetched} orders in {batch_number} batches")

        if batch_number % self.sync_config.gc_every_batches == 0:
            collected = gc.collect()
            logger.debug("GC after batch", extra={"batch_number": batch_number, "collected": collected})

    async def _report_progress(self, run: _Run, message: str) -> None:
        result = run.result
        page = run.page
        progress = SyncProgress(
            stage=result.state.value,
            message=message,
            percent=page.percent if page else None,
            current_page=page.page if page else None,
            total_pages=page.total_pages if page else None,
            fetched_count=page.fetched_count if page else 0,
            total_expected=run.total_expected,
            current_batch=result.batches,
            processed=result.counts.processed,
            created=result.counts.created,
            updated=result.counts.updated,
            failed=result.counts.failed,
        )
        await run.log.update_progress(progress)
        await emit_sync_progress(result.sync_type, progress.to_dict(), bus=self.bus)
        logger.info(message, extra={"sync_type": result.sync_type, "counts": result.counts.to_dict()})

    # ═══════════════════════════════════════════════════════════════════════════
    # FINALIZATION
    # ═══════════════════════════════════════════════════════════════════════════

    async def _complete_run(self, run: _Run) -> None:
        """
        Finalize a run that left its stages without an error.

        A stopped run did not cover its whole window: its checkpoint keeps
        the old watermark and no ORDERS_SYNCED signal is sent.
        """
        result = run.result
        request = run.request
        self._set_state(run, SyncState.STOPPED if run.stopped else SyncState.COMPLETED)
        result.duration_ms = (time.monotonic() - run.started) * 1000

        emit, reason = decide_cache_signal(
            dry_run=request.dry_run,
            historical=request.historical,
            processed=result.counts.processed,
            fatal_batches=result.fatal_batches,
            window_end=result.window_end,
            now=self._clock(),
            lookback_days=self.sync_config.cache_lookback_days,
            stopped=run.stopped,
        )
        result.cache_skip_reason = reason

        await run.log.merge_metadata(
            batches=result.batches,
            duration_ms=round(result.duration_ms, 2),
            cache_signal="emitted" if emit else f"skipped:{reason}",
        )
        checkpoint_metadata = {
            "run_id": result.run_id,
            "sync_log_id": result.sync_log_id,
            "window_start": result.window_start.isoformat(),
            "window_end": result.window_end.isoformat(),
            "batches": result.batches,
        }

        if run.stopped:
            await run.log.stop(result.counts, fetched=result.fetched)
            if run.tracker is not None:
                await run.tracker.stop_sync(result.counts, metadata=checkpoint_metadata)
            logger.warning(
                f"{result.sync_type} sync stopped before covering its window",
                extra={"batches": result.batches, "fetched": result.fetched, "counts": result.counts.to_dict()},
            )
        else:
            await run.log.complete(result.counts, fetched=result.fetched)
            if run.tracker is not None:
                await run.tracker.complete_sync(result.counts, metadata=checkpoint_metadata, watermark=result.window_end)
            logger.info(
                f"{result.sync_type} sync complete",
                extra={"duration_ms": round(result.duration_ms, 2), "fetched": result.fetched, "counts": result.counts.to_dict()},
            )

        await emit_sync_completed(
            result.sync_type,
            not run.stopped,
            result.duration_ms,
            bus=self.bus,
            run_id=result.run_id,
            stopped=run.stopped,
            **result.counts.to_dict(),
        )

        if emit:
            await emit_orders_synced(result.counts.processed, result.sync_type, bus=self.bus)
            result.cache_signal_emitted = True
        else:
            logger.info(f"Skipping sync completed signal: {reason}", extra={"sync_type": result.sync_type})

    async def _fail_run(self, run: _Run, error: Exception) -> None:
        result = run.result
        self._set_state(run, SyncState.FAILED)
        result.duration_ms = (time.monotonic() - run.started) * 1000
        result.error = str(error)

        logger.error(
            f"{result.sync_type} sync failed: {error}",
            extra={
                "error_class": type(error).__name__,
                "batches": result.batches,
                "fetched": result.fetched,
                "counts": result.counts.to_dict(),
            },
        )

        if not run.log.is_finalized:
            await run.log.merge_metadata(batches=result.batches, failed_batch=result.batches)
            await run.log.fail(str(error))
        if run.tracker is not None:
            await run.tracker.fail_sync(str(error))

        await emit_sync_completed(
            result.sync_type,
            False,
            result.duration_ms,
            bus=self.bus,
            run_id=result.run_id,
            error=str(error),
            **result.counts.to_dict(),
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # OPEN ORDERS FAN-OUT
    # ═══════════════════════════════════════════════════════════════════════════

    async def sync_open_orders(self, batch_size: int = 200) -> SyncResult:
        """
        Fetch every open id, then import new open orders as independent jobs.
        Orders that just left the open list are refreshed the same way.

        Each job fetches and imports one chunk in its own transaction and adds
        its counts to the shared sync log. A failed job does not stop the
        others; it counts as a fatal batch for the cache signal.
        """
        self._ensure_configured()
        batch_size = validate_batch_size(batch_size, self.gateway.config.max_batch_size)
        lock_name = f"sync:{OPEN_ORDERS_STREAM}"
        sync_type = SyncType.OPEN_ORDERS.value

        async with self._in_flight():
            with correlation_context() as run_id:
                await self._acquire(lock_name, OPEN_ORDERS_STREAM, run_id)
                try:
                    started = time.monotonic()
                    log = await SyncProgressLog.start(
                        self.store, sync_type, metadata={"run_id": run_id, "batch_size": batch_size}, clock=self._clock
                    )
                    result = SyncResult(
                        run_id=run_id, sync_type=sync_type, stream_name=OPEN_ORDERS_STREAM, sync_log_id=log.log_id
                    )
                    await emit_sync_started(sync_type, bus=self.bus, run_id=run_id)

                    try:
                        missing = await self._prepare_open_fanout(result)
                    except Exception as e:
                        result.state = SyncState.FAILED
                        result.error = str(e)
                        result.duration_ms = (time.monotonic() - started) * 1000
                        await log.fail(str(e))
                        await emit_sync_completed(
                            sync_type, False, result.duration_ms, bus=self.bus, run_id=run_id, error=str(e)
                        )
                        raise

                    fetcher = BatchDetailFetcher(
                        self.gateway, policy=self.retry_policy, sleep=self.sleep, bus=self.bus, sync_type=sync_type
                    )
                    importer = BulkImporter(self.store, sync_type=sync_type, clock=self._clock)

                    group = ImportJobGroup(
                        OPEN_ORDERS_STREAM,
                        concurrency=self.sync_config.fanout_concurrency,
                        stagger_seconds=self.sync_config.fanout_stagger_seconds,
                        sleep=self.sleep,
                    )
                    closed_ids = result.reconciled.closed_ids if result.reconciled else []
                    chunks = [
                        (ids[start:start + batch_size], source)
                        for ids, source in ((missing, ImportSource.OPEN), (closed_ids, ImportSource.PROCESSED))
                        for start in range(0, len(ids), batch_size)
                    ]
                    for number, (chunk, source) in enumerate(chunks, start=1):

                        async def import_chunk(
                            chunk: List[str] = chunk, number: int = number, source: ImportSource = source
                        ) -> ImportResult:
                            details = await fetcher.fetch(chunk, number)
                            batch = await importer.import_batch(details, source)
                            await log.increment(
                                fetched=len(details),
                                created=batch.created,
                                updated=batch.updated,
                                skipped=batch.skipped,
                                failed=batch.failed,
                            )
                            return batch

                        group.add(f"batch-{number}", import_chunk)

                    async def on_complete(outcome: JobGroupResult) -> None:
                        await self._finish_open_fanout(result, log, outcome, started)

                    await group.run(on_complete=on_complete)
                    return result
                finally:
                    await self._release(lock_name, run_id)

    async def _prepare_open_fanout(self, result: SyncResult) -> List[str]:
        open_ids = await self.gateway.list_open_order_ids()
        result.open_ids_found = len(open_ids)

        reconciler = OpenOrderReconciler(
            self.store, grace=timedelta(minutes=self.sync_config.open_grace_minutes), clock=self._clock
        )
        result.reconciled = await reconciler.reconcile(open_ids)
        missing = await reconciler.missing_ids(open_ids)
        return missing[: self.sync_config.max_open_orders]

    async def _finish_open_fanout(
        self,
        result: SyncResult,
        log: SyncProgressLog,
        outcome: JobGroupResult,
        started: float,
    ) -> None:
        counts = ImportResult()
        for batch in outcome.results.values():
            counts = counts + batch
        result.counts = counts
        result.batches = outcome.total
        result.fatal_batches = len(outcome.failed)
        result.fetched = log.totals["total_fetched"]
        result.state = SyncState.COMPLETED
        result.duration_ms = (time.monotonic() - started) * 1000

        emit, reason = decide_cache_signal(
            dry_run=False,
            historical=False,
            processed=counts.processed,
            fatal_batches=result.fatal_batches,
            window_end=None,
            now=self._clock(),
            lookback_days=self.sync_config.cache_lookback_days,
        )
        result.cache_skip_reason = reason

        await log.merge_metadata(
            jobs=outcome.total,
            failed_jobs=sorted(outcome.failed),
            marked_closed=result.reconciled.marked_closed if result.reconciled else 0,
            cache_signal="emitted" if emit else f"skipped:{reason}",
        )
        await log.complete(counts, fetched=result.fetched)

        await self.bus.emit(
            SyncEvent.JOB_GROUP_FINISHED,
            {"group": outcome.name, "succeeded": len(outcome.succeeded), "failed": len(outcome.failed)},
        )
        await emit_sync_completed(
            result.sync_type, True, result.duration_ms, bus=self.bus, run_id=result.run_id, **counts.to_dict()
        )

        if emit:
            await emit_orders_synced(counts.processed, result.sync_type, bus=self.bus)
            result.cache_signal_emitted = True
        else:
            logger.info(f"Skipping sync completed signal: {reason}", extra={"sync_type": result.sync_type})

    # ═══════════════════════════════════════════════════════════════════════════
    # FAILED ORDER RETRY
    # ═══════════════════════════════════════════════════════════════════════════

    async def retry_failed_syncs(self, limit: int = None) -> Dict[str, int]:
        """
        Re-import orders whose earlier import failed and whose retry time has come.

        Orders with a known id are fetched fresh from the remote; the stored
        payload is used only when the remote no longer returns the order.
        Resolved on success, rescheduled with a longer delay otherwise.
        """
        self._ensure_configured()
        limit = limit or self.sync_config.failed_retry_limit
        lock_name = f"sync:{RETRY_STREAM}"
        stats = {"attempted": 0, "resolved": 0, "rescheduled": 0}

        async with self._in_flight():
            with correlation_context() as run_id:
                await self._acquire(lock_name, RETRY_STREAM, run_id)
                try:
                    now = self._clock()
                    due = await self.store.get_failed_syncs_due(now, limit=limit)
                    if not due:
                        logger.debug("No failed order syncs due for retry")
                        return stats

                    fresh: Dict[str, Dict[str, Any]] = {}
                    ids = [record["external_id"] for record in due if record["external_id"]]
                    fetch_error: Optional[GatewayError] = None
                    if ids:
                        fetcher = BatchDetailFetcher(
                            self.gateway,
                            policy=self.retry_policy,
                            sleep=self.sleep,
                            bus=self.bus,
                            sync_type=SyncType.ORDER_UPDATES.value,
                        )
                        try:
                            size = self.gateway.config.max_batch_size
                            for number, start in enumerate(range(0, len(ids), size), start=1):
                                for detail in await fetcher.fetch(ids[start:start + size], batch_number=number):
                                    order_id = detail.get("OrderId") or detail.get("pkOrderID")
                                    if order_id:
                                        fresh[str(order_id)] = detail
                        except GatewayError as e:
                            logger.warning(f"Could not refetch failed orders: {e}", extra=e.to_dict())
                            fetch_error = e

                    for record in due:
                        stats["attempted"] += 1
                        payload = fresh.get(record["external_id"]) or record["order_data"]
                        error = await self._retry_one(record, payload, fetch_error)
                        if error is None:
                            await self.store.resolve_failed_sync(record["id"], self._clock())
                            stats["resolved"] += 1
                        else:
                            await self.store.reschedule_failed_sync(record["id"], error, self._clock())
                            stats["rescheduled"] += 1

                    logger.info("Failed order retry complete", extra=stats)
                    return stats
                finally:
                    await self._release(lock_name, run_id)

    async def _retry_one(
        self,
        record: Dict[str, Any],
        payload: Optional[Dict[str, Any]],
        fetch_error: Optional[GatewayError],
    ) -> Optional[str]:
        """Import one failed order again. Returns an error message, or None on success."""
        if not isinstance(payload, dict):
            if fetch_error is not None:
                return fetch_error.user_message
            return "Order not returned by remote and no stored payload"

        source = ImportSource.OPEN if record["sync_type"] == SyncType.OPEN_ORDERS.value else ImportSource.PROCESSED
        importer = BulkImporter(
            self.store, record_failures=False, sync_type=record["sync_type"], clock=self._clock
        )
        outcome = await importer.import_batch([payload], source)
        if outcome.failed:
            return "Order still fails to map"
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_orchestrator: Optional[SyncOrchestrator] = None


async def get_sync_orchestrator() -> SyncOrchestrator:
    """Get or create the orchestrator built from the global config."""
    global _orchestrator
    if _orchestrator is None:
        store = await get_store()
        gateway = OrderGateway(CredentialProvider.from_config())
        _orchestrator = SyncOrchestrator(store, gateway)
    return _orchestrator


async def close_sync_orchestrator(timeout: float = None) -> bool:
    """
    Stop the shared orchestrator, wait for its run in flight, then close the gateway.

    Returns:
        False when a run was still going after ``timeout`` seconds
    """
    global _orchestrator
    if _orchestrator is None:
        return True
    finished = await _orchestrator.shutdown(timeout)
    await _orchestrator.gateway.close()
    _orchestrator = None
    return finished
