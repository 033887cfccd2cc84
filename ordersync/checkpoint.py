"""
Resumable sync bookkeeping.

CheckpointTracker owns the watermark of one sync stream: the point the next
incremental run starts from. It only moves forward, and only when a run
completes.

SyncProgressLog owns the per-run sync_logs row: counters, merged metadata
and a typed progress snapshot for progress displays.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ordersync.models import ImportResult
from ordersync.observability import get_logger

logger = get_logger(__name__)

DEFAULT_SOURCE = "linnworks"

COUNTER_FIELDS = ("total_fetched", "total_created", "total_updated", "total_skipped", "total_failed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CheckpointTracker:
    """
    Watermark for one (stream, source) pair.

    Usage:
        tracker = await CheckpointTracker.get_or_create(store, "recent_orders")
        since = tracker.get_incremental_start_date()
        await tracker.start_sync()
        ...
        await tracker.complete_sync(totals, metadata, watermark=window_end)
    """

    def __init__(self, store: Any, row: Dict[str, Any], clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.stream_name = row["stream_name"]
        self.source = row["source"]
        self._row = row
        self._clock = clock

    @classmethod
    async def get_or_create(
        cls,
        store: Any,
        stream_name: str,
        source: str = DEFAULT_SOURCE,
        default_days: int = 7,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "CheckpointTracker":
        """Load the checkpoint, creating it with watermark now - default_days on first use."""
        row = await store.get_checkpoint(stream_name, source)
        if row is None:
            now = clock()
            await store.create_checkpoint(stream_name, source, now - timedelta(days=default_days), now)
            row = await store.get_checkpoint(stream_name, source)
            logger.info(
                "Created sync checkpoint",
                extra={"stream": stream_name, "source": source, "watermark": row["last_sync_at"]},
            )
        return cls(store, row, clock)

    @property
    def watermark(self) -> datetime:
        return self._row["last_sync_at"]

    @property
    def status(self) -> str:
        return self._row["status"]

    @property
    def row(self) -> Dict[str, Any]:
        return dict(self._row)

    def get_incremental_start_date(self) -> datetime:
        """Start of the next incremental window: exactly the stored watermark."""
        return self.watermark

    def is_stale_running(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        """True when a run has sat in 'running' longer than ``max_age`` (a crashed worker)."""
        started = self._row.get("sync_started_at")
        if self.status != "running" or started is None:
            return False
        return (now or self._clock()) - started > max_age

    async def start_sync(self) -> None:
        now = self._clock()
        await self._update(status="running", sync_started_at=now, error_message=None, updated_at=now)

    async def complete_sync(
        self,
        counts: ImportResult,
        metadata: Optional[Dict[str, Any]] = None,
        watermark: Optional[datetime] = None,
    ) -> None:
        """
        Record a successful run and advance the watermark.

        The watermark never moves backwards, even if ``watermark`` is older
        than the stored one.
        """
        now = self._clock()
        target = watermark or now
        new_watermark = max(self.watermark, target) if self.watermark else target
        await self._update(
            status="completed",
            last_sync_at=new_watermark,
            sync_completed_at=now,
            records_synced=(self._row.get("records_synced") or 0) + counts.processed,
            records_created=(self._row.get("records_created") or 0) + counts.created,
            records_updated=(self._row.get("records_updated") or 0) + counts.updated,
            records_failed=(self._row.get("records_failed") or 0) + counts.failed,
            metadata=metadata or {},
            error_message=None,
            updated_at=now,
        )
        logger.info(
            "Checkpoint advanced",
            extra={"stream": self.stream_name, "watermark": new_watermark.isoformat()},
        )

    async def stop_sync(self, counts: ImportResult, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Record a run that was asked to stop before covering its window.

        The counts are kept but the watermark is not moved, so the next run
        covers the whole window again.
        """
        now = self._clock()
        await self._update(
            status="stopped",
            sync_completed_at=now,
            records_synced=(self._row.get("records_synced") or 0) + counts.processed,
            records_created=(self._row.get("records_created") or 0) + counts.created,
            records_updated=(self._row.get("records_updated") or 0) + counts.updated,
            records_failed=(self._row.get("records_failed") or 0) + counts.failed,
            metadata=metadata or {},
            error_message=None,
            updated_at=now,
        )
        logger.info(
            "Checkpoint kept after stop",
            extra={"stream": self.stream_name, "watermark": self.watermark.isoformat()},
        )

    async def fail_sync(self, message: str) -> None:
        """Record the failure. The watermark is left where it was."""
        now = self._clock()
        await self._update(status="failed", error_message=message[:1000], sync_completed_at=now, updated_at=now)

    async def _update(self, **fields: Any) -> None:
        await self.store.update_checkpoint(self.stream_name, self.source, **fields)
        self._row.update(fields)


@dataclass
class SyncProgress:
    """Snapshot stored in sync_logs.progress and broadcast with SYNC_PROGRESS."""
    stage: str
    message: str = ""
    percent: Optional[float] = None
    current_page: Optional[int] = None
    total_pages: Optional[int] = None
    fetched_count: int = 0
    total_expected: Optional[int] = None
    current_batch: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncProgressLog:
    """
    One sync_logs row.

    Counters only grow. The row is finalized exactly once, by complete(),
    stop() or fail(). With ``persist=False`` (dry runs) everything stays in memory.
    """

    def __init__(
        self,
        store: Any,
        sync_type: str,
        log_id: Optional[int],
        metadata: Dict[str, Any],
        persist: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.sync_type = sync_type
        self.log_id = log_id
        self.metadata = dict(metadata)
        self.persist = persist
        self.status = "started"
        self.progress: Optional[SyncProgress] = None
        self.error_message: Optional[str] = None
        self.totals: Dict[str, int] = {name: 0 for name in COUNTER_FIELDS}
        self._clock = clock

    @classmethod
    async def start(
        cls,
        store: Any,
        sync_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        persist: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "SyncProgressLog":
        metadata = metadata or {}
        log_id = None
        if persist:
            log_id = await store.create_sync_log(sync_type, clock(), metadata)
        return cls(store, sync_type, log_id, metadata, persist=persist, clock=clock)

    @property
    def is_finalized(self) -> bool:
        return self.status in ("completed", "stopped", "failed")

    async def update_progress(self, progress: SyncProgress) -> None:
        self._ensure_open()
        self.progress = progress
        if self.persist:
            await self.store.update_sync_log(self.log_id, progress=progress.to_dict())

    async def merge_metadata(self, **extras: Any) -> None:
        self._ensure_open()
        self.metadata.update(extras)
        if self.persist:
            await self.store.update_sync_log(self.log_id, metadata=self.metadata)

    async def increment(
        self,
        fetched: int = 0,
        created: int = 0,
        updated: int = 0,
        skipped: int = 0,
        failed: int = 0,
    ) -> Dict[str, int]:
        """Add to the counters; safe for concurrent jobs sharing one log."""
        deltas = (fetched, created, updated, skipped, failed)
        if any(d < 0 for d in deltas):
            raise ValueError("Sync log counters cannot decrease")
        self._ensure_open()

        if self.persist:
            self.totals = await self.store.increment_sync_log(
                self.log_id, fetched=fetched, created=created, updated=updated, skipped=skipped, failed=failed
            )
        else:
            for name, delta in zip(COUNTER_FIELDS, deltas):
                self.totals[name] += delta
        return dict(self.totals)

    def is_fanout_complete(self) -> bool:
        """All fetched orders accounted for by created/updated/skipped/failed."""
        fetched = self.totals["total_fetched"]
        if fetched <= 0:
            return False
        accounted = sum(self.totals[name] for name in COUNTER_FIELDS[1:])
        return accounted >= fetched

    async def complete(self, counts: Optional[ImportResult] = None, fetched: Optional[int] = None) -> None:
        """Finalize as completed. Given counts may raise the totals but never lower them."""
        await self._finalize("completed", counts, fetched)

    async def stop(self, counts: Optional[ImportResult] = None, fetched: Optional[int] = None) -> None:
        """Finalize a run that ended on a stop request."""
        await self._finalize("stopped", counts, fetched)

    async def _finalize(self, status: str, counts: Optional[ImportResult], fetched: Optional[int]) -> None:
        self._ensure_open()
        if counts is not None:
            proposed = {
                "total_created": counts.created,
                "total_updated": counts.updated,
                "total_skipped": counts.skipped,
                "total_failed": counts.failed,
            }
            for name, value in proposed.items():
                self.totals[name] = max(self.totals[name], value)
        if fetched is not None:
            self.totals["total_fetched"] = max(self.totals["total_fetched"], fetched)

        self.status = status
        if self.persist:
            await self.store.update_sync_log(
                self.log_id,
                status=status,
                completed_at=self._clock(),
                metadata=self.metadata,
                **self.totals,
            )

    async def fail(self, message: str) -> None:
        self._ensure_open()
        self.status = "failed"
        self.error_message = message
        if self.persist:
            await self.store.update_sync_log(
                self.log_id,
                status="failed",
                completed_at=self._clock(),
                error_message=message[:1000],
                metadata=self.metadata,
            )

    def _ensure_open(self) -> None:
        if self.is_finalized:
            raise RuntimeError(f"Sync log {self.log_id} is already {self.status}")
