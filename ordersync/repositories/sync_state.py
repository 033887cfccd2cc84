"""Checkpoints, sync logs and unique-run locks."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CHECKPOINT_FIELDS = {
    "last_sync_at", "sync_started_at", "sync_completed_at", "status",
    "records_synced", "records_created", "records_updated", "records_failed",
    "metadata", "error_message", "updated_at",
}

SYNC_LOG_FIELDS = {
    "status", "total_fetched", "total_created", "total_updated", "total_skipped",
    "total_failed", "completed_at", "metadata", "progress", "error_message",
}

JSON_FIELDS = {"metadata", "progress"}


def _encode(field: str, value: Any) -> Any:
    if field in JSON_FIELDS and value is not None and not isinstance(value, str):
        return json.dumps(value, default=str)
    return value


def _decode_row(cursor, row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    names = [d[0] for d in cursor.description]
    data = dict(zip(names, row))
    for field in JSON_FIELDS:
        if field in data:
            data[field] = json.loads(data[field]) if data[field] else {}
    return data


class SyncStateMixin:

    # ─── Checkpoints ─────────────────────────────────────────────────────────

    async def get_checkpoint(self, stream_name: str, source: str) -> Optional[Dict[str, Any]]:
        def _get(conn):
            cursor = conn.execute(
                "SELECT * FROM sync_checkpoints WHERE stream_name = ? AND source = ?",
                [stream_name, source],
            )
            return _decode_row(cursor, cursor.fetchone())

        return await self._run(_get, "get_checkpoint")

    async def create_checkpoint(self, stream_name: str, source: str, watermark: datetime, now: datetime) -> None:
        """Insert an idle checkpoint unless one already exists."""
        await self._execute("""
            INSERT INTO sync_checkpoints (stream_name, source, last_sync_at, status, created_at, updated_at)
            VALUES (?, ?, ?, 'idle', ?, ?)
            ON CONFLICT (stream_name, source) DO NOTHING
        """, [stream_name, source, watermark, now, now])

    async def update_checkpoint(self, stream_name: str, source: str, **fields: Any) -> None:
        unknown = set(fields) - CHECKPOINT_FIELDS
        if unknown:
            raise ValueError(f"Unknown checkpoint fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_encode(name, value) for name, value in fields.items()]
        await self._execute(
            f"UPDATE sync_checkpoints SET {assignments} WHERE stream_name = ? AND source = ?",
            params + [stream_name, source],
        )

    # ─── Sync logs ───────────────────────────────────────────────────────────

    async def create_sync_log(self, sync_type: str, started_at: datetime, metadata: Dict[str, Any]) -> int:
        row = await self._execute("""
            INSERT INTO sync_logs (sync_type, status, started_at, metadata, progress)
            VALUES (?, 'started', ?, ?, '{}')
            RETURNING id
        """, [sync_type, started_at, json.dumps(metadata, default=str)])
        return row[0]

    async def update_sync_log(self, log_id: int, **fields: Any) -> None:
        unknown = set(fields) - SYNC_LOG_FIELDS
        if unknown:
            raise ValueError(f"Unknown sync log fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_encode(name, value) for name, value in fields.items()]
        await self._execute(f"UPDATE sync_logs SET {assignments} WHERE id = ?", params + [log_id])

    async def increment_sync_log(
        self,
        log_id: int,
        fetched: int = 0,
        created: int = 0,
        updated: int = 0,
        skipped: int = 0,
        failed: int = 0,
    ) -> Dict[str, int]:
        """Add to the counters in one statement; returns the new totals."""
        row = await self._execute("""
            UPDATE sync_logs SET
                total_fetched = total_fetched + ?,
                total_created = total_created + ?,
                total_updated = total_updated + ?,
                total_skipped = total_skipped + ?,
                total_failed = total_failed + ?
            WHERE id = ?
            RETURNING total_fetched, total_created, total_updated, total_skipped, total_failed
        """, [fetched, created, updated, skipped, failed, log_id])
        if row is None:
            raise LookupError(f"Sync log {log_id} not found")
        return {
            "total_fetched": row[0],
            "total_created": row[1],
            "total_updated": row[2],
            "total_skipped": row[3],
            "total_failed": row[4],
        }

    async def get_sync_log(self, log_id: int) -> Optional[Dict[str, Any]]:
        def _get(conn):
            cursor = conn.execute("SELECT * FROM sync_logs WHERE id = ?", [log_id])
            return _decode_row(cursor, cursor.fetchone())

        return await self._run(_get, "get_sync_log")

    async def get_latest_sync_log(self, sync_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
        def _get(conn):
            if sync_type:
                cursor = conn.execute(
                    "SELECT * FROM sync_logs WHERE sync_type = ? ORDER BY id DESC LIMIT 1", [sync_type]
                )
            else:
                cursor = conn.execute("SELECT * FROM sync_logs ORDER BY id DESC LIMIT 1")
            return _decode_row(cursor, cursor.fetchone())

        return await self._run(_get, "get_latest_sync_log")

    # ─── Unique-run locks ────────────────────────────────────────────────────

    async def acquire_lock(self, name: str, owner: str, ttl_seconds: int, now: datetime) -> bool:
        """
        Take the named lock for ``ttl_seconds``.

        Returns False while another owner holds an unexpired lock. An expired
        lock is taken over.
        """
        expires_at = now + timedelta(seconds=ttl_seconds)

        def _acquire(conn):
            conn.begin()
            try:
                row = conn.execute(
                    "SELECT owner, expires_at FROM sync_locks WHERE name = ?", [name]
                ).fetchone()
                if row is not None and row[1] > now:
                    conn.rollback()
                    return False
                if row is not None:
                    logger.warning(
                        "Taking over expired sync lock",
                        extra={"lock": name, "previous_owner": row[0], "expired_at": row[1]},
                    )
                    conn.execute(
                        "UPDATE sync_locks SET owner = ?, acquired_at = ?, expires_at = ? WHERE name = ?",
                        [owner, now, expires_at, name],
                    )
                else:
                    conn.execute(
                        "INSERT INTO sync_locks (name, owner, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
                        [name, owner, now, expires_at],
                    )
                conn.commit()
                return True
            except Exception:
                conn.rollback()
                raise

        return await self._run(_acquire, "acquire_lock")

    async def release_lock(self, name: str, owner: str) -> bool:
        """Release the lock if ``owner`` still holds it."""
        row = await self._fetch_one("SELECT owner FROM sync_locks WHERE name = ?", [name])
        if row is None or row[0] != owner:
            return False
        await self._execute("DELETE FROM sync_locks WHERE name = ? AND owner = ?", [name, owner])
        return True

    async def get_lock(self, name: str) -> Optional[Dict[str, Any]]:
        row = await self._fetch_one(
            "SELECT name, owner, acquired_at, expires_at FROM sync_locks WHERE name = ?", [name]
        )
        if row is None:
            return None
        return {"name": row[0], "owner": row[1], "acquired_at": row[2], "expires_at": row[3]}
