"""Per-order sync failures queued for retry."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Delay before the next retry, by attempts made so far: 1h, 6h, then daily
RETRY_BACKOFF_HOURS = (1, 6, 24)


def next_retry_delay(attempt_count: int) -> timedelta:
    index = min(max(attempt_count, 1), len(RETRY_BACKOFF_HOURS)) - 1
    return timedelta(hours=RETRY_BACKOFF_HOURS[index])


class FailedSyncsMixin:

    async def record_failed_sync(
        self,
        external_id: Optional[str],
        order_number: Optional[int],
        sync_type: str,
        failure_reason: str,
        error_message: str,
        order_data: Any,
        now: datetime,
    ) -> None:
        """
        Record a failure, or bump the attempt count of the open record for
        the same order.
        """
        payload = json.dumps(order_data, default=str) if order_data is not None else None

        def _record(conn):
            existing = None
            if external_id:
                existing = conn.execute("""
                    SELECT id, attempt_count FROM failed_order_syncs
                    WHERE external_id = ? AND is_resolved = FALSE
                    ORDER BY id DESC LIMIT 1
                """, [external_id]).fetchone()

            if existing:
                attempts = existing[1] + 1
                conn.execute("""
                    UPDATE failed_order_syncs SET
                        attempt_count = ?, failure_reason = ?, error_message = ?,
                        order_data = COALESCE(?, order_data),
                        last_attempted_at = ?, next_retry_at = ?
                    WHERE id = ?
                """, [attempts, failure_reason, error_message, payload, now,
                      now + next_retry_delay(attempts), existing[0]])
            else:
                conn.execute("""
                    INSERT INTO failed_order_syncs (
                        external_id, order_number, sync_type, failure_reason, error_message,
                        order_data, attempt_count, last_attempted_at, next_retry_at,
                        is_resolved, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, FALSE, ?)
                """, [external_id, order_number, sync_type, failure_reason, error_message,
                      payload, now, now + next_retry_delay(1), now])

        await self._run(_record, "record_failed_sync")

    async def get_failed_syncs_due(self, now: datetime, limit: int = 50) -> List[Dict[str, Any]]:
        """Unresolved failures whose retry time has passed, oldest first."""
        rows = await self._fetch_all("""
            SELECT id, external_id, order_number, sync_type, failure_reason,
                   error_message, order_data, attempt_count, next_retry_at
            FROM failed_order_syncs
            WHERE is_resolved = FALSE AND next_retry_at <= ?
            ORDER BY next_retry_at, id
            LIMIT ?
        """, [now, limit])
        return [
            {
                "id": row[0],
                "external_id": row[1],
                "order_number": row[2],
                "sync_type": row[3],
                "failure_reason": row[4],
                "error_message": row[5],
                "order_data": json.loads(row[6]) if row[6] else None,
                "attempt_count": row[7],
                "next_retry_at": row[8],
            }
            for row in rows
        ]

    async def resolve_failed_sync(self, failure_id: int, now: datetime) -> None:
        await self._execute(
            "UPDATE failed_order_syncs SET is_resolved = TRUE, resolved_at = ? WHERE id = ?",
            [now, failure_id],
        )

    async def reschedule_failed_sync(self, failure_id: int, error_message: str, now: datetime) -> int:
        """Count another failed attempt and push next_retry_at out. Returns the attempt count."""
        row = await self._fetch_one("SELECT attempt_count FROM failed_order_syncs WHERE id = ?", [failure_id])
        if row is None:
            raise LookupError(f"Failed sync {failure_id} not found")
        attempts = row[0] + 1
        await self._execute("""
            UPDATE failed_order_syncs SET
                attempt_count = ?, error_message = ?, last_attempted_at = ?, next_retry_at = ?
            WHERE id = ?
        """, [attempts, error_message, now, now + next_retry_delay(attempts), failure_id])
        return attempts

    async def count_unresolved_failures(self) -> int:
        row = await self._fetch_one("SELECT COUNT(*) FROM failed_order_syncs WHERE is_resolved = FALSE")
        return row[0] if row else 0
