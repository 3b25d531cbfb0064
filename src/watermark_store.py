"""
Durable per-(network, contract) sync cursor.

Each row records the last fully processed block, the cycle status, a running
event counter and the failure backoff schedule. The block column only ever
moves forward. Cycle leases live beside it in sync_leases.
"""

import logging
import time
from typing import Optional

from database_manager import DepositSyncDB
from models import SyncWatermark, WATERMARK_IDLE, WATERMARK_SYNCING, WATERMARK_ERROR

logger = logging.getLogger(__name__)

_WATERMARK_COLUMNS = """network_id, contract_address, last_checked_block, status, events_processed,
    last_synced_at, last_error, consecutive_failures, next_retry_at"""


class SyncWatermarkStore:
    def __init__(self, db: DepositSyncDB):
        self.db = db

    def _row_to_watermark(self, row) -> SyncWatermark:
        return SyncWatermark(
            network_id=row[0],
            contract_address=row[1],
            last_checked_block=int(row[2]),
            status=row[3],
            events_processed=int(row[4] or 0),
            last_synced_at=row[5],
            last_error=row[6],
            consecutive_failures=int(row[7] or 0),
            next_retry_at=row[8],
        )

    def get(self, network_id: str, contract_address: str) -> Optional[SyncWatermark]:
        with self.db.get_connection() as conn:
            row = conn.execute(f"""
                SELECT {_WATERMARK_COLUMNS} FROM sync_watermarks
                WHERE network_id = ? AND contract_address = ?
            """, [network_id, contract_address.lower()]).fetchone()
        return self._row_to_watermark(row) if row else None

    def list_all(self):
        with self.db.get_connection() as conn:
            rows = conn.execute(f"""
                SELECT {_WATERMARK_COLUMNS} FROM sync_watermarks
                ORDER BY network_id, contract_address
            """).fetchall()
        return [self._row_to_watermark(r) for r in rows]

    def get_or_init(self, network_id: str, contract_address: str, chain_head: int,
                    bootstrap_offset: int = 100) -> SyncWatermark:
        """Return the watermark, creating it at head - offset on first sight"""
        contract_address = contract_address.lower()
        start_block = max(0, chain_head - bootstrap_offset)

        with self.db.get_connection() as conn:
            existing = self.get(network_id, contract_address)
            if existing is not None:
                return existing

            conn.execute("""
                INSERT OR IGNORE INTO sync_watermarks
                    (network_id, contract_address, last_checked_block, status, events_processed)
                VALUES (?, ?, ?, ?, 0)
            """, [network_id, contract_address, start_block, WATERMARK_IDLE])

        logger.info(f"🆕 [{network_id}] watermark initialized at block {start_block} (head {chain_head})")
        return self.get(network_id, contract_address)

    def mark_syncing(self, network_id: str, contract_address: str):
        with self.db.get_connection() as conn:
            conn.execute("""
                UPDATE sync_watermarks SET status = ?
                WHERE network_id = ? AND contract_address = ?
            """, [WATERMARK_SYNCING, network_id, contract_address.lower()])

    def advance(self, network_id: str, contract_address: str, new_last_checked_block: int,
                status: str = WATERMARK_IDLE, processed_delta: int = 0) -> SyncWatermark:
        """Move the cursor forward, set status and bump the event counter in one statement"""
        with self.db.get_connection() as conn:
            conn.execute("""
                UPDATE sync_watermarks SET
                    last_checked_block = GREATEST(last_checked_block, ?),
                    status = ?,
                    events_processed = events_processed + ?,
                    last_synced_at = CURRENT_TIMESTAMP,
                    last_error = CASE WHEN ? = 'idle' THEN NULL ELSE last_error END,
                    consecutive_failures = CASE WHEN ? = 'idle' THEN 0 ELSE consecutive_failures END,
                    next_retry_at = CASE WHEN ? = 'idle' THEN NULL ELSE next_retry_at END
                WHERE network_id = ? AND contract_address = ?
            """, [new_last_checked_block, status, processed_delta, status, status, status,
                  network_id, contract_address.lower()])

        watermark = self.get(network_id, contract_address)
        if watermark and watermark.last_checked_block > new_last_checked_block:
            logger.warning(
                f"[{network_id}] refused to lower watermark from {watermark.last_checked_block} "
                f"to {new_last_checked_block}"
            )
        return watermark

    def record_failure(self, network_id: str, contract_address: str, error: str,
                       backoff_seconds: float = 0) -> SyncWatermark:
        """Flag the cursor as errored and schedule the next retry"""
        next_retry_at = time.time() + backoff_seconds if backoff_seconds > 0 else None
        with self.db.get_connection() as conn:
            conn.execute("""
                UPDATE sync_watermarks SET
                    status = ?,
                    last_error = ?,
                    consecutive_failures = consecutive_failures + 1,
                    next_retry_at = ?
                WHERE network_id = ? AND contract_address = ?
            """, [WATERMARK_ERROR, error, next_retry_at, network_id, contract_address.lower()])
        return self.get(network_id, contract_address)

    @staticmethod
    def in_backoff(watermark: Optional[SyncWatermark], now: Optional[float] = None) -> bool:
        if watermark is None or watermark.next_retry_at is None:
            return False
        now = time.time() if now is None else now
        return now < watermark.next_retry_at

    # Cycle lease

    def acquire_lease(self, network_id: str, contract_address: str, owner: str,
                      ttl_seconds: float) -> bool:
        """Take the cycle lease unless another owner holds an unexpired one"""
        contract_address = contract_address.lower()
        now = time.time()

        with self.db.transaction() as conn:
            row = conn.execute("""
                SELECT lease_owner, lease_expires_at FROM sync_leases
                WHERE network_id = ? AND contract_address = ?
            """, [network_id, contract_address]).fetchone()

            if row is None:
                conn.execute("""
                    INSERT INTO sync_leases (network_id, contract_address, lease_owner, lease_expires_at)
                    VALUES (?, ?, ?, ?)
                """, [network_id, contract_address, owner, now + ttl_seconds])
                return True

            holder, expires_at = row
            if holder != owner and expires_at > now:
                logger.debug(f"[{network_id}] lease held by {holder} for {expires_at - now:.0f}s more")
                return False

            conn.execute("""
                UPDATE sync_leases SET lease_owner = ?, lease_expires_at = ?
                WHERE network_id = ? AND contract_address = ?
            """, [owner, now + ttl_seconds, network_id, contract_address])
        return True

    def release_lease(self, network_id: str, contract_address: str, owner: str):
        with self.db.get_connection() as conn:
            conn.execute("""
                DELETE FROM sync_leases
                WHERE network_id = ? AND contract_address = ? AND lease_owner = ?
            """, [network_id, contract_address.lower(), owner])
